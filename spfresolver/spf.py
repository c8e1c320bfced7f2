# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record resolution"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import NamedTuple, Optional, Union
from collections.abc import Sequence

import dns.exception
import dns.name
from dns.nameserver import Nameserver
import pyleri

from spfresolver._constants import (
    DEFAULT_DNS_SERVER,
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    LOOKUP_ADVISORY_THRESHOLD,
    LOOKUP_LIMIT,
    MAX_RECURSION_DEPTH,
    SYNTAX_ERROR_MARKER,
)
from spfresolver.utils import (
    DNSClient,
    DNSException,
    DNSExceptionNXDOMAIN,
    normalize_domain,
)

"""Copyright 2019-2025 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

SPF_VERSION_TAG_REGEX_STRING = "v=spf1"

SPF_MECHANISM_REGEX_STRING = (
    r"([+\-~?])?"
    r"(mx:?|ip4:?|ip6:?|exists:?|include:?|all|a:?|redirect=|exp[=:]|ptr:?)"
    r"([\w+/_.:\-{}%]*)"
)

# https://datatracker.ietf.org/doc/html/rfc7208#section-4.5
# The version section is terminated by either an SP character or the end of
# the record, so "v=spf10" is not an SPF record.
SPF_VERSION_REGEX = re.compile(rf"^{SPF_VERSION_TAG_REGEX_STRING}(?=\s|$)")
ALL_REGEX = re.compile(r"^([+\-?~])?all$", re.IGNORECASE)
SPF_TERM_REGEX = re.compile(
    r"^([+\-~?])?(include|ip4|ip6|exists|ptr|mx|a)(?=$|[:/])(.*)$", re.IGNORECASE
)
DOMAIN_CIDR_REGEX = re.compile(
    r"^(?P<target>[^/]*)(?:/(?P<cidr4>\d+))?(?://(?P<cidr6>\d+))?$"
)

MACRO_TOKENS = ("%{", "%%", "%-", "%_")


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFTransportFailure(SPFError):
    """Raised when a DNS query needed to resolve an SPF record could not be
    completed"""

    def __init__(self, error: Union[Exception, str], domain: str):
        self.error = error
        self.domain = domain
        SPFError.__init__(self, f"{domain}: {error}", data={"failed_domain": domain})


class _SPFWarning(Exception):
    """Raised when a non-fatal SPF error occurs"""


class NoRecordFound(_SPFWarning):
    """Raised when a domain does not publish an SPF record"""


class MultipleRecordsFound(_SPFWarning):
    """Raised when a domain publishes more than one SPF record"""


class UnsupportedDirective(_SPFWarning):
    """Raised when a macro, ``exp``, ``ptr`` or ``exists`` directive is
    skipped"""


class UnknownDirective(_SPFWarning):
    """Raised when a directive is not a known mechanism or modifier"""


class InvalidDirective(_SPFWarning):
    """Raised when an ``ip4`` or ``ip6`` value is not a valid network"""


class InvalidSyntax(_SPFWarning):
    """Raised when an SPF record does not match the SPF grammar"""


class MissingRecords(_SPFWarning):
    """Raised when an ``a`` or ``mx`` mechanism points to a name without
    the requested records"""


class RecursionLoop(_SPFWarning):
    """Raised when an ``include`` or ``redirect`` points back to a domain
    already being resolved"""


class RecursionDepthExceeded(_SPFWarning):
    """Raised when an ``include`` or ``redirect`` chain is too deep"""


class LookupBudgetAdvisory(_SPFWarning):
    """Raised when resolution touches more than 6 distinct domains"""


class LookupBudgetExceeded(_SPFWarning):
    """Raised when resolution touches more than 10 distinct domains"""


class _SPFGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SPF records"""

    version_tag = pyleri.Regex(SPF_VERSION_TAG_REGEX_STRING)
    mechanism = pyleri.Regex(SPF_MECHANISM_REGEX_STRING, re.IGNORECASE)
    START = pyleri.Sequence(version_tag, pyleri.Repeat(mechanism))


class SPFEntry(NamedTuple):
    """A network authorized to send mail, and where it came from"""

    source_domain: str
    ip_address_or_cidr: str
    qualifier: str
    referrer: Optional[str] = None
    is_included: bool = False


class SPFDiagnostic(NamedTuple):
    type: str
    domain: str
    message: str


class SPFTerm(NamedTuple):
    kind: str
    directive: str
    value: str = ""
    qualifier: str = ""
    cidr4: Optional[str] = None
    cidr6: Optional[str] = None


class SPFResolution(NamedTuple):
    domain: str
    record: Optional[str]
    entries: list[SPFEntry]
    diagnostics: list[SPFDiagnostic]

    @property
    def lookup_count(self) -> int:
        return count_lookup_domains(self.entries)


spf_qualifiers: dict[str, str] = {
    "": "pass",
    "?": "neutral",
    "+": "pass",
    "-": "fail",
    "~": "softfail",
}


def make_entry(
    source_domain: str,
    ip_address_or_cidr: str,
    qualifier: str = "neutral",
    referrer: Optional[str] = None,
) -> SPFEntry:
    """
    Builds an SPF entry

    Args:
        source_domain (str): The domain whose SPF record contains the mechanism
        ip_address_or_cidr (str): The authorized address or network
        qualifier (str): ``pass``, ``fail``, ``softfail`` or ``neutral``
        referrer (str): The domain that included ``source_domain``, if any

    Returns:
        SPFEntry: An SPF entry, marked as included when it has a referrer
    """
    return SPFEntry(
        source_domain=source_domain,
        ip_address_or_cidr=ip_address_or_cidr,
        qualifier=qualifier,
        referrer=referrer,
        is_included=referrer is not None,
    )


def count_lookup_domains(entries: Sequence[SPFEntry]) -> int:
    """
    Counts the distinct source domains of the given entries

    Args:
        entries (list): A list of SPF entries

    Returns:
        int: The number of distinct ``source_domain`` values
    """
    return len(set(map(lambda e: e.source_domain, entries)))


def _diagnostic(warning: _SPFWarning, domain: str) -> SPFDiagnostic:
    return SPFDiagnostic(type(warning).__name__, domain, str(warning))


def parse_spf_term(directive: str) -> SPFTerm:
    """
    Parses a single SPF directive into a tagged term

    The kind is one of ``redirect``, ``include``, ``ip4``, ``ip6``, ``a``,
    ``mx``, ``ptr``, ``exists``, ``macro``, ``exp``, ``all`` or ``unknown``.

    Args:
        directive (str): A whitespace-free SPF directive

    Returns:
        SPFTerm: The parsed term
    """
    if any(token in directive for token in MACRO_TOKENS):
        return SPFTerm("macro", directive)
    lowered = directive.lower()
    if lowered.startswith("redirect="):
        target = directive.split("=", 1)[1]
        if target == "":
            return SPFTerm("unknown", directive)
        return SPFTerm("redirect", directive, target)
    if lowered.startswith("exp=") or lowered.startswith("exp:"):
        return SPFTerm("exp", directive, directive[4:])
    all_match = ALL_REGEX.match(directive)
    if all_match:
        return SPFTerm("all", directive, qualifier=all_match.group(1) or "")
    term_match = SPF_TERM_REGEX.match(directive)
    if term_match is None:
        return SPFTerm("unknown", directive)
    qualifier = term_match.group(1) or ""
    mechanism = term_match.group(2).lower()
    rest = term_match.group(3)
    if mechanism in ("a", "mx"):
        if rest.startswith(":"):
            rest = rest[1:]
            if rest == "":
                return SPFTerm("unknown", directive)
        cidr_match = DOMAIN_CIDR_REGEX.match(rest)
        if cidr_match is None:
            return SPFTerm("unknown", directive)
        return SPFTerm(
            mechanism,
            directive,
            cidr_match.group("target"),
            qualifier,
            cidr_match.group("cidr4"),
            cidr_match.group("cidr6"),
        )
    if mechanism == "ptr":
        return SPFTerm(mechanism, directive, rest.lstrip(":"), qualifier)
    if not rest.startswith(":") or len(rest) < 2:
        return SPFTerm("unknown", directive)
    return SPFTerm(mechanism, directive, rest[1:], qualifier)


def parse_spf_terms(record: str) -> list[SPFTerm]:
    """
    Splits an SPF record on whitespace and parses each directive

    Args:
        record (str): An SPF record, including the version tag

    Returns:
        list: A list of :class:`SPFTerm`, excluding the version tag
    """
    directives = record.split()
    if directives and SPF_VERSION_REGEX.match(directives[0]):
        directives = directives[1:]
    return list(map(parse_spf_term, directives))


def get_all_qualifier(terms: Sequence[SPFTerm]) -> str:
    """
    Returns the qualifier of the terminal ``all`` mechanism

    .. note::
        Qualifiers on individual mechanisms are not evaluated; the ``all``
        qualifier applies to every entry of the record.

    Args:
        terms (list): Parsed SPF terms

    Returns:
        str: ``pass``, ``fail``, ``softfail`` or ``neutral`` (no ``all``)
    """
    for term in terms:
        if term.kind == "all":
            return spf_qualifiers[term.qualifier]
    return "neutral"


def check_spf_syntax(
    record: str,
    domain: str,
    *,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> None:
    """
    Checks an SPF record against the SPF grammar

    Args:
        record (str): An SPF record
        domain (str): The domain that the SPF record came from
        syntax_error_marker (str): The marker for pointing out syntax errors

    Raises:
        :exc:`spfresolver.spf.InvalidSyntax`
    """
    parsed_record = _SPFGrammar().parse(record)
    if not parsed_record.is_valid:
        pos = parsed_record.pos
        expecting: list[str] = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        expecting_str = " or ".join(expecting)
        marked_record = record[:pos] + syntax_error_marker + record[pos:]
        raise InvalidSyntax(
            f"{domain}: Expected {expecting_str} at position {pos} "
            f"(marked with {syntax_error_marker}) in: {marked_record}"
        )


def query_spf_record(domain: str, client: DNSClient) -> str:
    """
    Queries DNS for the SPF record of a domain

    The character-strings of each TXT record are concatenated without a
    separator (RFC 7208 § 3.3) before looking for the version tag.

    Args:
        domain (str): A domain name
        client (DNSClient): The DNS client to query with

    Returns:
        str: The SPF record

    Raises:
        :exc:`spfresolver.spf.NoRecordFound`
        :exc:`spfresolver.spf.MultipleRecordsFound`
        :exc:`spfresolver.spf.SPFTransportFailure`
    """
    logging.debug(f"Checking for a SPF record on {domain}")
    try:
        answers = client.query_txt(domain)
    except DNSExceptionNXDOMAIN:
        raise NoRecordFound("The domain does not exist.")
    except (DNSException, dns.exception.DNSException) as error:
        raise SPFTransportFailure(error, domain)
    spf_records = []
    for segments in answers:
        record = "".join(segments)
        if SPF_VERSION_REGEX.match(record):
            spf_records.append(record)
    if len(spf_records) > 1:
        # RFC 7208 § 3.2 forbids picking one
        raise MultipleRecordsFound(
            f"The domain has {len(spf_records)} SPF TXT records"
        )
    if len(spf_records) == 0:
        raise NoRecordFound("An SPF record does not exist.")
    return spf_records[0]


def _domain_name(name: str) -> str:
    name = normalize_domain(name.strip())
    if name.endswith("."):
        name = name[:-1]
    return name


def _target_domain(target: str) -> str:
    """
    Normalizes a domain named by a directive or an MX record

    Raises:
        :exc:`spfresolver.spf.InvalidDirective`
    """
    name = _domain_name(target)
    if name == "":
        raise InvalidDirective(f"{target!r} is not a valid domain name.")
    try:
        dns.name.from_text(name)
    except (dns.exception.DNSException, UnicodeError) as error:
        raise InvalidDirective(f"{target} is not a valid domain name: {error}")
    return name


def _get_addresses(name: str, client: DNSClient) -> list[str]:
    try:
        return client.query_a(name)
    except DNSExceptionNXDOMAIN as error:
        raise MissingRecords(str(error))
    except (DNSException, dns.exception.DNSException) as error:
        raise SPFTransportFailure(error, name)


def _apply_cidr(address: str, term: SPFTerm) -> str:
    cidr = term.cidr6 if ":" in address else term.cidr4
    if cidr:
        return f"{address}/{cidr}"
    return address


def _resolve_addresses(
    term: SPFTerm,
    domain: str,
    client: DNSClient,
    diagnostics: list[SPFDiagnostic],
) -> list[str]:
    target = _target_domain(term.value or domain)
    if term.kind == "a":
        addresses = _get_addresses(target, client)
        if len(addresses) == 0:
            raise MissingRecords(
                f"An a mechanism points to {target}, but that "
                "domain/subdomain does not have any A/AAAA records."
            )
        return addresses

    try:
        hostnames = client.query_mx(target)
    except DNSExceptionNXDOMAIN as error:
        raise MissingRecords(str(error))
    except (DNSException, dns.exception.DNSException) as error:
        raise SPFTransportFailure(error, target)
    if len(hostnames) == 0:
        raise MissingRecords(
            f"An mx mechanism points to {target}, but that "
            "domain/subdomain does not have any MX records."
        )
    addresses = []
    for hostname in hostnames:
        try:
            hostname = _target_domain(hostname)
            host_addresses = _get_addresses(hostname, client)
            if len(host_addresses) == 0:
                raise MissingRecords(
                    f"The MX host {hostname} does not have any A/AAAA records."
                )
            addresses += host_addresses
        except (MissingRecords, InvalidDirective) as warning:
            diagnostics.append(_diagnostic(warning, domain))
    return addresses


def _resolve_nested(
    target: str,
    client: DNSClient,
    referrer: str,
    recursion: list[str],
) -> SPFResolution:
    target = _target_domain(target)
    if target in recursion:
        pointer = " -> ".join(recursion + [target])
        raise RecursionLoop(f"Loop: {pointer}")
    if len(recursion) >= MAX_RECURSION_DEPTH:
        raise RecursionDepthExceeded(
            f"{target} is more than {MAX_RECURSION_DEPTH} levels deep"
        )
    return _resolve(target, client, referrer, recursion + [target])


def _resolve(
    domain: str,
    client: DNSClient,
    referrer: Optional[str],
    recursion: list[str],
) -> SPFResolution:
    logging.debug(f"Resolving the SPF record on {domain}")
    diagnostics: list[SPFDiagnostic] = []
    try:
        record = query_spf_record(domain, client)
    except (NoRecordFound, MultipleRecordsFound) as warning:
        diagnostics.append(_diagnostic(warning, domain))
        return SPFResolution(domain, None, [], diagnostics)

    try:
        check_spf_syntax(record, domain)
    except InvalidSyntax as warning:
        diagnostics.append(_diagnostic(warning, domain))

    terms = parse_spf_terms(record)
    qualifier = get_all_qualifier(terms)

    redirect = next(filter(lambda t: t.kind == "redirect", terms), None)
    if redirect is not None:
        # A redirect replaces every other mechanism in the record
        logging.debug(f"Following redirect from {domain} to {redirect.value}")
        try:
            redirected = _resolve_nested(redirect.value, client, domain, recursion)
        except _SPFWarning as warning:
            diagnostics.append(_diagnostic(warning, domain))
            return SPFResolution(domain, record, [], diagnostics)
        return SPFResolution(
            domain, record, redirected.entries, diagnostics + redirected.diagnostics
        )

    entries: list[SPFEntry] = []
    for term in terms:
        try:
            if term.kind == "include":
                logging.debug(f"Following include from {domain} to {term.value}")
                included = _resolve_nested(term.value, client, domain, recursion)
                entries += included.entries
                diagnostics += included.diagnostics
            elif term.kind in ("ip4", "ip6"):
                try:
                    network = ipaddress.ip_network(term.value, strict=False)
                except ValueError:
                    raise InvalidDirective(
                        f"{term.value} is not a valid {term.kind} value."
                    )
                if network.version != int(term.kind[-1]):
                    raise InvalidDirective(
                        f"{term.value} is not a valid {term.kind} value."
                    )
                entries.append(make_entry(domain, term.value, qualifier, referrer))
            elif term.kind in ("a", "mx"):
                for address in _resolve_addresses(term, domain, client, diagnostics):
                    entries.append(
                        make_entry(
                            domain, _apply_cidr(address, term), qualifier, referrer
                        )
                    )
            elif term.kind in ("macro", "exp"):
                raise UnsupportedDirective(
                    f"SPF macros and explanations are not evaluated: {term.directive}"
                )
            elif term.kind in ("ptr", "exists"):
                raise UnsupportedDirective(
                    f"The {term.kind} mechanism is not evaluated: {term.directive}"
                )
            elif term.kind == "unknown":
                raise UnknownDirective(f"Unknown directive: {term.directive}")
        except _SPFWarning as warning:
            diagnostics.append(_diagnostic(warning, domain))

    lookup_count = count_lookup_domains(entries)
    reported = set(map(lambda d: d.type, diagnostics))
    if (
        lookup_count > LOOKUP_ADVISORY_THRESHOLD
        and LookupBudgetAdvisory.__name__ not in reported
    ):
        diagnostics.append(
            _diagnostic(
                LookupBudgetAdvisory(
                    f"Resolving the SPF record touches {lookup_count} domains; "
                    f"approaching the {LOOKUP_LIMIT} DNS lookup maximum "
                    "(RFC 7208 § 4.6.4)"
                ),
                domain,
            )
        )
    if lookup_count > LOOKUP_LIMIT and LookupBudgetExceeded.__name__ not in reported:
        diagnostics.append(
            _diagnostic(
                LookupBudgetExceeded(
                    "Resolving the SPF record requires "
                    f"{lookup_count}/{LOOKUP_LIMIT} maximum DNS lookups "
                    "(RFC 7208 § 4.6.4)"
                ),
                domain,
            )
        )

    return SPFResolution(domain, record, entries, diagnostics)


def resolve_spf(
    domain: str,
    *,
    dns_server: Union[str, Sequence[str | Nameserver], None] = DEFAULT_DNS_SERVER,
    referrer: Optional[str] = None,
    client: Optional[DNSClient] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
) -> SPFResolution:
    """
    Resolves the SPF record of a domain into a flat list of authorized
    networks, following ``include``, ``redirect``, ``a`` and ``mx``

    Args:
        domain (str): A domain name
        dns_server (str): The nameserver (or list of nameservers) to query
        referrer (str): The domain that included this one, if any
        client (DNSClient): A DNS client to use instead of one built from
                            ``dns_server``
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        SPFResolution: The resolved entries and diagnostics

    Raises:
        :exc:`spfresolver.spf.SPFTransportFailure`
    """
    domain = _domain_name(domain)
    if domain == "":
        raise ValueError("A domain name is required")
    if client is None:
        nameservers = None
        if isinstance(dns_server, str):
            nameservers = [dns_server]
        elif dns_server:
            nameservers = list(dns_server)
        client = DNSClient(
            nameservers, timeout=timeout, timeout_retries=timeout_retries
        )
    recursion = [domain]
    if referrer is not None:
        referrer = _domain_name(referrer)
        recursion = [referrer, domain]

    return _resolve(domain, client, referrer, recursion)


def check_spf(
    domain: str,
    *,
    dns_server: Union[str, Sequence[str | Nameserver], None] = DEFAULT_DNS_SERVER,
    client: Optional[DNSClient] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
) -> dict:
    """
    Returns a dictionary with resolved SPF entries or an error.

    Args:
        domain (str): A domain name
        dns_server (str): The nameserver (or list of nameservers) to query
        client (DNSClient): A DNS client to use instead of one built from
                            ``dns_server``
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: A ``dict`` with the following keys:
            - ``domain`` - The domain name
            - ``record`` - The SPF record string
            - ``entries`` - A ``list`` of resolved entries
            - ``lookup_count`` - The number of distinct source domains
            - ``diagnostics`` - A ``list`` of diagnostics
            - ``valid`` - True

        If a DNS error occurs, the dictionary will also have the following keys:
            - ``error`` - The error message
            - ``valid`` - False
    """
    domain = normalize_domain(domain)
    spf_results = {
        "domain": domain,
        "record": None,
        "valid": True,
        "lookup_count": 0,
        "entries": [],
        "diagnostics": [],
    }
    try:
        resolution = resolve_spf(
            domain,
            dns_server=dns_server,
            client=client,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
        spf_results["record"] = resolution.record
        spf_results["lookup_count"] = resolution.lookup_count
        spf_results["entries"] = list(map(lambda e: e._asdict(), resolution.entries))
        spf_results["diagnostics"] = list(
            map(lambda d: d._asdict(), resolution.diagnostics)
        )
    except SPFError as error:
        spf_results["error"] = str(error.args[0])
        spf_results["valid"] = False
        if hasattr(error, "data") and error.data:
            for key in error.data:
                spf_results[key] = error.data[key]

    return spf_results
