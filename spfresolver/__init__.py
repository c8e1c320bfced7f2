# -*- coding: utf-8 -*-

"""Resolves SPF records into flat lists of authorized networks"""

from __future__ import annotations

import json
import logging
from csv import DictWriter
from io import StringIO
from time import sleep
from typing import Optional, Union
from collections.abc import Sequence

from dns.nameserver import Nameserver

import spfresolver._constants
from spfresolver._constants import (
    DEFAULT_DNS_SERVER,
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
)
from spfresolver.spf import (
    SPFDiagnostic,
    SPFEntry,
    SPFError,
    SPFResolution,
    SPFTransportFailure,
    check_spf,
    count_lookup_domains,
    make_entry,
    resolve_spf,
)
from spfresolver.utils import DNSClient, DNSException, get_base_domain, normalize_domain

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""


__version__ = spfresolver._constants.__version__

__all__ = [
    "__version__",
    "DNSClient",
    "DNSException",
    "SPFDiagnostic",
    "SPFEntry",
    "SPFError",
    "SPFResolution",
    "SPFTransportFailure",
    "check_domains",
    "check_spf",
    "count_lookup_domains",
    "make_entry",
    "output_to_file",
    "resolve_spf",
    "results_to_csv",
    "results_to_csv_rows",
    "results_to_json",
]


def check_domains(
    domains: list[str],
    *,
    dns_server: Union[str, Sequence[str | Nameserver], None] = DEFAULT_DNS_SERVER,
    client: Optional[DNSClient] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
    wait: float = 0.0,
) -> list[dict]:
    """
    Resolve the SPF records of the given domains

    A DNS failure while resolving one domain is recorded in that domain's
    results and does not stop the others from being checked.

    Args:
        domains (list): A list of domains to check
        dns_server (str): The nameserver (or list of nameservers) to query
        client (DNSClient): A DNS client to use instead of one built from
                            ``dns_server``
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        wait (float): number of seconds to wait between processing domains

    Returns:
       A ``list`` of ``dict`` with the following keys

       - ``domain`` - The domain name
       - ``base_domain`` The base domain
       - ``spf`` - The output of :func:`spfresolver.spf.check_spf`
    """
    domains = sorted(
        list(
            set(
                map(
                    lambda d: normalize_domain(d.rstrip(".\r\n").strip().split(",")[0]),
                    domains,
                )
            )
        )
    )
    not_domains = []
    for domain in domains:
        if "." not in domain:
            not_domains.append(domain)
    for domain in not_domains:
        domains.remove(domain)
    while "" in domains:
        domains.remove("")
    if client is None:
        nameservers = None
        if isinstance(dns_server, str):
            nameservers = [dns_server]
        elif dns_server:
            nameservers = list(dns_server)
        client = DNSClient(
            nameservers, timeout=timeout, timeout_retries=timeout_retries
        )
    results = []
    for domain in domains:
        logging.debug(f"Checking: {domain}")

        domain_results = {
            "domain": domain,
            "base_domain": get_base_domain(domain),
            "spf": check_spf(domain, client=client),
        }
        if not domain_results["spf"]["valid"]:
            logging.warning(
                f"Failed to resolve the SPF record of {domain}: "
                f"{domain_results['spf']['error']}"
            )

        results.append(domain_results)
        if wait > 0.0:
            logging.debug(f"Sleeping for {wait} seconds")
            sleep(wait)

    return results


def results_to_json(
    results: Union[dict[str, object], list[dict[str, object]]],
) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def results_to_csv_rows(
    results: Union[dict, list[dict]],
) -> list[dict]:
    """
    Converts a results dictionary or list of dictionaries and returns a
    list of CSV row dictionaries, one per resolved entry

    Domains without any entries still get a single row.

    Args:
        results (dict): A dictionary of results

    Returns:
        list: A list of CSV row dictionaries
    """
    rows = []

    if type(results) is dict:
        results = [results]

    for result in results:
        _spf = result["spf"]
        domain_row = {
            "domain": result["domain"],
            "base_domain": result["base_domain"],
            "spf_record": _spf["record"],
            "spf_valid": _spf["valid"],
            "spf_lookup_count": _spf["lookup_count"],
            "spf_error": _spf.get("error"),
            "spf_diagnostics": "|".join(
                map(lambda d: f"{d['type']}: {d['message']}", _spf["diagnostics"])
            ),
        }
        if len(_spf["entries"]) == 0:
            rows.append(domain_row)
            continue
        for entry in _spf["entries"]:
            row = domain_row.copy()
            row["source_domain"] = entry["source_domain"]
            row["ip_address_or_cidr"] = entry["ip_address_or_cidr"]
            row["qualifier"] = entry["qualifier"]
            row["referrer"] = entry["referrer"]
            row["is_included"] = entry["is_included"]
            rows.append(row)
    return rows


def results_to_csv(results: Union[dict, list[dict]]) -> str:
    """
    Converts a dictionary of results to CSV

    Args:
        results (dict): A dictionary of results

    Returns:
        str: A CSV of results
    """
    fields = [
        "domain",
        "base_domain",
        "source_domain",
        "ip_address_or_cidr",
        "qualifier",
        "referrer",
        "is_included",
        "spf_lookup_count",
        "spf_valid",
        "spf_record",
        "spf_error",
        "spf_diagnostics",
    ]
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    rows = results_to_csv_rows(results)
    writer.writerows(rows)
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
