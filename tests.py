#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import csv
import inspect
import io
import json
import os
import unittest
from unittest.mock import MagicMock, patch

import dns.resolver
from expiringdict import ExpiringDict

import spfresolver
import spfresolver._cli
import spfresolver.spf
import spfresolver.utils
from spfresolver.spf import SPFEntry, resolve_spf
from spfresolver.utils import DNSClient, DNSException, DNSExceptionNXDOMAIN


class FakeDNSClient(object):
    """Answers DNS queries from dictionaries instead of the network"""

    def __init__(self, txt=None, a=None, mx=None, nxdomain=None, broken=None):
        self.txt = txt or {}
        self.a = a or {}
        self.mx = mx or {}
        self.nxdomain = set(nxdomain or [])
        self.broken = set(broken or [])
        self.queries = []

    def _check(self, name, record_type):
        self.queries.append((record_type, name))
        if name in self.broken:
            raise DNSException("The DNS operation timed out.")
        if name in self.nxdomain:
            raise DNSExceptionNXDOMAIN(f"The domain {name} does not exist.")

    def query_txt(self, name):
        self._check(name, "TXT")
        records = self.txt.get(name, [])
        if isinstance(records, str):
            records = [records]
        return [[r] if isinstance(r, str) else list(r) for r in records]

    def query_a(self, name):
        self._check(name, "A")
        return list(self.a.get(name, []))

    def query_mx(self, name):
        self._check(name, "MX")
        return list(self.mx.get(name, []))


def diagnostic_types(resolution):
    return [d.type for d in resolution.diagnostics]


class Test(unittest.TestCase):
    def testSingleIP4Fail(self):
        """A single ip4 mechanism yields one entry with the all qualifier"""
        client = FakeDNSClient(txt={"example.com": "v=spf1 ip4:203.0.113.0/24 -all"})
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            results.entries,
            [SPFEntry("example.com", "203.0.113.0/24", "fail", None, False)],
        )
        self.assertIsNone(results.entries[0].referrer)
        self.assertEqual(results.diagnostics, [])
        self.assertEqual(results.record, "v=spf1 ip4:203.0.113.0/24 -all")
        self.assertEqual(results.lookup_count, 1)

    def testNoRecordFound(self):
        """Domains without a v=spf1 TXT record yield no entries"""
        client = FakeDNSClient(
            txt={"example.com": ["google-site-verification=abc", "v=spf10 -all"]}
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(results.entries, [])
        self.assertEqual(diagnostic_types(results), ["NoRecordFound"])
        self.assertIsNone(results.record)

    def testNonexistentDomain(self):
        """NXDOMAIN for the TXT query is treated as a missing record"""
        client = FakeDNSClient(nxdomain=["example.invalid"])
        results = resolve_spf("example.invalid", client=client)

        self.assertEqual(results.entries, [])
        self.assertEqual(diagnostic_types(results), ["NoRecordFound"])
        self.assertEqual(results.diagnostics[0].message, "The domain does not exist.")

    def testMultipleRecordsFound(self):
        """Multiple SPF records are discarded rather than guessed at"""
        client = FakeDNSClient(
            txt={
                "example.com": [
                    "v=spf1 ip4:192.0.2.1 -all",
                    "v=spf1 ip4:192.0.2.2 -all",
                ]
            }
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(results.entries, [])
        self.assertEqual(diagnostic_types(results), ["MultipleRecordsFound"])

    def testSplitSPFRecord(self):
        """The strings of a TXT record are joined without a separator"""
        client = FakeDNSClient(
            txt={"example.com": [("v=spf1 ip4:192.0.2.1 ", "ip4:192.0.2.2", " ~all")]}
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries],
            ["192.0.2.1", "192.0.2.2"],
        )
        self.assertTrue(all(e.qualifier == "softfail" for e in results.entries))

        client = FakeDNSClient(txt={"example.com": [("v=spf1 ip4:192.0.2.1", "-all")]})
        results = resolve_spf("example.com", client=client)
        self.assertEqual(diagnostic_types(results), ["InvalidDirective"])

    def testQualifiers(self):
        """The all qualifier applies to every entry of the record"""
        expected = {
            "v=spf1 ip4:192.0.2.1 -all": "fail",
            "v=spf1 ip4:192.0.2.1 ~all": "softfail",
            "v=spf1 ip4:192.0.2.1 ?all": "neutral",
            "v=spf1 ip4:192.0.2.1 +all": "pass",
            "v=spf1 ip4:192.0.2.1 all": "pass",
            "v=spf1 ip4:192.0.2.1 -ALL": "fail",
            "v=spf1 ip4:192.0.2.1": "neutral",
            "v=spf1 -ip4:192.0.2.1 ~all": "softfail",
        }
        for record, qualifier in expected.items():
            client = FakeDNSClient(txt={"example.com": record})
            results = resolve_spf("example.com", client=client)
            self.assertEqual(len(results.entries), 1, record)
            self.assertEqual(results.entries[0].qualifier, qualifier, record)

    def testRedirect(self):
        """A redirect resolves like the target with the domain as referrer"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 redirect=_spf.example.net",
                "_spf.example.net": "v=spf1 ip4:198.51.100.0/24 ip6:2001:db8::/32 -all",
            }
        )
        redirected = resolve_spf("example.com", client=client)
        direct = resolve_spf(
            "_spf.example.net", referrer="example.com", client=client
        )

        self.assertEqual(redirected.entries, direct.entries)
        self.assertEqual(len(redirected.entries), 2)
        for entry in redirected.entries:
            self.assertEqual(entry.source_domain, "_spf.example.net")
            self.assertEqual(entry.referrer, "example.com")
            self.assertTrue(entry.is_included)
            self.assertEqual(entry.qualifier, "fail")

    def testRedirectReplacesMechanisms(self):
        """Other mechanisms are ignored when a redirect is present"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 ip4:192.0.2.1 a redirect=_spf.example.net ~all",
                "_spf.example.net": "v=spf1 ip4:198.51.100.1 -all",
            },
            a={"example.com": ["192.0.2.80"]},
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries], ["198.51.100.1"]
        )
        self.assertNotIn(("A", "example.com"), client.queries)

    def testInclude(self):
        """Included entries carry the including domain as their referrer"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 include:_spf.google.com ~all",
                "_spf.google.com": (
                    "v=spf1 ip4:172.217.0.0/19 ip4:172.217.32.0/20 "
                    "ip4:172.217.128.0/19 ~all"
                ),
            }
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 3)
        for entry in results.entries:
            self.assertEqual(entry.qualifier, "softfail")
            self.assertEqual(entry.referrer, "example.com")
            self.assertTrue(entry.is_included)
            self.assertEqual(entry.source_domain, "_spf.google.com")

    def testNestedIncludeReferrer(self):
        """The referrer names the domain that contained the include"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 ip4:192.0.2.1 include:b.example.com -all",
                "b.example.com": "v=spf1 include:c.example.com ~all",
                "c.example.com": "v=spf1 ip4:198.51.100.7 ?all",
            }
        )
        results = resolve_spf("example.com", client=client)

        top, nested = results.entries
        self.assertIsNone(top.referrer)
        self.assertFalse(top.is_included)
        self.assertEqual(nested.source_domain, "c.example.com")
        self.assertEqual(nested.referrer, "b.example.com")
        self.assertEqual(nested.qualifier, "neutral")

    def testIncludeWithoutRecord(self):
        """A missing included record does not stop sibling mechanisms"""
        client = FakeDNSClient(
            txt={
                "example.com": (
                    "v=spf1 include:missing.example.com ip4:192.0.2.1 -all"
                ),
            },
            nxdomain=["missing.example.com"],
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries], ["192.0.2.1"]
        )
        self.assertEqual(results.diagnostics[0].type, "NoRecordFound")
        self.assertEqual(results.diagnostics[0].domain, "missing.example.com")

    def testDistinctDomainCount(self):
        """Lookups are counted by distinct source domain, not by entry"""
        client = FakeDNSClient(
            txt={
                "a.example": (
                    "v=spf1 ip4:192.0.2.1 include:b.example include:c.example -all"
                ),
                "b.example": "v=spf1 ip4:192.0.2.2 a -all",
                "c.example": "v=spf1 ip4:192.0.2.3 -all",
            },
            a={"b.example": ["192.0.2.20"]},
        )
        results = resolve_spf("a.example", client=client)

        self.assertEqual(len(results.entries), 4)
        self.assertEqual(results.lookup_count, 3)
        self.assertEqual(spfresolver.count_lookup_domains(results.entries), 3)

    def testLookupBudgetAdvisory(self):
        """Seven distinct domains produce an advisory but no violation"""
        txt = {"example.com": "v=spf1 {} -all".format(
            " ".join(f"include:s{i}.example.net" for i in range(7))
        )}
        for i in range(7):
            txt[f"s{i}.example.net"] = f"v=spf1 ip4:192.0.2.{i} -all"
        results = resolve_spf("example.com", client=FakeDNSClient(txt=txt))

        self.assertEqual(results.lookup_count, 7)
        self.assertEqual(len(results.entries), 7)
        self.assertEqual(diagnostic_types(results), ["LookupBudgetAdvisory"])

    def testLookupBudgetExceeded(self):
        """Eleven distinct domains exceed the budget without aborting"""
        txt = {"example.com": "v=spf1 {} -all".format(
            " ".join(f"include:s{i}.example.net" for i in range(11))
        )}
        for i in range(11):
            txt[f"s{i}.example.net"] = f"v=spf1 ip4:192.0.2.{i} -all"
        results = resolve_spf("example.com", client=FakeDNSClient(txt=txt))

        self.assertEqual(results.lookup_count, 11)
        self.assertEqual(len(results.entries), 11)
        types = diagnostic_types(results)
        self.assertIn("LookupBudgetExceeded", types)
        self.assertEqual(types.count("LookupBudgetAdvisory"), 1)
        self.assertEqual(types.count("LookupBudgetExceeded"), 1)

    def testBudgetReportedOnce(self):
        """A budget diagnostic raised in a nested record is not repeated"""
        txt = {
            "example.com": "v=spf1 include:hub.example.net -all",
            "hub.example.net": "v=spf1 {} -all".format(
                " ".join(f"include:s{i}.example.net" for i in range(7))
            ),
        }
        for i in range(7):
            txt[f"s{i}.example.net"] = f"v=spf1 ip4:192.0.2.{i} -all"
        results = resolve_spf("example.com", client=FakeDNSClient(txt=txt))

        self.assertEqual(diagnostic_types(results), ["LookupBudgetAdvisory"])
        self.assertEqual(results.diagnostics[0].domain, "hub.example.net")

    def testSPFMacrosSkipped(self):
        """Macros are reported as unsupported and later directives still count"""
        client = FakeDNSClient(
            txt={
                "example.com": (
                    "v=spf1 include:%{ir}.%{v}.%{d}.spf.has.pphosted.com "
                    "exists:%{i}._spf.example.com ip4:192.0.2.1 -all"
                ),
            }
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries], ["192.0.2.1"]
        )
        self.assertEqual(
            diagnostic_types(results), ["UnsupportedDirective", "UnsupportedDirective"]
        )
        self.assertEqual(client.queries, [("TXT", "example.com")])

    def testBareMacroToken(self):
        """A bare macro token is skipped"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 %{i} ip4:192.0.2.1 -all"}
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 1)
        self.assertIn("UnsupportedDirective", diagnostic_types(results))

    def testExpSkipped(self):
        """exp modifiers are recognized but not evaluated"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 ip4:192.0.2.1 -all exp=explain.example.com"}
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 1)
        self.assertEqual(diagnostic_types(results), ["UnsupportedDirective"])
        self.assertNotIn(("TXT", "explain.example.com"), client.queries)

    def testUnknownDirective(self):
        """Unknown directives are reported and skipped"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 ip4:192.0.2.1 -all MS=83859DAEBD1978F9A7A67D3"}
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 1)
        types = diagnostic_types(results)
        self.assertIn("UnknownDirective", types)
        self.assertIn("InvalidSyntax", types)

    def testInvalidIPValues(self):
        """Invalid ip4 and ip6 values are reported and skipped"""
        client = FakeDNSClient(
            txt={
                "example.com": (
                    "v=spf1 ip4:relay.mailchannels.net ip4:2001:db8::1 "
                    "ip6:192.0.2.1 ip4:78.46.96.236/99 ip4:192.0.2.1 ~all"
                ),
            }
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries], ["192.0.2.1"]
        )
        self.assertEqual(diagnostic_types(results).count("InvalidDirective"), 4)

    def testIncludeLoop(self):
        """Include loops terminate with a diagnostic"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 ip4:192.0.2.1 include:example.com -all"}
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 1)
        self.assertEqual(diagnostic_types(results), ["RecursionLoop"])

    def testRedirectLoop(self):
        """Redirect loops terminate with a diagnostic"""
        client = FakeDNSClient(
            txt={
                "a.example": "v=spf1 redirect=b.example",
                "b.example": "v=spf1 redirect=a.example",
            }
        )
        results = resolve_spf("a.example", client=client)

        self.assertEqual(results.entries, [])
        self.assertEqual(diagnostic_types(results), ["RecursionLoop"])
        self.assertIn(
            "a.example -> b.example -> a.example", results.diagnostics[0].message
        )

    def testRecursionDepth(self):
        """Deep chains stop at the maximum recursion depth"""
        txt = {}
        for i in range(40):
            txt[f"d{i}.example"] = f"v=spf1 ip4:192.0.2.1 include:d{i + 1}.example -all"
        results = resolve_spf("d0.example", client=FakeDNSClient(txt=txt))

        self.assertIn("RecursionDepthExceeded", diagnostic_types(results))
        self.assertEqual(
            len(results.entries), spfresolver._constants.MAX_RECURSION_DEPTH
        )

    def testDuplicateIncludeIsNotALoop(self):
        """The same domain included twice is resolved twice"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 include:b.example include:b.example -all",
                "b.example": "v=spf1 ip4:192.0.2.1 -all",
            }
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 2)
        self.assertEqual(results.lookup_count, 1)
        self.assertEqual(results.diagnostics, [])

    def testSPFAMechanism(self):
        """a mechanisms resolve to A and AAAA addresses"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 a a:mail.example.com/24//64 -all"},
            a={
                "example.com": ["192.0.2.10"],
                "mail.example.com": ["192.0.2.25", "2001:db8::25"],
            },
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries],
            ["192.0.2.10", "192.0.2.25/24", "2001:db8::25/64"],
        )
        self.assertTrue(all(e.source_domain == "example.com" for e in results.entries))

    def testSPFMXMechanism(self):
        """mx mechanisms resolve every exchange to its addresses"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 mx mx:example.org/28 -all"},
            mx={
                "example.com": ["mx1.example.com", "mx2.example.com"],
                "example.org": ["mx.example.org"],
            },
            a={
                "mx1.example.com": ["192.0.2.1"],
                "mx2.example.com": ["192.0.2.2"],
                "mx.example.org": ["198.51.100.20"],
            },
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries],
            ["192.0.2.1", "192.0.2.2", "198.51.100.20/28"],
        )
        self.assertEqual(results.lookup_count, 1)

    def testSPFMissingRecords(self):
        """a and mx mechanisms without records produce diagnostics"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 a:nothing.example.com mx "
                "mx:gone.example.com -all"
            },
            mx={"example.com": ["mx1.example.com", "mx2.example.com"]},
            a={"mx2.example.com": ["192.0.2.2"]},
            nxdomain=["gone.example.com"],
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(
            [e.ip_address_or_cidr for e in results.entries], ["192.0.2.2"]
        )
        self.assertEqual(diagnostic_types(results), ["MissingRecords"] * 3)

    def testTransportFailure(self):
        """DNS transport failures propagate"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 include:broken.example.com -all"},
            broken=["broken.example.com"],
        )
        with self.assertRaises(spfresolver.SPFTransportFailure) as context:
            resolve_spf("example.com", client=client)
        self.assertEqual(context.exception.domain, "broken.example.com")

    def testAddressTransportFailure(self):
        """DNS transport failures from a and mx lookups propagate"""
        cases = [
            ("v=spf1 a:broken.example.com -all", {}, "broken.example.com"),
            ("v=spf1 mx:broken.example.com -all", {}, "broken.example.com"),
            (
                "v=spf1 ip4:192.0.2.1 mx -all",
                {"example.com": ["mx.broken.example.com"]},
                "mx.broken.example.com",
            ),
        ]
        for record, mx, failed in cases:
            with self.subTest(record=record):
                client = FakeDNSClient(
                    txt={"example.com": record}, mx=mx, broken=[failed]
                )
                with self.assertRaises(spfresolver.SPFTransportFailure) as context:
                    resolve_spf("example.com", client=client)
                self.assertEqual(context.exception.domain, failed)
                self.assertEqual(context.exception.data, {"failed_domain": failed})

    def testInvalidTargetNames(self):
        """Targets that are not valid DNS names produce diagnostics"""
        long_label = "x" * 64
        cases = [
            "v=spf1 include:bad..example.net ip4:192.0.2.1 -all",
            f"v=spf1 include:{long_label}.example.net ip4:192.0.2.1 -all",
            "v=spf1 a:bad..example.net ip4:192.0.2.1 -all",
            "v=spf1 ip4:192.0.2.1 mx:bad..example.net -all",
        ]
        for record in cases:
            with self.subTest(record=record):
                client = FakeDNSClient(txt={"example.com": record})
                results = resolve_spf("example.com", client=client)

                self.assertEqual(
                    results.entries,
                    [SPFEntry("example.com", "192.0.2.1", "fail", None, False)],
                )
                self.assertEqual(diagnostic_types(results), ["InvalidDirective"])
                self.assertEqual(client.queries, [("TXT", "example.com")])

        client = FakeDNSClient(txt={"example.com": "v=spf1 redirect=bad..example"})
        results = resolve_spf("example.com", client=client)
        self.assertEqual(results.entries, [])
        self.assertEqual(diagnostic_types(results), ["InvalidDirective"])

    def testNullMX(self):
        """A null MX host is reported instead of queried"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 mx ip4:192.0.2.1 -all"},
            mx={"example.com": [""]},
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 1)
        self.assertEqual(diagnostic_types(results), ["InvalidDirective"])
        self.assertNotIn(("A", ""), client.queries)

    def testTrailingDotTargets(self):
        """Targets with a trailing dot name the same domain"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 include:b.example include:B.example. -all",
                "b.example": "v=spf1 ip4:192.0.2.1 -all",
            }
        )
        results = resolve_spf("example.com", client=client)

        self.assertEqual(len(results.entries), 2)
        self.assertEqual(
            set(e.source_domain for e in results.entries), {"b.example"}
        )
        self.assertEqual(results.lookup_count, 1)

        client = FakeDNSClient(
            txt={"example.com": "v=spf1 ip4:192.0.2.1 include:example.com. -all"}
        )
        results = resolve_spf("example.com.", client=client)
        self.assertEqual(len(results.entries), 1)
        self.assertEqual(diagnostic_types(results), ["RecursionLoop"])

    def testCheckDomainsIsolatesFailures(self):
        """One domain's DNS failure does not abort the batch"""
        client = FakeDNSClient(
            txt={"example.com": "v=spf1 ip4:192.0.2.1 -all"},
            broken=["broken.example.net"],
        )
        results = spfresolver.check_domains(
            ["Example.com.", "broken.example.net", "localhost"], client=client
        )

        self.assertEqual(len(results), 2)
        broken, good = results
        self.assertEqual(broken["domain"], "broken.example.net")
        self.assertFalse(broken["spf"]["valid"])
        self.assertIn("timed out", broken["spf"]["error"])
        self.assertEqual(broken["spf"]["failed_domain"], "broken.example.net")
        self.assertTrue(good["spf"]["valid"])
        self.assertEqual(good["base_domain"], "example.com")
        self.assertEqual(good["spf"]["lookup_count"], 1)
        self.assertEqual(
            good["spf"]["entries"][0]["ip_address_or_cidr"], "192.0.2.1"
        )

    def testResultsOutput(self):
        """Results convert to JSON and to one CSV row per entry"""
        client = FakeDNSClient(
            txt={
                "example.com": "v=spf1 ip4:192.0.2.1 include:b.example -all",
                "b.example": "v=spf1 ip4:192.0.2.2 ~all",
                "example.org": "v=spf1 -all",
            }
        )
        results = spfresolver.check_domains(
            ["example.com", "example.org"], client=client
        )

        parsed = json.loads(spfresolver.results_to_json(results))
        self.assertEqual(parsed[0]["spf"]["entries"][1]["referrer"], "example.com")

        rows = list(csv.DictReader(io.StringIO(spfresolver.results_to_csv(results))))
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[1]["source_domain"], "b.example")
        self.assertEqual(rows[1]["qualifier"], "softfail")
        self.assertEqual(rows[1]["spf_lookup_count"], "2")
        self.assertEqual(rows[2]["domain"], "example.org")
        self.assertEqual(rows[2]["ip_address_or_cidr"], "")

    def testParseSPFTerm(self):
        """Directives are parsed into tagged terms"""
        parse = spfresolver.spf.parse_spf_term
        self.assertEqual(parse("redirect=_spf.example.net").kind, "redirect")
        self.assertEqual(parse("redirect=_spf.example.net").value, "_spf.example.net")
        self.assertEqual(parse("include:_spf.google.com").value, "_spf.google.com")
        self.assertEqual(parse("~include:_spf.google.com").qualifier, "~")
        self.assertEqual(parse("IP4:147.75.8.208").kind, "ip4")
        self.assertEqual(parse("ip6:2001:db8::/32").value, "2001:db8::/32")
        self.assertEqual(parse("a").value, "")
        self.assertEqual(parse("a/24").cidr4, "24")
        self.assertEqual(parse("mx:example.org//64").cidr6, "64")
        self.assertEqual(parse("-all").kind, "all")
        self.assertEqual(parse("exp=explain.example.com").kind, "exp")
        self.assertEqual(parse("exists:%{i}.example.com").kind, "macro")
        self.assertEqual(parse("ptr").kind, "ptr")
        self.assertEqual(parse("include:").kind, "unknown")
        self.assertEqual(parse("a:").kind, "unknown")
        self.assertEqual(parse("allow").kind, "unknown")
        self.assertEqual(parse("mxhost.example.com").kind, "unknown")

    def testMakeEntry(self):
        """Entries are included exactly when they have a referrer"""
        entry = spfresolver.make_entry("example.com", "192.0.2.1", "fail")
        self.assertFalse(entry.is_included)
        entry = spfresolver.make_entry(
            "b.example", "192.0.2.1", "fail", referrer="example.com"
        )
        self.assertTrue(entry.is_included)
        self.assertEqual(entry._asdict()["referrer"], "example.com")

    def testEmptyDomain(self):
        """A domain name is required"""
        self.assertRaises(ValueError, resolve_spf, " ", client=FakeDNSClient())

    def testNormalizeDomain(self):
        result = spfresolver.utils.normalize_domain("Ex\u200bample.COM")
        self.assertEqual(result, "example.com")

    def testGetBaseDomain(self):
        subdomain = "foo.example.com"
        result = spfresolver.utils.get_base_domain(subdomain)
        assert result == "example.com"

    def testDNSClientTXTSegments(self):
        """The DNS client keeps the character-strings of each TXT record"""
        answer = MagicMock()
        answer.strings = [b"v=spf1 ip4:192.0.2.1 ", b"-all"]
        resolver = MagicMock()
        resolver.resolve.return_value = [answer]
        client = DNSClient(
            resolver=resolver, cache=ExpiringDict(max_len=10, max_age_seconds=10)
        )

        self.assertEqual(
            client.query_txt("example.com"), [["v=spf1 ip4:192.0.2.1 ", "-all"]]
        )
        client.query_txt("example.com")
        self.assertEqual(resolver.resolve.call_count, 1)

    def testDNSClientErrors(self):
        """NoAnswer is empty, NXDOMAIN and timeouts raise"""
        resolver = MagicMock()
        resolver.resolve.side_effect = dns.resolver.NoAnswer()
        client = DNSClient(
            resolver=resolver, cache=ExpiringDict(max_len=10, max_age_seconds=10)
        )
        self.assertEqual(client.query_txt("example.com"), [])
        self.assertEqual(client.query_mx("example.com"), [])
        self.assertEqual(client.query_a("example.com"), [])

        resolver.resolve.side_effect = dns.resolver.NXDOMAIN()
        self.assertRaises(DNSExceptionNXDOMAIN, client.query_txt, "example.invalid")

        resolver = MagicMock()
        resolver.resolve.side_effect = dns.resolver.LifetimeTimeout(
            timeout=2.0, errors=[]
        )
        client = DNSClient(
            resolver=resolver,
            timeout_retries=1,
            cache=ExpiringDict(max_len=10, max_age_seconds=10),
        )
        self.assertRaises(DNSException, client.query_txt, "example.com")
        self.assertEqual(resolver.resolve.call_count, 2)

    def testDNSClientMX(self):
        """MX hostnames are returned by preference"""
        answers = []
        for text in ["20 mx2.example.com.", "10 MX1.example.com."]:
            answer = MagicMock()
            answer.to_text.return_value = text
            answers.append(answer)
        resolver = MagicMock()
        resolver.resolve.return_value = answers
        client = DNSClient(
            resolver=resolver, cache=ExpiringDict(max_len=10, max_age_seconds=10)
        )

        self.assertEqual(
            client.query_mx("example.com"), ["mx1.example.com", "mx2.example.com"]
        )

    def testTimeoutDefaults(self):
        """Batch checks use the same DNS timeout defaults as the resolver"""
        parameters = inspect.signature(spfresolver.check_domains).parameters
        resolver_parameters = inspect.signature(resolve_spf).parameters

        for name in ["dns_server", "timeout", "timeout_retries"]:
            self.assertEqual(
                parameters[name].default, resolver_parameters[name].default
            )

    def testCLIFormat(self):
        """The CLI rejects unknown formats and prints CSV on request"""
        client = FakeDNSClient(txt={"example.com": "v=spf1 ip4:192.0.2.1 -all"})
        results = spfresolver.check_domains(["example.com"], client=client)

        with patch("sys.argv", ["spfresolver", "-f", "xml", "example.com"]):
            with patch("sys.stderr", new_callable=io.StringIO):
                self.assertRaises(SystemExit, spfresolver._cli._main)

        with patch("sys.argv", ["spfresolver", "-f", "CSV", "example.com"]):
            with patch.object(
                spfresolver._cli, "check_domains", return_value=results
            ) as check_domains:
                with patch("sys.stdout", new_callable=io.StringIO) as stdout:
                    spfresolver._cli._main()

        check_domains.assert_called_once()
        rows = list(csv.DictReader(io.StringIO(stdout.getvalue().strip())))
        self.assertEqual(rows[0]["ip_address_or_cidr"], "192.0.2.1")

    @unittest.skipUnless(os.environ.get("NETWORK_TESTS"), "no network")
    def testKnownGood(self):
        """A domain with a published SPF record resolves to entries"""
        results = resolve_spf("google.com")
        self.assertTrue(len(results.entries) > 0)
        self.assertTrue(results.lookup_count > 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
