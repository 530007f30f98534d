#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import random
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

import dns.resolver
import requests
from requests.structures import CaseInsensitiveDict

import mtasts
import mtasts.record
from mtasts import (
    CorruptedCacheEntry,
    HttpsPolicyClient,
    HttpsResponse,
    Mode,
    Policy,
    PolicyCache,
    PolicyConfig,
    Record,
    TrustPolicy,
    make_policy,
    parse_policy_document,
)
from mtasts.utils import is_valid_domain

VALID_POLICY = (
    "version: STSv1\r\n"
    "mode: enforce\r\n"
    "mx: *.example.com\r\n"
    "max_age: 86400\r\n"
)

MISSING_MX_POLICY = "version: STSv1\r\nmode: enforce\r\nmax_age: 86400\r\n"

MISSING_VERSION_POLICY = "mode: enforce\r\nmx: *.example.com\r\nmax_age: 86400\r\n"

RECORD = Record("example.com", '"v=STSv1; id=19840507T234501;"')


def policy_response(body, code=200, message="OK", content_type="text/plain"):
    headers = {}
    if content_type is not None:
        headers["Content-Type"] = content_type
    if isinstance(body, str):
        body = body.encode()
    return HttpsResponse(code, message, headers=headers, body=body, handshake=True)


class FakeResponse:
    """Stands in for a streamed requests.Response"""

    def __init__(self, body=b"", status_code=200, reason="OK", headers=None):
        self.status_code = status_code
        self.reason = reason
        self.headers = CaseInsensitiveDict(
            headers or {"Content-Type": "text/plain"}
        )
        self.url = "https://mta-sts.example.com/.well-known/mta-sts.txt"
        self.raw = None
        self._body = body

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False


def fake_client(response=None, side_effect=None, **kwargs):
    session = MagicMock()
    session.get.return_value = response
    session.get.side_effect = side_effect
    return HttpsPolicyClient(session=session, **kwargs), session


class Test(unittest.TestCase):
    def testValidPolicy(self):
        """A complete enforce policy is valid"""
        policy = make_policy(policy_response(VALID_POLICY), RECORD)

        self.assertTrue(policy.is_valid())
        self.assertEqual(policy.version, "STSv1")
        self.assertEqual(policy.mode, Mode.ENFORCE)
        self.assertEqual(policy.mx_masks, ["*.example.com"])
        self.assertEqual(policy.max_age, 86400)
        self.assertEqual(policy.errors, [])
        self.assertEqual(policy.warnings, [])
        self.assertIs(policy.record, RECORD)
        self.assertEqual(str(policy), VALID_POLICY)
        self.assertFalse(policy.is_expired())

    def testMissingMx(self):
        """An enforce policy without mx lines is not valid"""
        policy = make_policy(policy_response(MISSING_MX_POLICY), RECORD)

        self.assertFalse(policy.is_valid())
        self.assertEqual(policy.mode, Mode.ENFORCE)
        self.assertEqual(policy.mx_masks, [])

    def testNotFound(self):
        """A 404 response produces an invalid policy"""
        response = policy_response(
            "<h1>404 Not Found</h1>No context found for request",
            code=404,
            message="Not Found",
            content_type="text/html",
        )
        policy = make_policy(response, RECORD)

        self.assertFalse(policy.is_valid())
        self.assertEqual(policy.mode, Mode.NONE)
        self.assertEqual(policy.mx_masks, [])
        self.assertIn("Policy request returned HTTP 404 Not Found", policy.errors)

    def testNoHandshake(self):
        """A policy not fetched over TLS is not valid"""
        response = HttpsResponse(
            200,
            "OK",
            headers={"Content-Type": "text/plain"},
            body=VALID_POLICY.encode(),
            handshake=False,
        )
        policy = make_policy(response, RECORD)

        self.assertFalse(policy.is_valid())
        self.assertEqual(policy.mx_masks, [])

    def testNoResponse(self):
        """A missing response produces an invalid policy"""
        policy = make_policy(None, RECORD)

        self.assertFalse(policy.is_valid())
        self.assertEqual(policy.mode, Mode.NONE)

    def testContentTypeWarnings(self):
        """A wrong or missing Content-Type is a warning only"""
        policy = make_policy(
            policy_response(VALID_POLICY, content_type="text/html"), RECORD
        )
        self.assertTrue(policy.is_valid())
        self.assertEqual(
            policy.warnings, ["Content-Type header should be text/plain not text/html"]
        )

        policy = make_policy(policy_response(VALID_POLICY, content_type=None), RECORD)
        self.assertTrue(policy.is_valid())
        self.assertEqual(len(policy.warnings), 1)

        policy = make_policy(
            policy_response(VALID_POLICY, content_type="text/plain; charset=utf-8"),
            RECORD,
        )
        self.assertEqual(policy.warnings, [])

    def testParserNeverRaises(self):
        """Arbitrary bytes always produce a policy"""
        rng = random.Random(8461)
        samples = [
            b"",
            b"\r\n" * 100,
            b":::",
            b": value\r\nkey:\r\n",
            bytes(range(256)),
            b"\xff\xfe\x00mode: enforce",
            b"mx: " + b"a" * 5000,
            b"max_age: 99999999999999999999\r\nmode: testing\r\n",
        ]
        samples += [
            bytes(rng.getrandbits(8) for _ in range(rng.randint(0, 512)))
            for _ in range(50)
        ]
        for sample in samples:
            pairs, validation = parse_policy_document(sample)
            self.assertIsInstance(pairs, list)
            policy = make_policy(policy_response(sample), RECORD)
            self.assertIsInstance(policy, Policy)
            self.assertIsInstance(policy.errors, list)
            self.assertIsInstance(policy.is_valid(), bool)

    def testMalformedLinesSkipped(self):
        """Malformed lines are reported and the remaining pairs are kept"""
        body = (
            b"version: STSv1\r\n"
            b"this is not a pair\r\n"
            b"mode: enforce\r\n"
            b"mx:\r\n"
            b"mx: mail.example.com\r\n"
            b"max_age: 86400\r\n"
        )
        pairs, validation = parse_policy_document(body)

        self.assertEqual(
            pairs,
            [
                ("version", "STSv1"),
                ("mode", "enforce"),
                ("mx", "mail.example.com"),
                ("max_age", "86400"),
            ],
        )
        self.assertEqual(len(validation.errors), 2)
        self.assertTrue(validation.errors[0].startswith("Line 2:"))
        self.assertTrue(validation.errors[1].startswith("Line 4:"))

    def testLongLineSkipped(self):
        """Lines longer than the configured maximum are skipped, not cut"""
        config = PolicyConfig(max_line_length=30)
        body = VALID_POLICY + "mx: a-very-long-host-name.example.com\r\n"
        pairs, validation = parse_policy_document(body.encode(), config)

        self.assertNotIn(("mx", "a-very-long-host-name.example.com"), pairs)
        self.assertIn(("mx", "*.example.com"), pairs)
        self.assertEqual(validation.errors, ["Line 5: Longer than 30 bytes"])

    def testUnknownKeysIgnored(self):
        """Unrecognised keys do not cause errors"""
        body = VALID_POLICY + "valid: true\r\n"
        policy = make_policy(policy_response(body), RECORD)

        self.assertTrue(policy.is_valid())
        self.assertEqual(policy.errors, [])

    def testExtensionKeysIgnored(self):
        """Extension keys with hyphens and dots do not cause errors"""
        body = VALID_POLICY + "x-ext.key: foo\r\nvendor_ext-2: bar\r\n"
        pairs, validation = parse_policy_document(body.encode())
        policy = make_policy(policy_response(body), RECORD)

        self.assertIn(("x-ext.key", "foo"), pairs)
        self.assertEqual(validation.errors, [])
        self.assertTrue(policy.is_valid())
        self.assertEqual(policy.errors, [])

    def testLineFeedOnlyPolicy(self):
        """Policies using bare line feeds are still parsed"""
        policy = make_policy(
            policy_response(VALID_POLICY.replace("\r\n", "\n")), RECORD
        )

        self.assertTrue(policy.is_valid())
        self.assertEqual(policy.mx_masks, ["*.example.com"])

    def testMultipleMx(self):
        """Every mx line is kept in order"""
        body = (
            "version: STSv1\r\nmode: enforce\r\n"
            "mx: mail.example.com\r\nmx: *.example.net\r\nmx: backupmx.example.com\r\n"
            "max_age: 604800\r\n"
        )
        policy = make_policy(policy_response(body), RECORD)

        self.assertEqual(
            policy.mx_masks,
            ["mail.example.com", "*.example.net", "backupmx.example.com"],
        )

    def testUnknownMode(self):
        """Unrecognised modes fall back to none"""
        body = VALID_POLICY.replace("enforce", "strict")
        policy = make_policy(policy_response(body), RECORD)

        self.assertEqual(policy.mode, Mode.NONE)
        self.assertFalse(policy.is_valid())
        self.assertIn("Invalid mode: strict", policy.warnings)

    def testMaxAgeClamping(self):
        """max_age is kept within the configured limits for each mode"""
        config = PolicyConfig(
            policy_min_age=86400, policy_soft_min_age=3600, policy_max_age=31557600
        )

        def build(mode, max_age):
            body = (
                f"version: STSv1\r\nmode: {mode}\r\n"
                f"mx: mail.example.com\r\nmax_age: {max_age}\r\n"
            )
            return make_policy(policy_response(body), RECORD, config)

        policy = build("enforce", 60)
        self.assertEqual(policy.max_age, 86400)
        self.assertTrue(policy.is_valid())
        self.assertEqual(policy.warnings, ["Max age less than config min: 60 < 86400"])

        policy = build("testing", 60)
        self.assertEqual(policy.max_age, 3600)
        self.assertTrue(policy.is_valid())
        self.assertEqual(len(policy.warnings), 1)

        policy = build("none", 60)
        self.assertEqual(policy.max_age, 60)
        self.assertEqual(policy.warnings, [])

        for mode in ["enforce", "testing", "none"]:
            policy = build(mode, 40000000)
            self.assertEqual(policy.max_age, 31557600)
            self.assertIn(
                "Max age more than config max: 40000000 > 31557600", policy.warnings
            )
            self.assertEqual(policy.errors, [])

        for mode, minimum in [("enforce", 86400), ("testing", 3600), ("none", 0)]:
            for max_age in [0, 1, 3599, 3600, 86399, 86400, 90000, 31557600, 99999999]:
                policy = build(mode, max_age)
                self.assertGreaterEqual(policy.max_age, minimum)
                self.assertLessEqual(policy.max_age, config.policy_max_age)

    def testMaxAgeNotNumeric(self):
        """An unreadable max_age defaults to the minimum age and is an error"""
        body = VALID_POLICY.replace("86400", "one day")
        policy = make_policy(policy_response(body), RECORD)

        self.assertEqual(policy.max_age, PolicyConfig().policy_min_age)
        self.assertEqual(policy.errors, ["Invalid max_age: one day"])
        self.assertFalse(policy.is_valid())

    def testMissingRequiredKeys(self):
        """version, mode and max_age are required"""
        policy = make_policy(policy_response("mx: mail.example.com\r\n"), RECORD)

        self.assertEqual(
            policy.errors,
            [
                "Missing required key: version",
                "Missing required key: mode",
                "Missing required key: max_age",
            ],
        )

    def testBodyCap(self):
        """Bodies over the configured size are truncated to exactly that size"""
        config = PolicyConfig(max_body_size=90)
        body = VALID_POLICY + "valid: true\r\n" + "version: STSv1\r\n" * 5
        self.assertGreater(len(body), 90)
        policy = make_policy(policy_response(body), RECORD, config)

        self.assertEqual(len(policy.body), 90)
        self.assertIn("Policy body truncated to 90 bytes", policy.warnings)

    def testExpiry(self):
        """A policy expires max_age seconds after it was fetched"""
        policy = make_policy(policy_response(VALID_POLICY), RECORD)

        self.assertFalse(policy.is_expired(policy.fetch_time + 86399))
        self.assertTrue(policy.is_expired(policy.fetch_time + 86400))

    def testMatchMx(self):
        """MX masks use wildcard matching on the whole hostname"""
        policy = make_policy(policy_response(VALID_POLICY), RECORD)

        self.assertTrue(policy.match_mx("mail.example.com"))
        self.assertTrue(policy.match_mx("MAIL.example.com."))
        self.assertFalse(policy.match_mx("example.com"))
        self.assertFalse(policy.match_mx("mail.example.com.evil.net"))
        self.assertFalse(policy.match_mx("mail.example.net"))

        body = VALID_POLICY.replace("*.example.com", "mail.example.com")
        policy = make_policy(policy_response(body), RECORD)
        self.assertTrue(policy.match_mx("mail.example.com"))
        self.assertFalse(policy.match_mx("mailxexample.com"))

    def testMatchMxTesting(self):
        """Testing policies match any hostname"""
        body = VALID_POLICY.replace("enforce", "testing")
        policy = make_policy(policy_response(body), RECORD)

        for hostname in ["mail.example.com", "example.org", "", "*", "not a host"]:
            self.assertTrue(policy.match_mx(hostname))

    def testRoundTrip(self):
        """Extended policy strings rebuild the policy and its record"""
        policy = make_policy(policy_response(VALID_POLICY), RECORD)
        extended_policy = policy.as_string()
        rebuilt_policy = Policy.from_string(extended_policy)

        self.assertEqual(rebuilt_policy.version, policy.version)
        self.assertEqual(rebuilt_policy.mode, policy.mode)
        self.assertEqual(rebuilt_policy.mx_masks, policy.mx_masks)
        self.assertEqual(rebuilt_policy.max_age, policy.max_age)
        self.assertEqual(rebuilt_policy.fetch_time, policy.fetch_time)
        self.assertEqual(rebuilt_policy.record.domain, "example.com")
        self.assertEqual(rebuilt_policy.record.id, "v=STSv1; id=19840507T234501;")
        self.assertTrue(rebuilt_policy.record.is_same_generation(RECORD))
        self.assertTrue(rebuilt_policy.is_valid())
        self.assertEqual(rebuilt_policy.as_string(), extended_policy)

    def testCorruptedCacheEntry(self):
        """Extended strings without a usable record cannot be loaded"""
        base = VALID_POLICY
        examples = [
            base + "fetch_time: 1700000000\r\nrecord_id: abc\r\n",
            base + "fetch_time: 1700000000\r\ndomain: example.com\r\n",
            base + "fetch_time: 1700000000\r\ndomain: example.com\r\nrecord_id:  \r\n",
            base + "fetch_time: 0\r\ndomain: example.com\r\nrecord_id: abc\r\n",
            base + "fetch_time: soon\r\ndomain: example.com\r\nrecord_id: abc\r\n",
            base + "fetch_time: 1700000000\r\ndomain: not a domain\r\nrecord_id: abc\r\n",
            MISSING_VERSION_POLICY
            + "fetch_time: 1700000000\r\ndomain: example.com\r\nrecord_id: abc\r\n",
            VALID_POLICY,
        ]
        for example in examples:
            with self.assertRaises(CorruptedCacheEntry):
                Policy.from_string(example)

    def testMissingVersionNotSerialised(self):
        """Policies without a version leave it out of the extended string"""
        policy = make_policy(policy_response(MISSING_VERSION_POLICY), RECORD)
        extended_policy = policy.as_string()

        self.assertIsNone(policy.version)
        self.assertNotIn("version", extended_policy)
        self.assertNotIn("None", extended_policy)
        with self.assertRaises(CorruptedCacheEntry):
            Policy.from_string(extended_policy)

    def testRecordToken(self):
        """Records compare by domain and id token"""
        self.assertEqual(RECORD.token, "19840507T234501")
        self.assertEqual(Record("example.com", "v=STSv1;id=abc").token, "abc")
        self.assertEqual(Record("example.com", "opaque").token, "opaque")
        self.assertTrue(
            RECORD.is_same_generation(
                Record("EXAMPLE.com", "v=STSv1; id=19840507T234501;")
            )
        )
        self.assertFalse(
            RECORD.is_same_generation(Record("example.com", "v=STSv1; id=2;"))
        )
        self.assertFalse(
            RECORD.is_same_generation(
                Record("example.net", "v=STSv1; id=19840507T234501;")
            )
        )
        self.assertFalse(RECORD.is_same_generation(None))

        self.assertEqual(Record("example.com", "v=STSv1; id=2024-01;").token, "2024-01")
        self.assertEqual(Record("example.com", "v=STSv1; id=a_b").token, "a_b")
        self.assertFalse(
            Record("example.com", "v=STSv1; id=2024-01;").is_same_generation(
                Record("example.com", "v=STSv1; id=2024-02;")
            )
        )

    def testValidDomain(self):
        self.assertTrue(is_valid_domain("example.com"))
        self.assertTrue(is_valid_domain("mta-sts.example.co.uk"))
        self.assertFalse(is_valid_domain("com"))
        self.assertFalse(is_valid_domain("not a domain"))
        self.assertFalse(is_valid_domain("-bad.example.com"))
        self.assertFalse(is_valid_domain(""))
        self.assertFalse(is_valid_domain(None))

    def testParseMTASTSRecord(self):
        """MTA-STS TXT records are parsed and checked"""
        results = mtasts.record.parse_mta_sts_record("v=STSv1; id=19840507T234501;")
        self.assertEqual(results["tags"], {"v": "STSv1", "id": "19840507T234501"})

        with self.assertRaises(mtasts.record.SPFRecordFoundWhereMTASTSRecordShouldBe):
            mtasts.record.parse_mta_sts_record("v=spf1 -all")
        with self.assertRaises(mtasts.record.MTASTSRecordSyntaxError):
            mtasts.record.parse_mta_sts_record("v=STSv1 id=abc")
        with self.assertRaises(mtasts.record.MTASTSRecordSyntaxError):
            mtasts.record.parse_mta_sts_record("v=STSv1;")

    @patch("mtasts.record.query_dns")
    def testQueryMTASTSRecord(self, query_dns):
        """Only TXT records starting with v=STSv1 are used"""
        query_dns.return_value = ["v=STSv1; id=abc;", "some-verification=123"]
        record = mtasts.record.get_mta_sts_record("Example.com")
        self.assertEqual(record, Record("example.com", "v=STSv1; id=abc;"))
        self.assertEqual(query_dns.call_args[0][0], "_mta-sts.example.com")

        query_dns.return_value = ["v=STSv1; id=abc;", "v=STSv1; id=def;"]
        with self.assertRaises(mtasts.record.MultipleMTASTSRecords):
            mtasts.record.query_mta_sts_record("example.com")

        query_dns.return_value = []
        with self.assertRaises(mtasts.record.MTASTSRecordNotFound):
            mtasts.record.query_mta_sts_record("example.com")

        query_dns.return_value = None
        query_dns.side_effect = dns.resolver.NXDOMAIN()
        with self.assertRaises(mtasts.record.MTASTSRecordNotFound):
            mtasts.record.query_mta_sts_record("example.com")

        query_dns.side_effect = [dns.resolver.NoAnswer(), ["v=STSv1; id=abc;"]]
        with self.assertRaises(mtasts.record.MTASTSRecordInWrongLocation):
            mtasts.record.query_mta_sts_record("example.com")

    def testClientValid(self):
        """The client returns the response to the policy request"""
        client, session = fake_client(FakeResponse(VALID_POLICY.encode()))
        response = client.get_policy(RECORD, 64000)

        self.assertTrue(response.is_successful())
        self.assertEqual(response.code, 200)
        self.assertEqual(response.message, "OK")
        self.assertTrue(response.handshake)
        self.assertEqual(response.peer_certificates, [])
        self.assertEqual(response.get_header("content-type"), "text/plain")
        self.assertEqual(response.text, VALID_POLICY)
        self.assertFalse(response.truncated)

        args, kwargs = session.get.call_args
        self.assertEqual(
            args[0], "https://mta-sts.example.com/.well-known/mta-sts.txt"
        )
        self.assertFalse(kwargs["allow_redirects"])
        self.assertTrue(kwargs["verify"])
        self.assertTrue(kwargs["stream"])

    def testClientOptions(self):
        """Trust policy and port are passed to the request"""
        client, session = fake_client(
            FakeResponse(VALID_POLICY.encode()),
            trust_policy=TrustPolicy.PERMISSIVE,
            port=8443,
        )
        client.get_policy(RECORD)

        args, kwargs = session.get.call_args
        self.assertEqual(
            args[0], "https://mta-sts.example.com:8443/.well-known/mta-sts.txt"
        )
        self.assertFalse(kwargs["verify"])

    def testClientNotFound(self):
        """Error statuses are returned as unsuccessful responses"""
        client, session = fake_client(
            FakeResponse(
                b"<h1>404 Not Found</h1>No context found for request",
                status_code=404,
                reason="Not Found",
                headers={"Content-Type": "text/html"},
            )
        )
        response = client.get_policy(RECORD, 64000)

        self.assertFalse(response.is_successful())
        self.assertEqual(response.code, 404)
        self.assertEqual(response.message, "Not Found")
        self.assertEqual(response.get_header("Content-Type"), "text/html")
        self.assertFalse(make_policy(response, RECORD).is_valid())

    def testClientTruncatesBody(self):
        """Oversized bodies are truncated to the maximum size"""
        body = (VALID_POLICY + "valid: true\r\nversion: STSv1\r\n").encode()
        client, session = fake_client(FakeResponse(body))
        response = client.get_policy(RECORD, 90)

        self.assertTrue(response.is_successful())
        self.assertEqual(len(response.body), 90)
        self.assertTrue(response.truncated)
        self.assertEqual(response.body, body[:90])

    def testClientTransportFailures(self):
        """Transport failures become unsuccessful responses"""
        errors = [
            requests.exceptions.ConnectionError("Connection refused"),
            requests.exceptions.ConnectTimeout("Timed out"),
            requests.exceptions.SSLError("certificate verify failed"),
            OSError("Network is unreachable"),
        ]
        for error in errors:
            client, session = fake_client(side_effect=error)
            response = client.get_policy(RECORD)

            self.assertFalse(response.is_successful())
            self.assertEqual(response.code, 0)
            self.assertFalse(response.handshake)
            self.assertIsNotNone(response.error)
            policy = make_policy(response, RECORD)
            self.assertFalse(policy.is_valid())
            self.assertEqual(policy.mode, Mode.NONE)

    def testClientNullRecord(self):
        """Records without a domain are not requested"""
        client, session = fake_client(FakeResponse(VALID_POLICY.encode()))

        self.assertIsNone(client.get_policy(None, 64000))
        self.assertIsNone(
            client.get_policy(Record(None, "v=STSv1; id=19840507T234501;"), 64000)
        )
        session.get.assert_not_called()

        policy = mtasts.fetch_policy(None, client=client)
        self.assertFalse(policy.is_valid())
        self.assertIsNone(policy.record)
        session.get.assert_not_called()

    def testCacheStaleness(self):
        """Cached policies are stale when expired or the record id changed"""
        policy = make_policy(policy_response(VALID_POLICY), RECORD)
        fresh_record = Record("example.com", "v=STSv1; id=19840507T234501;")
        new_record = Record("example.com", "v=STSv1; id=20240101T000000;")

        self.assertFalse(PolicyCache.is_stale(policy, fresh_record))
        self.assertTrue(PolicyCache.is_stale(policy, new_record))
        self.assertTrue(
            PolicyCache.is_stale(policy, fresh_record, policy.fetch_time + 86400)
        )

        rotated_policy = make_policy(
            policy_response(VALID_POLICY),
            Record("example.com", "v=STSv1; id=2024_01-a;"),
        )
        self.assertTrue(
            PolicyCache.is_stale(
                rotated_policy, Record("example.com", "v=STSv1; id=2024_01-b;")
            )
        )

    def testCacheGetOrFetch(self):
        """Policies are fetched once and served from the cache until stale"""
        cache = PolicyCache()
        fetch = MagicMock(
            side_effect=lambda record: make_policy(
                policy_response(VALID_POLICY), record
            )
        )

        first_policy = cache.get_or_fetch(RECORD, fetch)
        self.assertFalse(first_policy.cached)
        self.assertIs(cache.get("example.com"), first_policy)

        second_policy = cache.get_or_fetch(RECORD, fetch)
        self.assertIsNot(second_policy, first_policy)
        self.assertEqual(second_policy.fetch_time, first_policy.fetch_time)
        self.assertTrue(second_policy.cached)
        self.assertFalse(first_policy.cached)
        self.assertEqual(fetch.call_count, 1)

        new_record = Record("example.com", "v=STSv1; id=2;")
        third_policy = cache.get_or_fetch(new_record, fetch)
        self.assertIsNot(third_policy, first_policy)
        self.assertEqual(fetch.call_count, 2)
        self.assertIs(cache.get("EXAMPLE.COM"), third_policy)

    def testCacheKeepsValidPolicy(self):
        """An invalid fetch does not replace an unexpired cached policy"""
        cache = PolicyCache()
        cached_policy = make_policy(policy_response(VALID_POLICY), RECORD)
        cache.put("example.com", cached_policy)

        new_record = Record("example.com", "v=STSv1; id=2;")
        policy = cache.get_or_fetch(
            new_record,
            lambda record: make_policy(
                policy_response("", code=404, message="Not Found"), record
            ),
        )
        self.assertEqual(policy.fetch_time, cached_policy.fetch_time)
        self.assertEqual(policy.record, RECORD)
        self.assertTrue(policy.is_valid())
        self.assertTrue(policy.cached)
        self.assertFalse(cached_policy.cached)

        empty_cache = PolicyCache()
        policy = empty_cache.get_or_fetch(
            new_record,
            lambda record: make_policy(
                policy_response("", code=404, message="Not Found"), record
            ),
        )
        self.assertFalse(policy.is_valid())
        self.assertIsNone(empty_cache.get("example.com"))

    def testCacheNullRecord(self):
        """Records without a domain are fetched without touching the cache"""
        cache = PolicyCache()
        fetch = MagicMock(side_effect=lambda record: make_policy(None, record))

        policy = cache.get_or_fetch(Record(None, "v=STSv1; id=1;"), fetch)
        self.assertFalse(policy.is_valid())
        self.assertIsNone(cache.get_or_fetch(None, lambda record: None))
        self.assertEqual(fetch.call_count, 1)
        self.assertEqual(len(cache), 0)

    def testCacheCoalescesFetches(self):
        """Concurrent lookups for one domain share a single fetch"""
        cache = PolicyCache()
        release = threading.Event()
        calls = []

        def fetch(record):
            calls.append(record)
            release.wait(5)
            return make_policy(policy_response(VALID_POLICY), record)

        results = []

        def lookup():
            results.append(cache.get_or_fetch(RECORD, fetch))

        threads = [threading.Thread(target=lookup) for _ in range(8)]
        for thread in threads:
            thread.start()
        time.sleep(0.2)
        release.set()
        for thread in threads:
            thread.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(results), 8)
        for result in results:
            self.assertIs(result, results[0])

    def testCacheExportLoad(self):
        """Cached policies survive export and load; corrupted ones are dropped"""
        cache = PolicyCache()
        policy = make_policy(policy_response(VALID_POLICY), RECORD)
        cache.put("example.com", policy)
        entries = cache.export()
        self.assertEqual(entries, {"example.com": policy.as_string()})

        entries["example.net"] = VALID_POLICY
        new_cache = PolicyCache()
        self.assertEqual(new_cache.load(entries), 1)
        self.assertEqual(len(new_cache), 1)
        self.assertNotIn("example.net", new_cache)
        loaded_policy = new_cache.get("example.com")
        self.assertTrue(loaded_policy.cached)
        self.assertFalse(PolicyCache.is_stale(loaded_policy, RECORD))

    @patch("mtasts.get_mta_sts_record")
    def testGetPolicy(self, get_mta_sts_record):
        """Policies are looked up through DNS, the cache and the client"""
        get_mta_sts_record.return_value = RECORD
        client, session = fake_client(FakeResponse(VALID_POLICY.encode()))
        cache = PolicyCache()

        policy = mtasts.get_policy("example.com", cache=cache, client=client)
        self.assertTrue(policy.is_valid())
        self.assertTrue(policy.match_mx("mx1.example.com"))

        policy = mtasts.get_policy("example.com", cache=cache, client=client)
        self.assertTrue(policy.cached)
        self.assertEqual(session.get.call_count, 1)

        results = mtasts.check_mta_sts(
            "example.com",
            mx_hostnames=["mx1.example.com", "mx.example.org"],
            cache=cache,
            client=client,
        )
        self.assertTrue(results["valid"])
        self.assertEqual(results["mode"], "enforce")
        self.assertEqual(
            results["mx_matches"], {"mx1.example.com": True, "mx.example.org": False}
        )

        get_mta_sts_record.side_effect = mtasts.record.MTASTSRecordNotFound(
            "An MTA-STS DNS record does not exist."
        )
        self.assertIsNone(mtasts.get_policy("example.org", cache=cache, client=client))
        results = mtasts.check_mta_sts("example.org", cache=cache, client=client)
        self.assertFalse(results["valid"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
