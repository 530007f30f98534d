# -*- coding: utf-8 -*-
"""MTA-STS DNS record lookup and parsing"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, TypedDict
from collections.abc import Sequence

import dns.resolver
import dns.exception
from dns.nameserver import Nameserver
import pyleri

from mtasts._constants import SYNTAX_ERROR_MARKER
from mtasts.utils import WSP_REGEX, normalize_domain, query_dns

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


MTA_STS_VERSION_REGEX_STRING = rf"v{WSP_REGEX}*={WSP_REGEX}*STSv1{WSP_REGEX}*;"
MTA_STS_TAG_VALUE_REGEX_STRING = (
    rf"([a-z]{{1,2}}){WSP_REGEX}*={WSP_REGEX}*([a-z0-9]+)"
)
STS_TAG_VALUE_REGEX = re.compile(MTA_STS_TAG_VALUE_REGEX_STRING, re.IGNORECASE)
RECORD_ID_REGEX = re.compile(
    rf"(?:^|;){WSP_REGEX}*id{WSP_REGEX}*={WSP_REGEX}*([^;\s]+)", re.IGNORECASE
)


class MTASTSError(Exception):
    """Raised when a fatal MTA-STS error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the results
        """
        self.data = data
        Exception.__init__(self, msg)


class MTASTSRecordNotFound(MTASTSError):
    """Raised when an MTA-STS record could not be found"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout):
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        MTASTSError.__init__(self, str(error))


class MTASTSRecordSyntaxError(MTASTSError):
    """Raised when an MTA-STS DNS record syntax error is found"""


class InvalidMTASTSTag(MTASTSRecordSyntaxError):
    """Raised when an invalid MTA-STS tag is found"""


class UnrelatedTXTRecordFoundAtMTASTS(MTASTSError):
    """Raised when a TXT record unrelated to MTA-STS is found"""


class SPFRecordFoundWhereMTASTSRecordShouldBe(UnrelatedTXTRecordFoundAtMTASTS):
    """Raised when an SPF record is found where an MTA-STS record should be;
    most likely, the ``_mta-sts`` subdomain
    record does not actually exist, and the request for ``TXT`` records was
    redirected to the base domain"""


class MTASTSRecordInWrongLocation(MTASTSError):
    """Raised when an MTA-STS record is found at the root of a domain"""


class MultipleMTASTSRecords(MTASTSError):
    """Raised when multiple MTA-STS records are found"""


class ParsedMTASTSRecord(TypedDict):
    tags: dict[str, str]
    warnings: list[str]


@dataclass(frozen=True)
class Record:
    """
    The DNS-advertised identity of a policy generation

    Args:
        domain (str): The policy domain
        id (str): The raw MTA-STS TXT record value,
                  e.g. ``v=STSv1; id=19840507T234501;``
    """

    domain: Optional[str]
    id: str

    @property
    def token(self) -> str:
        """The value of the ``id`` tag, or the whole record if it has none"""
        record = self.id.strip().strip('"')
        match = RECORD_ID_REGEX.search(record)
        if match is None:
            return record
        return match.group(1)

    def is_same_generation(self, other: Optional[Record]) -> bool:
        """Checks if two records identify the same version of a policy"""
        if other is None or self.domain is None or other.domain is None:
            return False
        return (
            normalize_domain(self.domain) == normalize_domain(other.domain)
            and self.token == other.token
        )


class _STSGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for MTA-STS records"""

    version_tag = pyleri.Regex(MTA_STS_VERSION_REGEX_STRING, re.IGNORECASE)
    tag_value = pyleri.Regex(MTA_STS_TAG_VALUE_REGEX_STRING, re.IGNORECASE)
    START = pyleri.Sequence(
        version_tag,
        pyleri.List(
            tag_value, delimiter=pyleri.Regex(f"{WSP_REGEX}*;{WSP_REGEX}*"), opt=True
        ),
    )


mta_sts_tags = ["v", "id"]


def query_mta_sts_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> str:
    """
    Queries DNS for an MTA-STS record

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for a record from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        str: the unparsed MTA-STS record string

    Raises:
        :exc:`mtasts.record.MTASTSRecordNotFound`
        :exc:`mtasts.record.MTASTSRecordInWrongLocation`
        :exc:`mtasts.record.MultipleMTASTSRecords`

    """
    domain = normalize_domain(domain)
    logging.debug(f"Checking for an MTA-STS record on {domain}")
    target = f"_mta-sts.{domain}"
    txt_prefix = "v=STSv1"

    try:
        records = query_dns(
            target,
            "TXT",
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
        records = []
        try:
            root_records = query_dns(
                domain,
                "TXT",
                nameservers=nameservers,
                resolver=resolver,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
        except dns.resolver.NoAnswer:
            root_records = []
        except dns.resolver.NXDOMAIN:
            raise MTASTSRecordNotFound("The domain does not exist.")
        except Exception as error:
            raise MTASTSRecordNotFound(error)
        for record in root_records:
            if record.startswith(txt_prefix):
                raise MTASTSRecordInWrongLocation(
                    f"The MTA-STS record must be located at {target}, not {domain}."
                )
    except Exception as error:
        raise MTASTSRecordNotFound(error)

    # RFC 8461 section 3.1: records not starting with the version are ignored
    sts_records = [record for record in records if record.startswith(txt_prefix)]
    if len(sts_records) > 1:
        raise MultipleMTASTSRecords("Multiple MTA-STS records are not permitted.")
    if len(sts_records) == 0:
        raise MTASTSRecordNotFound("An MTA-STS DNS record does not exist.")

    return sts_records[0]


def parse_mta_sts_record(
    record: str,
    *,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> ParsedMTASTSRecord:
    """
    Parses an MTA-STS record

    Args:
        record (str): A MTA-STS record
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        dict: a ``dict`` with the following keys:
         - ``tags`` - a ``dict`` of MTA-STS tags and values
         - ``warnings`` - A ``list`` of warnings

    Raises:
        :exc:`mtasts.record.MTASTSRecordSyntaxError`
        :exc:`mtasts.record.InvalidMTASTSTag`
        :exc:`mtasts.record.SPFRecordFoundWhereMTASTSRecordShouldBe`

    """
    logging.debug("Parsing the MTA-STS record")
    spf_in_sts_error_msg = (
        "Found a SPF record where a MTA-STS record "
        "should be; most likely, the _mta-sts "
        "subdomain record does not actually exist, "
        "and the request for TXT records was "
        "redirected to the base domain"
    )
    warnings = []
    record = record.strip('"')
    if record.lower().startswith("v=spf1"):
        raise SPFRecordFoundWhereMTASTSRecordShouldBe(spf_in_sts_error_msg)
    sts_syntax_checker = _STSGrammar()
    parsed_record = sts_syntax_checker.parse(record)
    if not parsed_record.is_valid:
        expecting = list(
            map(lambda x: str(x).strip('"'), list(parsed_record.expecting))
        )
        marked_record = (
            record[: parsed_record.pos]
            + syntax_error_marker
            + record[parsed_record.pos :]
        )
        expecting = " or ".join(expecting)
        raise MTASTSRecordSyntaxError(
            f"Error: Expected {expecting} "
            f"at position {parsed_record.pos} "
            f"(marked with {syntax_error_marker}) "
            f"in: {marked_record}"
        )

    pairs: list[tuple[str, str]] = STS_TAG_VALUE_REGEX.findall(record)
    tags = {}
    for pair in pairs:
        tag = pair[0].lower().strip()
        tag_value = str(pair[1].strip())
        if tag not in mta_sts_tags:
            raise InvalidMTASTSTag(f"{tag} is not a valid MTA-STS record tag.")
        if tag in tags:
            raise InvalidMTASTSTag(f"Duplicate {tag} tags are not permitted")
        tags[tag] = tag_value
    if "id" not in tags:
        raise MTASTSRecordSyntaxError("The MTA-STS record is missing an id tag.")
    if len(tags["id"]) > 32:
        warnings.append("The id tag value should not exceed 32 characters.")

    results: ParsedMTASTSRecord = {"tags": tags, "warnings": warnings}

    return results


def get_mta_sts_record(
    domain: str,
    *,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> Record:
    """
    Looks up and validates the MTA-STS record of a domain

    Args:
        domain (str): A domain name
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for a record from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        Record: The record identity of the current policy

    Raises:
        :exc:`mtasts.record.MTASTSError`
    """
    domain = normalize_domain(domain)
    record = query_mta_sts_record(
        domain,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    parsed_record = parse_mta_sts_record(record)
    for warning in parsed_record["warnings"]:
        logging.warning(f"{domain}: {warning}")

    return Record(domain, record)
