# -*- coding: utf-8 -*-

"""Fetches, validates and caches SMTP MTA Strict Transport Security
(MTA-STS) policies"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver

import mtasts._constants
from mtasts.cache import PolicyCache
from mtasts.client import HttpsPolicyClient, HttpsResponse, TrustPolicy
from mtasts.policy import (
    DEFAULT_CONFIG,
    CorruptedCacheEntry,
    Mode,
    MTASTSPolicyError,
    Policy,
    PolicyConfig,
    PolicyValidation,
    build_policy,
    make_policy,
    parse_policy_document,
    policy_from_string,
)
from mtasts.record import MTASTSError, Record, get_mta_sts_record
from mtasts.utils import DNSException, get_mx_records, normalize_domain

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


__version__ = mtasts._constants.__version__

__all__ = [
    "CorruptedCacheEntry",
    "HttpsPolicyClient",
    "HttpsResponse",
    "Mode",
    "MTASTSError",
    "MTASTSPolicyError",
    "Policy",
    "PolicyCache",
    "PolicyConfig",
    "PolicyValidation",
    "Record",
    "TrustPolicy",
    "build_policy",
    "check_mta_sts",
    "fetch_policy",
    "get_policy",
    "make_policy",
    "output_to_file",
    "parse_policy_document",
    "policy_from_string",
    "results_to_json",
]

POLICY_CACHE = PolicyCache()


def fetch_policy(
    record: Optional[Record],
    *,
    client: Optional[HttpsPolicyClient] = None,
    config: PolicyConfig = DEFAULT_CONFIG,
) -> Policy:
    """
    Downloads and builds the policy for a record, bypassing the cache

    Args:
        record (Record): A fresh MTA-STS record
        client (HttpsPolicyClient): The client to download the policy with
        config (PolicyConfig): Parsing limits

    Returns:
        Policy: The policy; check :meth:`Policy.is_valid` before using it
    """
    if client is None:
        client = HttpsPolicyClient()
    response = client.get_policy(record, config.max_body_size)
    return make_policy(response, record, config)


def get_policy(
    domain: str,
    *,
    cache: Optional[PolicyCache] = None,
    client: Optional[HttpsPolicyClient] = None,
    config: PolicyConfig = DEFAULT_CONFIG,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> Optional[Policy]:
    """
    Gets the current MTA-STS policy of a domain

    The MTA-STS record is looked up on every call; the policy is only
    downloaded when the cached copy is missing, expired, or was fetched for
    a different record id.

    Args:
        domain (str): A domain name
        cache (PolicyCache): Cache storage
        client (HttpsPolicyClient): The client to download policies with
        config (PolicyConfig): Parsing limits
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        Policy: The policy, or ``None`` if the domain does not publish a
        usable MTA-STS record
    """
    domain = normalize_domain(domain)
    try:
        record = get_mta_sts_record(
            domain,
            nameservers=nameservers,
            resolver=resolver,
            timeout=timeout,
            timeout_retries=timeout_retries,
        )
    except MTASTSError as error:
        logging.debug(f"No MTA-STS record for {domain}: {error}")
        return None
    if cache is None:
        cache = POLICY_CACHE

    return cache.get_or_fetch(
        record, lambda r: fetch_policy(r, client=client, config=config)
    )


def check_mta_sts(
    domain: str,
    *,
    mx_hostnames: Optional[list[str]] = None,
    check_mx: bool = False,
    cache: Optional[PolicyCache] = None,
    client: Optional[HttpsPolicyClient] = None,
    config: PolicyConfig = DEFAULT_CONFIG,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = 2.0,
    timeout_retries: int = 2,
) -> dict[str, Any]:
    """
    Returns a dictionary with a parsed MTA-STS policy or an error.

    Args:
        domain (str): A domain name
        mx_hostnames (list): MX hostnames to test against the policy
        check_mx (bool): Test the domain's own MX hosts against the policy
        cache (PolicyCache): Cache storage
        client (HttpsPolicyClient): The client to download policies with
        config (PolicyConfig): Parsing limits
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout

    Returns:
        dict: The output of :meth:`Policy.to_dict`, plus ``mx_matches``
        when MX hostnames were tested; or ``valid`` and ``error`` keys
    """
    domain = normalize_domain(domain)
    policy = get_policy(
        domain,
        cache=cache,
        client=client,
        config=config,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
    )
    if policy is None:
        return {
            "domain": domain,
            "valid": False,
            "error": "An MTA-STS DNS record does not exist.",
        }
    results = policy.to_dict()
    hostnames = list(mx_hostnames or [])
    if check_mx:
        try:
            hosts = get_mx_records(
                domain,
                nameservers=nameservers,
                resolver=resolver,
                timeout=timeout,
                timeout_retries=timeout_retries,
            )
            hostnames += [host["hostname"] for host in hosts]
        except DNSException as error:
            results["warnings"].append(f"Unable to check MX hosts: {error}")
    if len(hostnames) > 0:
        results["mx_matches"] = {
            hostname: policy.match_mx(hostname) for hostname in hostnames
        }

    return results


def results_to_json(results: Union[dict[str, Any], list[dict[str, Any]]]) -> str:
    """
    Converts a dictionary of results or list of results to a JSON string

    Args:
        results (dict): A dictionary or list of dictionaries of results

    Returns:
        str: Results in JSON format
    """
    return json.dumps(results, ensure_ascii=False, indent=2)


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON text
    """
    with open(
        path, "w", newline="\n", encoding="utf-8", errors="ignore"
    ) as output_file:
        output_file.write(content)
