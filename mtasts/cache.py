# -*- coding: utf-8 -*-
"""MTA-STS policy cache"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Optional
from collections.abc import Mapping

from mtasts.policy import DEFAULT_CONFIG, MTASTSPolicyError, Policy, PolicyConfig
from mtasts.record import Record
from mtasts.utils import normalize_domain

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


PolicyFetcher = Callable[[Record], Policy]


class _Flight:
    """A policy fetch that other callers for the same domain wait on"""

    def __init__(self):
        self.done = threading.Event()
        self.policy: Optional[Policy] = None
        self.error: Optional[BaseException] = None

    def wait(self) -> Policy:
        self.done.wait()
        if self.error is not None:
            raise self.error
        return self.policy


class PolicyCache:
    """
    Maps domains to their most recently fetched policy

    Entries are replaced when a newer policy is fetched and are never
    removed. Only one fetch per domain runs at a time; concurrent callers of
    :meth:`get_or_fetch` for the same domain share its result.
    """

    def __init__(self):
        self._policies: dict[str, Policy] = {}
        self._flights: dict[str, _Flight] = {}
        self._lock = threading.Lock()

    def get(self, domain: str) -> Optional[Policy]:
        with self._lock:
            return self._policies.get(normalize_domain(domain))

    def put(self, domain: str, policy: Policy):
        with self._lock:
            self._policies[normalize_domain(domain)] = policy

    def __len__(self):
        with self._lock:
            return len(self._policies)

    def __contains__(self, domain: str):
        return self.get(domain) is not None

    @staticmethod
    def is_stale(policy: Policy, record: Record, now: Optional[int] = None) -> bool:
        """
        Checks if a cached policy must be fetched again

        Args:
            policy (Policy): The cached policy
            record (Record): A freshly looked up MTA-STS record
            now (int): The current time in epoch seconds

        Returns:
            bool: True if the policy has expired or the record id changed
        """
        if policy.is_expired(now):
            return True
        if policy.record is None:
            return True
        return policy.record.token != record.token

    def get_or_fetch(self, record: Optional[Record], fetch: PolicyFetcher) -> Policy:
        """
        Returns the cached policy for a record's domain, fetching it first
        if it is missing or stale

        A fetched policy that is not valid does not replace a cached policy
        that has not expired; the cached policy is returned instead. Policies
        served from storage are copies with ``cached`` set. Records without a
        domain are passed straight to ``fetch`` and never cached.

        Args:
            record (Record): A freshly looked up MTA-STS record
            fetch (callable): Builds a new :class:`Policy` for a record

        Returns:
            Policy: The policy for the domain
        """
        if record is None or record.domain is None:
            return fetch(record)
        domain = normalize_domain(record.domain)
        with self._lock:
            cached_policy = self._policies.get(domain)
            if cached_policy is not None and not self.is_stale(
                cached_policy, record
            ):
                return replace(cached_policy, cached=True)
            flight = self._flights.get(domain)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[domain] = flight

        if not leader:
            logging.debug(f"Waiting for a policy fetch already running for {domain}")
            return flight.wait()

        try:
            logging.debug(f"Fetching MTA-STS policy for {domain}")
            policy = fetch(record)
            if policy.is_valid():
                self.put(domain, policy)
            elif cached_policy is not None and not cached_policy.is_expired():
                logging.warning(
                    f"Fetched policy for {domain} is invalid; "
                    "using the cached policy"
                )
                policy = replace(cached_policy, cached=True)
            flight.policy = policy
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._flights.pop(domain, None)
            flight.done.set()

        return policy

    def export(self) -> dict[str, str]:
        """Returns the extended policy strings of every cached policy"""
        with self._lock:
            policies = dict(self._policies)
        entries = {}
        for domain, policy in policies.items():
            if policy.record is None:
                logging.debug(f"Not exporting {domain}: policy has no record")
                continue
            entries[domain] = policy.as_string()
        return entries

    def load(
        self, entries: Mapping[str, str], config: PolicyConfig = DEFAULT_CONFIG
    ) -> int:
        """
        Adds policies from extended policy strings

        Corrupted entries are discarded so that the policy is fetched again.

        Args:
            entries (dict): Domains mapped to extended policy strings
            config (PolicyConfig): Parsing limits

        Returns:
            int: The number of policies loaded
        """
        loaded = 0
        for domain, extended_policy in entries.items():
            try:
                policy = Policy.from_string(extended_policy, config)
            except MTASTSPolicyError as e:
                logging.warning(f"Discarding cached policy for {domain}: {e}")
                continue
            policy.cached = True
            self.put(domain, policy)
            loaded += 1
        return loaded
