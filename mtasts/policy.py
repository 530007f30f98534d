# -*- coding: utf-8 -*-
"""SMTP MTA Strict Transport Security (MTA-STS) policy parsing and validation"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

from mtasts._constants import (
    MAX_BODY_SIZE,
    MAX_LINE_LENGTH,
    MTA_STS_CONTENT_TYPE,
    POLICY_MAX_AGE,
    POLICY_MIN_AGE,
    POLICY_SOFT_MIN_AGE,
)
from mtasts.record import MTASTSError, Record
from mtasts.utils import is_valid_domain, normalize_domain

if TYPE_CHECKING:
    from mtasts.client import HttpsResponse

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


POLICY_LINE_REGEX = re.compile(
    rb"^[ \t]*([a-z0-9][a-z0-9_.-]{0,31})[ \t]*:[ \t]*(\S.*?)[ \t]*$",
    re.IGNORECASE,
)
MAX_AGE_REGEX = re.compile(r"^[0-9]{1,10}$")

POLICY_KEYS = ["version", "mode", "mx", "max_age"]
REQUIRED_KEYS = ["version", "mode", "max_age"]


class MTASTSPolicyError(MTASTSError):
    """Raised when an MTA-STS policy cannot be constructed"""


class CorruptedCacheEntry(MTASTSPolicyError):
    """Raised when an extended policy string is missing the version,
    domain, record_id and/or fetch_time needed to rebuild its record"""


class Mode(str, Enum):
    """MTA-STS policy modes"""

    NONE = "none"
    TESTING = "testing"
    ENFORCE = "enforce"

    @classmethod
    def get(cls, value: Optional[str]) -> Optional[Mode]:
        if value is None:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PolicyConfig:
    """
    Limits applied while parsing and building policies

    Args:
        policy_min_age (int): Minimum max_age in seconds for enforce mode,
                              and the fallback for an unreadable max_age
        policy_soft_min_age (int): Minimum max_age in seconds for testing mode
        policy_max_age (int): Maximum max_age in seconds for every mode
        max_line_length (int): Maximum length of a policy line in bytes
        max_body_size (int): Maximum policy body size in bytes
    """

    policy_min_age: int = POLICY_MIN_AGE
    policy_soft_min_age: int = POLICY_SOFT_MIN_AGE
    policy_max_age: int = POLICY_MAX_AGE
    max_line_length: int = MAX_LINE_LENGTH
    max_body_size: int = MAX_BODY_SIZE


DEFAULT_CONFIG = PolicyConfig()


class PolicyValidation:
    """Errors and warnings collected while a policy is parsed and built"""

    def __init__(self):
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def add_error(self, error: str):
        logging.debug(f"Policy error: {error}")
        self.errors.append(error)

    def add_warning(self, warning: str):
        logging.debug(f"Policy warning: {warning}")
        self.warnings.append(warning)

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def __repr__(self):
        return f"PolicyValidation(errors={self.errors!r}, warnings={self.warnings!r})"


def get_policy_body(
    response: HttpsResponse,
    config: PolicyConfig,
    validation: PolicyValidation,
) -> Optional[bytes]:
    """
    Checks an HTTPS response and extracts the policy body from it

    Args:
        response (HttpsResponse): The response to the policy request
        config (PolicyConfig): Parsing limits
        validation (PolicyValidation): Collects errors and warnings

    Returns:
        bytes: The body, capped at ``config.max_body_size`` bytes, or ``None``
        if the response cannot carry a usable policy
    """
    if not response.is_successful():
        if response.error is not None:
            validation.add_error(f"Policy request failed: {response.error}")
        else:
            validation.add_error(
                f"Policy request returned HTTP {response.code} {response.message}"
            )
        return None
    if not response.handshake:
        validation.add_error("Policy was not retrieved over a TLS connection")
        return None

    content_type = response.get_header("Content-Type")
    if content_type is None:
        validation.add_warning(
            "The Content-Type header is missing. It should "
            f"be set to {MTA_STS_CONTENT_TYPE}"
        )
    else:
        content_type = content_type.split(";")[0].strip().lower()
        if content_type != MTA_STS_CONTENT_TYPE:
            validation.add_warning(
                f"Content-Type header should be "
                f"{MTA_STS_CONTENT_TYPE} not {content_type}"
            )

    body = response.body or b""
    if response.truncated or len(body) > config.max_body_size:
        validation.add_warning(
            f"Policy body truncated to {config.max_body_size} bytes"
        )
    return body[: config.max_body_size]


def parse_policy_document(
    body: bytes, config: PolicyConfig = DEFAULT_CONFIG
) -> tuple[list[tuple[str, str]], PolicyValidation]:
    """
    Splits a policy document into key/value pairs

    Malformed and oversized lines are skipped and recorded as errors; this
    function does not raise for any input.

    Args:
        body (bytes): The policy document
        config (PolicyConfig): Parsing limits

    Returns:
        tuple: A ``list`` of ``(key, value)`` tuples and the
        :class:`PolicyValidation` for the document
    """
    validation = PolicyValidation()
    pairs = []
    if isinstance(body, str):
        body = body.encode("utf-8", errors="replace")
    if b"\n" in body and b"\r\n" not in body:
        body = body.replace(b"\n", b"\r\n")
    lines = body.split(b"\r\n")
    for i in range(len(lines)):
        line_number = i + 1
        line = lines[i]
        if line.strip() == b"":
            continue
        if len(line) > config.max_line_length:
            validation.add_error(
                f"Line {line_number}: Longer than {config.max_line_length} bytes"
            )
            continue
        match = POLICY_LINE_REGEX.match(line)
        if match is None:
            text = line.decode("utf-8", errors="replace")
            validation.add_error(f"Line {line_number}: Not a key: value pair: {text}")
            continue
        key = match.group(1).decode("ascii").lower()
        value = match.group(2).decode("utf-8", errors="replace")
        pairs.append((key, value))

    return pairs, validation


def build_policy(
    pairs: list[tuple[str, str]],
    record: Optional[Record] = None,
    config: PolicyConfig = DEFAULT_CONFIG,
    *,
    validation: Optional[PolicyValidation] = None,
    fetch_time: Optional[int] = None,
    certificates: Optional[list] = None,
    body: bytes = b"",
) -> Policy:
    """
    Builds a policy from parsed key/value pairs

    Args:
        pairs (list): ``(key, value)`` tuples from
                      :func:`parse_policy_document`
        record (Record): The DNS record the policy was fetched for; when
                         both it and ``fetch_time`` are omitted it is
                         rebuilt from the extended keys
        config (PolicyConfig): Age limits
        validation (PolicyValidation): Errors and warnings collected so far
        fetch_time (int): Epoch seconds of the fetch; read from the
                          ``fetch_time`` key when omitted
        certificates (list): The peer certificate chain
        body (bytes): The document the pairs were parsed from

    Returns:
        Policy: The policy

    Raises:
        :exc:`mtasts.policy.CorruptedCacheEntry`
    """
    if validation is None:
        validation = PolicyValidation()
    version = None
    mode = Mode.NONE
    mx_masks = []
    max_age = 0
    seen_keys = []

    for key, value in pairs:
        if key in POLICY_KEYS and key != "mx":
            if key in seen_keys:
                validation.add_warning(f"Duplicate key: {key}")
            seen_keys.append(key)
        if key == "version":
            version = value
        elif key == "mode":
            mode = Mode.get(value)
            if mode is None:
                validation.add_warning(f"Invalid mode: {value}")
                mode = Mode.NONE
        elif key == "mx":
            mx_masks.append(value)
        elif key == "max_age":
            if MAX_AGE_REGEX.match(value):
                max_age = int(value)
            else:
                logging.error(
                    f"max_age: '{value}' is in wrong format. "
                    "Default policy min age is being used"
                )
                validation.add_error(f"Invalid max_age: {value}")
                max_age = config.policy_min_age

    for required_key in REQUIRED_KEYS:
        if required_key not in seen_keys:
            validation.add_error(f"Missing required key: {required_key}")

    if max_age > config.policy_max_age:
        validation.add_warning(
            f"Max age more than config max: {max_age} > {config.policy_max_age}"
        )
        max_age = config.policy_max_age
    if mode == Mode.ENFORCE and max_age < config.policy_min_age:
        validation.add_warning(
            f"Max age less than config min: {max_age} < {config.policy_min_age}"
        )
        max_age = config.policy_min_age
    elif mode == Mode.TESTING and max_age < config.policy_soft_min_age:
        validation.add_warning(
            "Max age less than config soft min: "
            f"{max_age} < {config.policy_soft_min_age}"
        )
        max_age = config.policy_soft_min_age

    # Extended policy strings carry their own fetch time and record
    if fetch_time is None:
        fetch_time = 0
        for key, value in pairs:
            if key == "fetch_time":
                try:
                    fetch_time = int(value)
                except ValueError:
                    logging.error("Policy fetch_time invalid")
        if record is None:
            record = _make_record(pairs, version, fetch_time)

    return Policy(
        version=version,
        mode=mode,
        mx_masks=mx_masks,
        max_age=max_age,
        fetch_time=fetch_time,
        record=record,
        certificates=certificates or [],
        body=body,
        validation=validation,
    )


def _make_record(
    pairs: list[tuple[str, str]], version: Optional[str], fetch_time: int
) -> Record:
    domain = None
    record_id = None
    for key, value in pairs:
        if key == "record_id" and value.strip() != "":
            record_id = value.strip()
        elif key == "domain" and is_valid_domain(value):
            domain = normalize_domain(value)

    if version is None or domain is None or record_id is None or fetch_time <= 0:
        raise CorruptedCacheEntry(
            "Record missing version, domain, record_id and/or fetch_time",
            data={
                "version": version,
                "domain": domain,
                "record_id": record_id,
                "fetch_time": fetch_time,
            },
        )
    return Record(domain, f"v={version}; id={record_id};")


def make_policy(
    response: Optional[HttpsResponse],
    record: Optional[Record],
    config: PolicyConfig = DEFAULT_CONFIG,
) -> Policy:
    """
    Builds a policy from the response to a policy request

    The result is always a :class:`Policy`; problems with the response or the
    document are reported through :meth:`Policy.is_valid` and
    ``Policy.errors``.

    Args:
        response (HttpsResponse): The response, or ``None`` if no request
                                  was made
        record (Record): A fresh DNS record for the policy domain
        config (PolicyConfig): Parsing limits

    Returns:
        Policy: The policy
    """
    validation = PolicyValidation()
    fetch_time = int(time.time())
    certificates = []
    body = None
    if response is None:
        validation.add_error("No policy response")
    else:
        body = get_policy_body(response, config, validation)
        try:
            certificates = list(response.peer_certificates)
        except Exception as e:
            logging.error(f"Handshake certificate chain not found: {e}")
            certificates = []

    pairs = []
    if body is not None:
        pairs, document_validation = parse_policy_document(body, config)
        validation.errors += document_validation.errors
        validation.warnings += document_validation.warnings

    return build_policy(
        pairs,
        record,
        config,
        validation=validation,
        fetch_time=fetch_time,
        certificates=certificates,
        body=body or b"",
    )


def policy_from_string(
    extended_policy: str, config: PolicyConfig = DEFAULT_CONFIG
) -> Policy:
    """
    Rebuilds a policy and its record from an extended policy string

    Args:
        extended_policy (str): A string produced by :meth:`Policy.as_string`
        config (PolicyConfig): Parsing limits

    Returns:
        Policy: The policy

    Raises:
        :exc:`mtasts.policy.CorruptedCacheEntry`
    """
    body = extended_policy.encode("utf-8")
    pairs, validation = parse_policy_document(body, config)
    return build_policy(pairs, None, config, validation=validation, body=body)


@dataclass
class Policy:
    """
    A parsed MTA-STS policy and the DNS record it was fetched for

    Instances are built by :func:`make_policy` or
    :func:`policy_from_string` and are not changed afterwards.
    :class:`mtasts.cache.PolicyCache` serves copies with ``cached`` set.
    """

    version: Optional[str] = None
    mode: Mode = Mode.NONE
    mx_masks: list[str] = field(default_factory=list)
    max_age: int = 0
    fetch_time: int = 0
    record: Optional[Record] = None
    certificates: list = field(default_factory=list, repr=False)
    body: bytes = field(default=b"", repr=False)
    validation: PolicyValidation = field(default_factory=PolicyValidation)
    cached: bool = False

    @classmethod
    def from_string(
        cls, extended_policy: str, config: PolicyConfig = DEFAULT_CONFIG
    ) -> Policy:
        return policy_from_string(extended_policy, config)

    @property
    def errors(self) -> list[str]:
        return self.validation.errors

    @property
    def warnings(self) -> list[str]:
        return self.validation.warnings

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def is_valid(self) -> bool:
        """A policy is usable if it has no errors, a mode other than none,
        a positive max_age and at least one MX mask"""
        return (
            self.validation.valid
            and self.mode != Mode.NONE
            and self.max_age > 0
            and len(self.mx_masks) > 0
        )

    def is_expired(self, now: Optional[int] = None) -> bool:
        if now is None:
            now = int(time.time())
        return self.fetch_time + self.max_age <= now

    def match_mx(self, mx_hostname: str) -> bool:
        """
        Tests if an MX hostname is covered by the policy

        Policies in testing mode match every hostname.

        Args:
            mx_hostname (str): The MX hostname to test

        Returns: True if the MX hostname is included, false if not
        """
        if self.mode == Mode.TESTING:
            return True
        mx_hostname = mx_hostname.rstrip(".")
        for mask in self.mx_masks:
            regex_pattern = re.escape(mask).replace(r"\*", ".*")
            if re.fullmatch(regex_pattern, mx_hostname, re.IGNORECASE):
                return True
        return False

    def as_string(self) -> str:
        """Returns an extended policy string for caching"""
        lines = []
        if self.version is not None:
            lines.append(f"version: {self.version}")
        lines.append(f"mode: {self.mode.value}")
        for mask in self.mx_masks:
            lines.append(f"mx: {mask}")
        lines.append(f"max_age: {self.max_age}")
        lines.append(f"fetch_time: {self.fetch_time}")
        if self.record is not None:
            lines.append(f"domain: {self.record.domain}")
            lines.append(f"record_id: {self.record.token}")

        return "".join(f"{line}\r\n" for line in lines)

    def to_dict(self) -> dict[str, Any]:
        results = {
            "valid": self.is_valid(),
            "version": self.version,
            "mode": self.mode.value,
            "mx": list(self.mx_masks),
            "max_age": self.max_age,
            "fetch_time": self.fetch_time,
            "expired": self.is_expired(),
            "cached": self.cached,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }
        if self.record is not None:
            results["domain"] = self.record.domain
            results["id"] = self.record.token
        return results

    def __str__(self):
        return self.text
