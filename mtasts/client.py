# -*- coding: utf-8 -*-
"""HTTPS client for MTA-STS policy documents"""

from __future__ import annotations

import logging
import ssl
from enum import Enum
from typing import Optional, Union
from collections.abc import Mapping

import requests
from requests.structures import CaseInsensitiveDict
from cryptography import x509

from mtasts._constants import (
    DEFAULT_HTTP_TIMEOUT,
    MAX_BODY_SIZE,
    MTA_STS_WELL_KNOWN_PATH,
    USER_AGENT,
)
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

CHUNK_SIZE = 8192


class TrustPolicy(Enum):
    """How the certificate of a policy host is evaluated"""

    SYSTEM_DEFAULT = "system-default"
    # Accepts any certificate; only for testing
    PERMISSIVE = "permissive"

    @property
    def verify(self) -> bool:
        return self is TrustPolicy.SYSTEM_DEFAULT


class HttpsResponse:
    """
    The outcome of a policy request

    Transport failures are represented by a response with a ``code`` of
    ``0`` and an ``error`` message.

    Args:
        code (int): The HTTP status code
        message (str): The HTTP status message
        headers (dict): The response headers
        body (bytes): The response body, capped at the requested size
        handshake (bool): A TLS handshake was completed
        peer_certificates (list): The peer certificate chain
        truncated (bool): The body was longer than the requested size
        error (str): The transport error, if any
    """

    def __init__(
        self,
        code: int = 0,
        message: str = "",
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        handshake: bool = False,
        peer_certificates: Optional[list[x509.Certificate]] = None,
        truncated: bool = False,
        error: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.headers = CaseInsensitiveDict(headers or {})
        self.body = body
        self.handshake = handshake
        self.peer_certificates = peer_certificates or []
        self.truncated = truncated
        self.error = error

    def is_successful(self) -> bool:
        return 200 <= self.code < 300

    def get_header(self, name: str) -> Optional[str]:
        return self.headers.get(name)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def __repr__(self):
        return (
            f"HttpsResponse(code={self.code!r}, message={self.message!r}, "
            f"handshake={self.handshake!r}, error={self.error!r})"
        )


def _get_peer_certificates(response: requests.Response) -> list[x509.Certificate]:
    """Reads the certificate chain from the socket of a streamed response"""
    certificates = []
    try:
        sock = response.raw.connection.sock
    except AttributeError:
        return certificates
    if not isinstance(sock, ssl.SSLSocket):
        return certificates
    try:
        if hasattr(sock, "get_unverified_chain"):
            chain = sock.get_unverified_chain() or []
        else:
            leaf = sock.getpeercert(binary_form=True)
            chain = [leaf] if leaf else []
        for der in chain:
            certificates.append(x509.load_der_x509_certificate(der))
    except (OSError, ValueError) as e:
        logging.error(f"Handshake certificate chain not found: {e}")
        return []

    return certificates


class HttpsPolicyClient:
    """
    Fetches MTA-STS policy documents

    Args:
        trust_policy (TrustPolicy): Certificate evaluation for policy hosts
        timeout (float): HTTP connect and read timeout in seconds
        port (int): Connect to this port instead of 443
        session (requests.Session): The session to send requests with
    """

    def __init__(
        self,
        trust_policy: TrustPolicy = TrustPolicy.SYSTEM_DEFAULT,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        port: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.trust_policy = trust_policy
        self.timeout = timeout
        self.port = port
        if session is None:
            session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})
        self.session = session

    def get_url(self, domain: str) -> str:
        host = f"mta-sts.{normalize_domain(domain)}"
        if self.port is not None:
            host = f"{host}:{self.port}"
        return f"https://{host}{MTA_STS_WELL_KNOWN_PATH}"

    def get_policy(
        self, record: Optional[Record], max_body_size: int = MAX_BODY_SIZE
    ) -> Union[HttpsResponse, None]:
        """
        Requests the policy document of a record's domain

        Args:
            record (Record): A fresh MTA-STS record
            max_body_size (int): Bytes of the body to keep

        Returns:
            HttpsResponse: The response, or ``None`` when the record has no
            domain to request
        """
        if record is None or record.domain is None:
            return None
        url = self.get_url(record.domain)
        if not self.trust_policy.verify:
            logging.debug(f"Certificate verification disabled for {url}")
        logging.debug(f"Attempting to download MTA-STS policy from {url}")
        try:
            # RFC 8461 section 3.3: redirects must not be followed
            with self.session.get(
                url,
                timeout=self.timeout,
                verify=self.trust_policy.verify,
                allow_redirects=False,
                stream=True,
            ) as response:
                certificates = _get_peer_certificates(response)
                body = b""
                truncated = False
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    body += chunk
                    if len(body) > max_body_size:
                        truncated = True
                        body = body[:max_body_size]
                        break
                results = HttpsResponse(
                    response.status_code,
                    response.reason or "",
                    headers=response.headers,
                    body=body,
                    handshake=str(response.url).lower().startswith("https://"),
                    peer_certificates=certificates,
                    truncated=truncated,
                )
        except requests.exceptions.SSLError as e:
            logging.debug(f"TLS error fetching {url}: {e}")
            return HttpsResponse(error=f"SSL error: {e}")
        except requests.exceptions.Timeout as e:
            logging.debug(f"Timed out fetching {url}: {e}")
            return HttpsResponse(error=f"Connection timed out: {e}")
        except (requests.exceptions.RequestException, OSError) as e:
            logging.debug(f"Error fetching {url}: {e}")
            return HttpsResponse(error=str(e))

        if truncated:
            logging.debug(f"Policy body from {url} truncated to {max_body_size} bytes")
        return results
