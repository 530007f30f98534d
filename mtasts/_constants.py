# -*- coding: utf-8 -*-
"""Constant values"""

from __future__ import annotations
import platform
import os

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

__version__ = "1.0.0"

OS = platform.system()
OS_RELEASE = platform.release()
USER_AGENT = f"Mozilla/5.0 (({OS} {OS_RELEASE})) mtasts/{__version__}"
SYNTAX_ERROR_MARKER = "➞"
DEFAULT_HTTP_TIMEOUT = 2.0
CACHE_MAX_LEN = 200000
CACHE_MAX_AGE_SECONDS = 1800

MTA_STS_WELL_KNOWN_PATH = "/.well-known/mta-sts.txt"
MTA_STS_CONTENT_TYPE = "text/plain"

# RFC 8461 section 3.2 and section 10
POLICY_MIN_AGE = 86400
POLICY_SOFT_MIN_AGE = 3600
POLICY_MAX_AGE = 31557600
MAX_LINE_LENGTH = 1000
MAX_BODY_SIZE = 65536

env = os.environ

if "CACHE_MAX_LEN" in env:
    CACHE_MAX_LEN = int(env["CACHE_MAX_LEN"])
if "CACHE_MAX_AGE_SECONDS" in env:
    CACHE_MAX_AGE_SECONDS = int(env["CACHE_MAX_AGE_SECONDS"])

DNS_CACHE_MAX_LEN = CACHE_MAX_LEN
if "DNS_CACHE_MAX_LEN" in env:
    DNS_CACHE_MAX_LEN = int(env["DNS_CACHE_MAX_LEN"])
DNS_CACHE_MAX_AGE_SECONDS = CACHE_MAX_AGE_SECONDS
if "DNS_CACHE_MAX_AGE_SECONDS" in env:
    DNS_CACHE_MAX_AGE_SECONDS = int(env["DNS_CACHE_MAX_AGE_SECONDS"])

if "MTASTS_HTTP_TIMEOUT" in env:
    DEFAULT_HTTP_TIMEOUT = float(env["MTASTS_HTTP_TIMEOUT"])
if "MTASTS_POLICY_MIN_AGE" in env:
    POLICY_MIN_AGE = int(env["MTASTS_POLICY_MIN_AGE"])
if "MTASTS_POLICY_SOFT_MIN_AGE" in env:
    POLICY_SOFT_MIN_AGE = int(env["MTASTS_POLICY_SOFT_MIN_AGE"])
if "MTASTS_POLICY_MAX_AGE" in env:
    POLICY_MAX_AGE = int(env["MTASTS_POLICY_MAX_AGE"])
if "MTASTS_MAX_LINE_LENGTH" in env:
    MAX_LINE_LENGTH = int(env["MTASTS_MAX_LINE_LENGTH"])
if "MTASTS_MAX_BODY_SIZE" in env:
    MAX_BODY_SIZE = int(env["MTASTS_MAX_BODY_SIZE"])
