#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Fetches and validates MTA-STS policies"""

from __future__ import annotations

import os
from argparse import ArgumentParser

import logging

from mtasts import (
    __version__,
    HttpsPolicyClient,
    PolicyCache,
    TrustPolicy,
    check_mta_sts,
    output_to_file,
    results_to_json,
)

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


def _main():
    """Called when the module in executed"""
    arg_parser = ArgumentParser(description=__doc__)
    arg_parser.add_argument(
        "domain",
        nargs="+",
        help="one or more domains, or a single path to a "
        "file containing a list of domains",
    )
    arg_parser.add_argument(
        "--mx", nargs="+", help="MX hostnames to test against the policy"
    )
    arg_parser.add_argument(
        "--check-mx",
        action="store_true",
        help="test the MX hosts of each domain against its policy",
    )
    arg_parser.add_argument(
        "-o",
        "--output",
        nargs="+",
        help="one or more file paths to output to "
        "(must end in .json) "
        "(silences screen output)",
    )
    arg_parser.add_argument(
        "-n", "--nameserver", nargs="+", help="nameservers to query"
    )
    arg_parser.add_argument(
        "-t",
        "--timeout",
        help="number of seconds to wait for an answer from DNS "
        "or HTTPS (default 2.0)",
        type=float,
        default=2.0,
    )
    arg_parser.add_argument(
        "--timeout-retries",
        help="number of times to reattempt a query after a timeout (default 2)",
        type=int,
        default=2,
    )
    arg_parser.add_argument(
        "--insecure",
        action="store_true",
        help="do not verify policy host certificates (testing only)",
    )
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)
    arg_parser.add_argument(
        "--debug", action="store_true", help="enable debugging output"
    )

    args = arg_parser.parse_args()

    logging_format = "%(asctime)s - %(levelname)s: %(message)s"
    logging.basicConfig(level=logging.WARNING, format=logging_format)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug output enabled")
    domains = args.domain
    if len(domains) == 1 and os.path.exists(domains[0]):
        with open(domains[0]) as domains_file:
            domains = sorted(
                list(
                    set(
                        map(
                            lambda d: d.rstrip(".\r\n").strip().lower().split(",")[0],
                            domains_file.readlines(),
                        )
                    )
                )
            )
            domains = [domain for domain in domains if "." in domain]

    trust_policy = TrustPolicy.SYSTEM_DEFAULT
    if args.insecure:
        trust_policy = TrustPolicy.PERMISSIVE
    client = HttpsPolicyClient(trust_policy, timeout=args.timeout)
    cache = PolicyCache()
    results = []
    for domain in domains:
        results.append(
            check_mta_sts(
                domain,
                mx_hostnames=args.mx,
                check_mx=args.check_mx,
                cache=cache,
                client=client,
                nameservers=args.nameserver,
                timeout=args.timeout,
                timeout_retries=args.timeout_retries,
            )
        )
    if len(results) == 1:
        results = results[0]

    if args.output is None:
        print(results_to_json(results))
    else:
        for path in args.output:
            if not path.lower().endswith(".json"):
                logging.error(f"Output path {path} must end in .json")
            else:
                output_to_file(path, results_to_json(results))


if __name__ == "__main__":
    _main()
