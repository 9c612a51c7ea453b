#!/usr/bin/env python3
"""
License key tool.

Usage:
    python -m entitlement_engine.scripts.license_keys generate --tier beta --count 3
    python -m entitlement_engine.scripts.license_keys check HA-BETA-XXXXXXXX-YYYYYYYY
"""
import argparse
import sys
from typing import List, Optional

from entitlement_engine.features.license_keys import codec


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate or check offline license keys")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Mint new keys")
    gen.add_argument("--tier", default="beta", choices=["beta", "premium", "unlimited"])
    gen.add_argument("--count", type=int, default=1)

    check = sub.add_parser("check", help="Validate keys")
    check.add_argument("keys", nargs="+")

    args = parser.parse_args(argv)

    if args.command == "generate":
        for _ in range(max(1, args.count)):
            print(codec.generate(args.tier))
        return 0

    all_valid = True
    for key in args.keys:
        result = codec.inspect(key)
        verdict = "valid" if result.valid else f"invalid ({result.failure})"
        print(f"{result.normalized}: {verdict}")
        all_valid = all_valid and result.valid
    return 0 if all_valid else 1


if __name__ == "__main__":
    sys.exit(main())
