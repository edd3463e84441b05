#!/usr/bin/env python3
from __future__ import annotations

import argparse
import getpass

from streamguard.auth_provider import hash_password


def main() -> int:
    parser = argparse.ArgumentParser(description="Print a bcrypt hash for an AUTH_USERS_JSON entry.")
    parser.add_argument("--rounds", type=int, default=12)
    args = parser.parse_args()
    password = getpass.getpass("password: ")
    print(hash_password(password, rounds=args.rounds))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
