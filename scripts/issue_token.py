#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from streamguard.security import ROLES, JwtSecurityConfig, issue_token


def main() -> int:
    parser = argparse.ArgumentParser(description="Mint a bearer credential from JWT_SHARED_SECRET.")
    parser.add_argument("--subject", required=True)
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--role", choices=ROLES, default="viewer")
    args = parser.parse_args()

    cfg = JwtSecurityConfig.from_env()
    if not cfg.shared_secret:
        parser.error("JWT_SHARED_SECRET is not set")
    token, expires_at = issue_token(subject=args.subject, role=args.role, tenant_id=args.tenant, cfg=cfg)
    print(json.dumps({"token": token, "expires_at": expires_at.isoformat()}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
