#!/usr/bin/env python3
"""Validate `.env.deploy` (plus process env) against the deploy schema.

Run locally before `gcp_deploy provision`, or in CI.

Strict by default:
- unknown keys => error
- missing mandatory keys => error
- malformed project id / region / domain => error
- USE_LOAD_BALANCER / USE_STATIC_IP without CUSTOM_DOMAIN => error
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from cloudrun_deploy.deploy_config import (
    DEPLOY_SCHEMA,
    ConfigValidationError,
    collect_deploy_values,
    validate_cross_field_rules,
    validate_required,
)


def validate_deploy(deploy_path: Path | None) -> None:
    context = "deploy (.env.deploy + env)"
    merged = collect_deploy_values(deploy_env_path=deploy_path)
    validate_required(DEPLOY_SCHEMA, merged, context=context)
    validate_cross_field_rules(deploy_kv=merged, context=context)


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(description="Validate .env.deploy against schema")
    ap.add_argument("--deploy", default=".env.deploy", help="Path to deploy env file (default: .env.deploy)")
    ap.add_argument(
        "--no-deploy-file",
        action="store_true",
        help="Skip reading the deploy env file (useful if you rely on process env vars)",
    )
    args = ap.parse_args(argv)

    deploy_path = None if args.no_deploy_file else Path(args.deploy).expanduser().resolve()

    try:
        validate_deploy(deploy_path)
    except ConfigValidationError as e:
        print(e.format(), file=sys.stderr)
        raise SystemExit(2)

    print("[env] ok")


if __name__ == "__main__":
    main()
