#!/usr/bin/env python3
"""Purge expired and revoked credentials once, outside the server's hourly sweep.

Usage:
    DATABASE_URL=postgresql://... python scripts/sweep_expired.py

    # Report what the sweep removed as JSON:
    python scripts/sweep_expired.py --json

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless USE_MEMORY_STORE=true)
    JWT_SECRET: Signing secret (a throwaway one is generated when unset)
"""
from __future__ import annotations

import argparse
import json
import os
import secrets
import sys


def run_sweep() -> dict:
    """Run one sweep against the configured store and return the per-table counts."""
    from hana.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        result = runtime.sweeper.sweep()
    finally:
        runtime.store.close()
    return {
        "refresh_tokens": result.refresh_tokens,
        "sessions": result.sessions,
        "verification_codes": result.verification_codes,
        "total": result.total,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Delete expired verification codes, sessions and refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--json", action="store_true", help="Print the counts as JSON")
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL") and os.environ.get("USE_MEMORY_STORE", "").lower() != "true":
        print("Error: DATABASE_URL environment variable required")
        sys.exit(1)

    # The sweep never signs tokens, but settings refuse to load without a secret in production
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))

    try:
        counts = run_sweep()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(counts))
    else:
        print(
            f"Removed {counts['total']} rows: {counts['refresh_tokens']} refresh tokens, "
            f"{counts['sessions']} sessions, {counts['verification_codes']} verification codes"
        )


if __name__ == "__main__":
    main()
