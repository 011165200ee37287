#!/usr/bin/env python3
"""Print the pending verification code for a phone number (development only).

Useful when Twilio is not configured and the code only appears in the logs.

Usage:
    python scripts/show_code.py --phone "(555) 123-4567"
"""
from __future__ import annotations

import argparse
import os
import sys


def lookup(phone: str):
    from hana.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.is_production:
        raise RuntimeError("code lookup is disabled when APP_ENV=production")
    try:
        return runtime.verification.pending_code(phone)
    finally:
        runtime.store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Show the newest unused verification code for a phone number",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("PHONE_NUMBER"),
        help="Phone number in any common format (or set PHONE_NUMBER env var)",
    )
    args = parser.parse_args()

    if not args.phone:
        print("Error: --phone or PHONE_NUMBER environment variable required")
        sys.exit(1)

    try:
        record = lookup(args.phone)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if record is None:
        print("No pending verification code")
        sys.exit(1)
    print(f"{record.phone_number}: {record.code} (expires {record.expires_at.isoformat()})")


if __name__ == "__main__":
    main()
