"""
Secret management for notification API keys.

Usage:
    from regwatch.config.secrets import get_resend_key

    # Will raise if key is missing
    key = get_resend_key()

CLI check:
    python -m regwatch.config.secrets --check
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Find .env file - walk up from this file to repo root
_repo_root = Path(__file__).resolve().parent.parent.parent
_env_path = _repo_root / ".env"

if _env_path.exists():
    load_dotenv(_env_path)
else:
    load_dotenv()


class MissingAPIKeyError(Exception):
    """Raised when a required API key is not configured."""
    pass


def get_resend_key() -> str:
    """
    Get Resend API key from environment.

    Returns:
        str: The API key

    Raises:
        MissingAPIKeyError: If RESEND_API_KEY is not set
    """
    key = os.environ.get("RESEND_API_KEY", "").strip()
    if not key:
        raise MissingAPIKeyError(
            "RESEND_API_KEY not found. "
            "Copy .env.example to .env and add your key."
        )
    return key


def check_keys() -> dict:
    """Return "OK" or "MISSING" for each known key."""
    key = os.environ.get("RESEND_API_KEY", "").strip()
    return {"RESEND_API_KEY": "OK" if key else "MISSING"}


def _cli_check():
    status = check_keys()
    all_ok = True

    for key_name, key_status in status.items():
        print(f"{key_name}: {key_status}")
        if key_status == "MISSING":
            all_ok = False

    if not all_ok:
        print("\nTo configure keys:")
        print("  1. Copy .env.example to .env")
        print("  2. Add your API keys to .env")
        sys.exit(1)
    else:
        print("\nAll keys configured.")
        sys.exit(0)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(
        description="Check API key configuration"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check if API keys are configured"
    )

    args = parser.parse_args()

    if args.check:
        _cli_check()
    else:
        parser.print_help()
