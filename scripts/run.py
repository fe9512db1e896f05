#!/usr/bin/env python3
"""Freebie Notifier — Application Runner.

Performs pre-flight checks and runs one check cycle. Meant to be
called by cron or a systemd timer, e.g. every 5 minutes:

    */5 * * * * cd /opt/freebie-notifier && .venv/bin/python scripts/run.py

Usage:
    python scripts/run.py [--dry-run]
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

REQUIRED_ENV_VARS = [
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
]

REQUIRED_FILES = [
    "config/settings.yaml",
]

_PLACEHOLDERS = ("", "your_bot_token_here", "your_group_chat_id_here", "test")


def preflight_checks() -> bool:
    """Run pre-flight checks before starting a run.

    Checks:
      - .env file exists (or the variables are exported)
      - Required environment variables are set and not placeholders
      - Required config files exist
      - data/ and logs/ directories exist (creates them)

    Returns:
        True if all checks pass, False otherwise.
    """
    os.chdir(str(PROJECT_ROOT))
    ok = True

    env_path = PROJECT_ROOT / ".env"
    if env_path.exists():
        from dotenv import load_dotenv
        load_dotenv(env_path)
    else:
        print("⚠️  .env file not found, relying on exported variables")

    for var in REQUIRED_ENV_VARS:
        if os.environ.get(var, "") in _PLACEHOLDERS:
            print(f"❌ {var} not set or still a placeholder")
            ok = False

    for f in REQUIRED_FILES:
        if not (PROJECT_ROOT / f).exists():
            print(f"❌ {f} not found!")
            ok = False

    for d in ("data", "logs"):
        (PROJECT_ROOT / d).mkdir(exist_ok=True)

    return ok


def main() -> None:
    """Entry point: run checks, then one check cycle."""
    if not preflight_checks():
        print("❌ Pre-flight checks failed! Fix the issues above and try again.")
        sys.exit(1)

    from freebie_notifier.main import main as app_main
    sys.exit(app_main(sys.argv[1:]))


if __name__ == "__main__":
    main()
