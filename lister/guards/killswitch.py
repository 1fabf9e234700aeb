"""Killswitch — operator halt for a running lister.

While killswitch.txt exists in the workspace root (or $LISTER_KILLSWITCH),
the runner refuses to start and a running scheduler stops before its next
cycle. Listings already submitted are not touched.

Usage:
    python3 -m lister.guards.killswitch status
    python3 -m lister.guards.killswitch arm "pausing for price change"
    python3 -m lister.guards.killswitch clear

Exit codes (status):
    0 = clear
    1 = ACTIVE
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

WORKSPACE = Path(__file__).resolve().parent.parent.parent
KILLSWITCH_FILE = WORKSPACE / "killswitch.txt"


def killswitch_path() -> Path:
    override = os.environ.get("LISTER_KILLSWITCH", "")
    return Path(override) if override else KILLSWITCH_FILE


def check_killswitch() -> dict[str, Any]:
    path = killswitch_path()
    if path.exists():
        reason = path.read_text().strip()
        return {
            "status": "ACTIVE",
            "message": f"Killswitch is ACTIVE. Reason: {reason or 'No reason given'}",
            "file": str(path),
        }
    return {"status": "CLEAR", "message": "No killswitch. Safe to list."}


def arm_killswitch(reason: str = "") -> dict[str, Any]:
    path = killswitch_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(reason)
    return check_killswitch()


def clear_killswitch() -> dict[str, Any]:
    killswitch_path().unlink(missing_ok=True)
    return check_killswitch()


def main() -> None:
    parser = argparse.ArgumentParser(description="Lister killswitch")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("status")
    arm = sub.add_parser("arm")
    arm.add_argument("reason", nargs="?", default="")
    sub.add_parser("clear")
    args = parser.parse_args()

    if args.command == "arm":
        result = arm_killswitch(args.reason)
    elif args.command == "clear":
        result = clear_killswitch()
    else:
        result = check_killswitch()
    print(json.dumps(result, indent=2))
    sys.exit(1 if args.command in (None, "status") and result["status"] == "ACTIVE" else 0)


if __name__ == "__main__":
    main()
