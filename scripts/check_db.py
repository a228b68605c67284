#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from wallet_workspace.db import parse_database_config
from wallet_workspace.db_migrations import apply_migrations, get_db_health


def main():
    parser = argparse.ArgumentParser(description="Check and print wallet workspace DB schema health")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/wallet_workspace.sqlite",
        help="Path to SQLite DB (ignored when DATABASE_URL is postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    health = get_db_health(config)
    print(json.dumps(health, indent=2, sort_keys=True))
    if not health["ok"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
