#!/usr/bin/env python3
"""
Apply a team's transaction rules to a set of transactions.

Usage:
    python apply_rules_cli.py TEAM_ID TX_ID [TX_ID ...] [--dry-run] [--timeout SECS]

Examples:
    python apply_rules_cli.py 6f0c... 1a2b... 3c4d...
    python apply_rules_cli.py 6f0c... 1a2b... --dry-run
"""
import argparse
import json
import logging
import sys

from config import get_settings
from database import session_scope
from services import RuleApplicationService


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply enabled transaction rules for a team."
    )
    parser.add_argument("team_id", help="Team that owns the rules and transactions")
    parser.add_argument(
        "transaction_ids", nargs="+", help="Transactions to evaluate"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report which rule would apply to each transaction",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop after this many seconds (already applied work is kept)",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    with session_scope() as session:
        service = RuleApplicationService(session, args.team_id)
        if args.dry_run:
            output = service.preview(args.transaction_ids)
        else:
            result = service.apply_rules(args.transaction_ids, timeout_secs=args.timeout)
            output = {
                **result.as_dict(),
                "failed": result.failed_ids,
                "timed_out": result.timed_out,
            }

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
