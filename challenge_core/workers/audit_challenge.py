"""
Scheduled challenge audit.

Dry-run by default. Use --live to backfill, reconcile, award bonuses and
refresh progress. Exit code is 0 for a clean run, 1 when participants
failed, 2 when the run could not start.
"""
from __future__ import annotations

import argparse
import json
import os
from typing import List, Optional

from challenge_core.core.admin_auth import SYSTEM_JOB_ACTOR
from challenge_core.core.config import settings
from challenge_core.core.logging import configure_logging
from challenge_core.features.audit.service import run_audit


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Audit challenge participants and backfill missing tasks.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Apply backfill and updates.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Report only, no writes.")
    parser.add_argument(
        "--enroll-missing",
        action="store_true",
        default=_parse_bool(os.getenv("CHALLENGE_AUDIT_ENROLL_MISSING"), False),
        help="Enroll active users who have not joined the challenge.",
    )
    parser.set_defaults(dry_run=_parse_bool(os.getenv("CHALLENGE_AUDIT_DRY_RUN", "1"), True))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    report = run_audit(SYSTEM_JOB_ACTOR, dry_run=args.dry_run, enroll_missing=args.enroll_missing)
    print(json.dumps(report.to_dict(), indent=2))

    if not report.success:
        return 2
    return 0 if report.status == "clean" else 1


if __name__ == "__main__":
    raise SystemExit(main())
