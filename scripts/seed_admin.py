#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendtrack.db import SessionLocal
from attendtrack.errors import ApiError
from attendtrack.models import Account, AccountRole
from attendtrack.services.credentials import create_account


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the first admin account if none exists.")
    parser.add_argument("--name", default=os.environ.get("SEED_ADMIN_NAME", "Administrator"))
    parser.add_argument("--email", default=os.environ.get("SEED_ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("SEED_ADMIN_PASSWORD"))
    parser.add_argument("--employee-id", default=os.environ.get("SEED_ADMIN_EMPLOYEE_ID"))
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> dict[str, Any]:
    args = _parse_args(argv)
    report: dict[str, Any] = {"generated_at_utc": datetime.now(timezone.utc).isoformat()}

    with SessionLocal() as db:
        existing = db.scalar(select(Account).where(Account.role == AccountRole.ADMIN).limit(1))
        if existing is not None:
            report.update({"status": "skipped", "reason": "ADMIN_EXISTS", "admin_id": existing.id})
            return report

        if not args.email or not args.password:
            report.update({"status": "fail", "reason": "SEED_ADMIN_EMAIL and SEED_ADMIN_PASSWORD are required."})
            return report

        try:
            admin = create_account(
                db,
                name=args.name,
                email=args.email,
                password=args.password,
                role=AccountRole.ADMIN,
                employee_id=args.employee_id,
            )
        except ApiError as exc:
            report.update({"status": "fail", "reason": exc.code, "message": exc.message})
            return report

        report.update({"status": "created", "admin_id": admin.id, "email": admin.email})
    return report


if __name__ == "__main__":
    result = run()
    print(json.dumps(result, ensure_ascii=False, indent=2))
    sys.exit(0 if result["status"] != "fail" else 1)
