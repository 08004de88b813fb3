"""Run the scheduled collections cycle from the command line.

    python -m app.scripts.collections_run [--clinic-slug SLUG] [--date YYYY-MM-DD] [--dry-run]
"""

from __future__ import annotations

import argparse
import json
import logging
from datetime import date

from app.core.logging import configure_logging
from app.core.settings import settings
from app.db.session import SessionLocal
from app.services.clinics import get_clinic_by_slug, list_active_clinics
from app.services.collections_cycle import run_collections_cycle

logger = logging.getLogger("ortho_pms.scripts.collections_run")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the collections processing cycle.")
    parser.add_argument(
        "--clinic-slug",
        help="Only process this clinic (default: every active clinic).",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        help="Process as of this date (YYYY-MM-DD, default: today in UTC).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change and roll back.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(settings.log_level)

    session = SessionLocal()
    try:
        if args.clinic_slug:
            clinic = get_clinic_by_slug(session, args.clinic_slug)
            if clinic is None:
                raise SystemExit(f"Unknown clinic slug: {args.clinic_slug}")
            clinics = [clinic]
        else:
            clinics = list_active_clinics(session)

        results = []
        for clinic in clinics:
            counts = run_collections_cycle(session, clinic_id=clinic.id, today=args.date)
            results.append({"clinic": clinic.slug, **counts})

        if args.dry_run:
            session.rollback()
        else:
            session.commit()
        print(
            json.dumps(
                {
                    "date": (args.date.isoformat() if args.date else None),
                    "dry_run": args.dry_run,
                    "clinics": results,
                },
                indent=2,
            )
        )
        return 0
    except Exception:
        session.rollback()
        logger.exception("Collections run failed")
        raise
    finally:
        session.close()


if __name__ == "__main__":
    raise SystemExit(main())
