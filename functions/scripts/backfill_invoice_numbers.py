"""
Backfill invoice numbers for billing records created before the sequence.

A record's invoice number is its position in creation order. Legacy records
are stored with that position, which is also what they were shown as before
the backfill, and the sequence is moved past the highest number written.
Numbers that were already issued never change.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.db import DbClient
from backend.dependencies import get_db_client

logger = logging.getLogger(__name__)


class BackfillConflictError(Exception):
    """A legacy record's creation rank is already used by an issued number."""


def backfill(db: DbClient, *, dry_run: bool) -> int:
    records = db.list_billings()
    issued = {r.invoice_no for r in records if r.invoice_no is not None}
    planned = []
    for rank, record in enumerate(records, start=1):
        if record.invoice_no is not None:
            continue
        if rank in issued:
            raise BackfillConflictError(
                f"Billing {record.billing_id} ranks #{rank:04d}, "
                "which is already issued"
            )
        planned.append((record, rank))

    for record, invoice_no in planned:
        if dry_run:
            logger.info(
                "Would number billing %s as #%04d", record.billing_id, invoice_no
            )
            continue
        db.update_billing(record.billing_id, {"invoice_no": invoice_no})
        logger.info("Billing %s -> invoice #%04d", record.billing_id, invoice_no)

    if planned and not dry_run:
        db.reserve_invoice_numbers(max(invoice_no for _, invoice_no in planned))
    return len(planned)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Assign invoice numbers to legacy billing records"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report which records would be numbered without saving",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    try:
        count = backfill(get_db_client(), dry_run=args.dry_run)
    except BackfillConflictError as exc:
        logger.error("%s; nothing was written", exc)
        return 1
    logger.info("Numbered %d billing records", count)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
