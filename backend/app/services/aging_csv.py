from __future__ import annotations

import csv
import io
from typing import Iterable

from app.services.aging import AGING_BUCKETS, bucket_label

BASE_COLUMNS = ["account_number", "patient_name", "status", "days_overdue", "balance"]


def _money(pence: int) -> str:
    return f"{pence / 100:.2f}"


def aging_csv_text(rows: Iterable[dict]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(BASE_COLUMNS + [bucket_label(bucket) for bucket in AGING_BUCKETS])
    for row in rows:
        writer.writerow(
            [
                row["account_number"],
                row["patient_name"],
                row["status"],
                row["days_overdue"],
                _money(row["balance_pence"]),
                *[_money(row["buckets"][bucket]) for bucket in AGING_BUCKETS],
            ]
        )
    return buffer.getvalue()
