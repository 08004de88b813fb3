"""Aging buckets and receivables ratios.

Days past due are counted from an invoice's due date; an invoice without a
due date is treated as current. Buckets are closed on the upper bound, so an
invoice 30 days past due is in ``1_30`` and one 31 days past due is in
``31_60``.
"""

from __future__ import annotations

from datetime import date

AGING_BUCKETS: tuple[str, ...] = ("current", "1_30", "31_60", "61_90", "91_120", "120_plus")

BUCKET_LABELS: dict[str, str] = {
    "current": "Current",
    "1_30": "1-30 Days",
    "31_60": "31-60 Days",
    "61_90": "61-90 Days",
    "91_120": "91-120 Days",
    "120_plus": "120+ Days",
}

BUCKET_COLUMNS: dict[str, str] = {bucket: f"aging_{bucket}_pence" for bucket in AGING_BUCKETS}


def days_past_due(due_date: date | None, today: date) -> int:
    if due_date is None:
        return 0
    return (today - due_date).days


def aging_bucket(days: int) -> str:
    if days <= 0:
        return "current"
    if days <= 30:
        return "1_30"
    if days <= 60:
        return "31_60"
    if days <= 90:
        return "61_90"
    if days <= 120:
        return "91_120"
    return "120_plus"


def bucket_label(bucket: str) -> str:
    return BUCKET_LABELS.get(bucket, bucket)


def empty_buckets() -> dict[str, int]:
    return {bucket: 0 for bucket in AGING_BUCKETS}


def account_buckets(account) -> dict[str, int]:
    return {bucket: int(getattr(account, column) or 0) for bucket, column in BUCKET_COLUMNS.items()}


def days_overdue_from_aging(account) -> int:
    """Approximate days overdue from the worst populated bucket."""
    if account.aging_120_plus_pence > 0 or account.aging_91_120_pence > 0:
        return 120
    if account.aging_61_90_pence > 0:
        return 90
    if account.aging_31_60_pence > 0:
        return 60
    if account.aging_1_30_pence > 0:
        return 30
    return 0


def calculate_dso(total_ar_pence: int, credit_sales_pence: int, period_days: int) -> float:
    if credit_sales_pence <= 0:
        return 0.0
    return round(total_ar_pence / credit_sales_pence * period_days, 1)


def percentage(part: int | float, whole: int | float) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 1)
