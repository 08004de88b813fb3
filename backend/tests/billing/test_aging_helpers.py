from datetime import date

import pytest

from app.core.errors import ValidationFailed
from app.services.aging import aging_bucket, calculate_dso, days_past_due, percentage
from app.services.billing import payment_plan_amounts


@pytest.mark.parametrize(
    "days,bucket",
    [
        (-5, "current"),
        (0, "current"),
        (1, "1_30"),
        (30, "1_30"),
        (31, "31_60"),
        (60, "31_60"),
        (61, "61_90"),
        (90, "61_90"),
        (91, "91_120"),
        (120, "91_120"),
        (121, "120_plus"),
    ],
)
def test_aging_bucket_boundaries(days, bucket):
    assert aging_bucket(days) == bucket


def test_days_past_due_without_due_date_is_current():
    assert days_past_due(None, date(2026, 3, 1)) == 0
    assert days_past_due(date(2026, 1, 30), date(2026, 3, 1)) == 30
    assert days_past_due(date(2026, 3, 10), date(2026, 3, 1)) == -9


def test_calculate_dso():
    assert calculate_dso(50000, 150000, 90) == 30.0
    assert calculate_dso(12345, 0, 90) == 0.0


def test_percentage_handles_zero_whole():
    assert percentage(1, 3) == 33.3
    assert percentage(5, 0) == 0.0


def test_payment_plan_amounts():
    assert payment_plan_amounts(360000, 60000, 12) == (300000, 25000)
    assert payment_plan_amounts(1000, 0, 3) == (1000, 333)


def test_payment_plan_down_payment_cannot_exceed_total():
    with pytest.raises(ValidationFailed):
        payment_plan_amounts(1000, 2000, 3)
