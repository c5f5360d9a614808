from __future__ import annotations

import pathlib
import sys
from decimal import Decimal

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from arbiter_payments.domain.money import format_amount, from_minor_units, quantize, to_minor_units
from arbiter_payments.domain.statuses import (
    RefundStatus,
    TransactionStatus,
    can_transition,
    is_noop_transition,
)

S = TransactionStatus


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.AWAITING_REDIRECT),
        (S.PENDING, S.COMPLETED),
        (S.AWAITING_REDIRECT, S.COMPLETED),
        (S.AWAITING_REDIRECT, S.CANCELLED),
        (S.COMPLETED, S.PARTIALLY_REFUNDED),
        (S.COMPLETED, S.REFUNDED),
        (S.PARTIALLY_REFUNDED, S.PARTIALLY_REFUNDED),
        (S.PARTIALLY_REFUNDED, S.REFUNDED),
    ],
)
def test_allowed_transitions(current: TransactionStatus, target: TransactionStatus) -> None:
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (S.COMPLETED, S.PENDING),
        (S.COMPLETED, S.CANCELLED),
        (S.COMPLETED, S.FAILED),
        (S.PENDING, S.REFUNDED),
        (S.FAILED, S.COMPLETED),
        (S.CANCELLED, S.COMPLETED),
        (S.REFUNDED, S.PARTIALLY_REFUNDED),
    ],
)
def test_forbidden_transitions(current: TransactionStatus, target: TransactionStatus) -> None:
    assert not can_transition(current, target)


def test_terminal_statuses_have_no_exit() -> None:
    for status in (S.FAILED, S.CANCELLED, S.REFUNDED):
        assert status.is_terminal
        assert not any(can_transition(status, target) for target in S)


def test_noop_transitions() -> None:
    assert is_noop_transition(S.COMPLETED, S.COMPLETED)
    assert is_noop_transition(S.AWAITING_REDIRECT, S.PENDING)
    assert not is_noop_transition(S.PENDING, S.COMPLETED)


def test_order_payment_status_labels() -> None:
    assert S.COMPLETED.order_payment_status == "paid"
    assert S.AWAITING_REDIRECT.order_payment_status == "pending"
    assert S.PARTIALLY_REFUNDED.order_payment_status == "partially_refunded"


def test_refund_status_from_provider() -> None:
    assert RefundStatus.from_provider("SUCCESS") == RefundStatus.SUCCEEDED
    assert RefundStatus.from_provider("succeeded") == RefundStatus.SUCCEEDED
    assert RefundStatus.from_provider("failed") == RefundStatus.FAILED
    assert RefundStatus.from_provider("PENDING") == RefundStatus.PENDING
    assert RefundStatus.from_provider(None) == RefundStatus.PENDING


def test_minor_units_respect_zero_decimal_currencies() -> None:
    assert to_minor_units(Decimal("250"), "PHP") == 25000
    assert to_minor_units(Decimal("12.345"), "usd") == 1235
    assert to_minor_units(Decimal("500"), "JPY") == 500
    assert from_minor_units(25000, "PHP") == Decimal("250.00")
    assert from_minor_units(500, "JPY") == Decimal("500")


def test_format_amount() -> None:
    assert format_amount(Decimal("250"), "PHP") == "250.00"
    assert quantize(Decimal("99.999"), "PHP") == Decimal("100.00")
