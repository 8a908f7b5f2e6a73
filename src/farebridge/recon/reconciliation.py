from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from farebridge.errors import InvalidAmountFormat
from farebridge.models.currency import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


class RefundClassification(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass
class RefundAssessment:
    classification: RefundClassification
    refunded_minor: int
    refunded_currency: str
    order_minor: int | None
    order_currency: str | None

    @property
    def is_full(self) -> bool:
        return self.classification == RefundClassification.FULL

    @property
    def refunded_amount(self) -> str:
        return from_minor_units(self.refunded_minor, self.refunded_currency)


@dataclass
class AmountCheck:
    matches: bool
    charged_minor: int
    charged_currency: str
    order_minor: int | None
    order_currency: str | None
    reason: str | None = None


def _order_minor(order_amount: str | None, order_currency: str | None) -> int | None:
    if order_amount is None or not order_currency:
        return None
    try:
        return to_minor_units(order_amount, order_currency)
    except InvalidAmountFormat:
        logger.error("order amount %r is not a decimal string", order_amount)
        return None


def classify_refund(
    refunded_minor: int,
    refunded_currency: str,
    order_amount: str | None,
    order_currency: str | None,
) -> RefundAssessment:
    """Full if and only if the currencies match and the minor-unit amounts are equal."""
    refunded_currency = refunded_currency.upper()
    order_currency = order_currency.upper() if order_currency else None
    order_minor = _order_minor(order_amount, order_currency)
    full = order_minor is not None and order_currency == refunded_currency and order_minor == refunded_minor
    return RefundAssessment(
        classification=RefundClassification.FULL if full else RefundClassification.PARTIAL,
        refunded_minor=refunded_minor,
        refunded_currency=refunded_currency,
        order_minor=order_minor,
        order_currency=order_currency,
    )


def check_charge_against_order(
    charged_minor: int,
    charged_currency: str,
    order_amount: str | None,
    order_currency: str | None,
) -> AmountCheck:
    charged_currency = charged_currency.upper()
    order_currency = order_currency.upper() if order_currency else None
    order_minor = _order_minor(order_amount, order_currency)
    reason = None
    if order_minor is None:
        reason = "order_amount_unknown"
    elif order_currency != charged_currency:
        reason = "currency_mismatch"
    elif order_minor != charged_minor:
        reason = "amount_mismatch"
    return AmountCheck(
        matches=reason is None,
        charged_minor=charged_minor,
        charged_currency=charged_currency,
        order_minor=order_minor,
        order_currency=order_currency,
        reason=reason,
    )
