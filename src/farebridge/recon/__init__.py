from .reconciliation import (
    AmountCheck,
    RefundAssessment,
    RefundClassification,
    check_charge_against_order,
    classify_refund,
)

__all__ = [
    "AmountCheck",
    "RefundAssessment",
    "RefundClassification",
    "check_charge_against_order",
    "classify_refund",
]
