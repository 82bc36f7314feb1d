"""
Orders Service — 失敗の分類

ワークフローの失敗はすべて OrderFailure のサブクラスで表す。

  業務エラー (406 で呼び出し元にそのまま返す):
    InvalidOrder, PaymentDeclined
  内部障害 (境界で 500 + 汎用メッセージにまとめる):
    Timeout, UpstreamFailure, ResourceExhausted, InternalFault

内部障害の詳細な理由はログにだけ残す。
"""

from enum import Enum


class FailureReason(str, Enum):
    INVALID_ORDER = "InvalidOrder"
    PAYMENT_DECLINED = "PaymentDeclined"
    TIMEOUT = "Timeout"
    UPSTREAM_FAILURE = "UpstreamFailure"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    INTERNAL_FAULT = "InternalFault"


BUSINESS_REASONS = frozenset({FailureReason.INVALID_ORDER, FailureReason.PAYMENT_DECLINED})


class OrderFailure(Exception):
    """注文ワークフローの終端失敗"""

    reason: FailureReason = FailureReason.INTERNAL_FAULT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def is_business_error(self) -> bool:
        return self.reason in BUSINESS_REASONS


class InvalidOrderError(OrderFailure):
    reason = FailureReason.INVALID_ORDER


class PaymentDeclinedError(OrderFailure):
    reason = FailureReason.PAYMENT_DECLINED


class OrderTimeoutError(OrderFailure):
    reason = FailureReason.TIMEOUT


class UpstreamFailureError(OrderFailure):
    reason = FailureReason.UPSTREAM_FAILURE


class ResourceExhaustedError(OrderFailure):
    reason = FailureReason.RESOURCE_EXHAUSTED


class InternalFaultError(OrderFailure):
    reason = FailureReason.INTERNAL_FAULT
