# Overview: Engine error taxonomy shared by services and HTTP routes.

"""
Engine errors.

Every failure raised out of an atomic block leaves zero partial writes;
run_with_retry() rolls the session back before re-raising.

Retry policy by type:
- ValidationError / NotFoundError: caller's fault, never retried
- InsufficientStockError / InsufficientBalanceError: business rule, surfaced verbatim
- SignatureInvalidError: security failure, order left unpaid
- TransactionConflictError: transient, safe to retry
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for errors the engine raises on purpose."""

    code = "ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(EngineError, ValueError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(EngineError):
    code = "NOT_FOUND"
    http_status = 404


class SameWarehouseError(ValidationError):
    code = "SAME_WAREHOUSE"

    def __init__(self, warehouse_id: int):
        super().__init__(
            "Source and destination warehouse cannot be the same",
            warehouse_id=warehouse_id,
        )


class NegativeStockError(ValidationError):
    code = "NEGATIVE_STOCK"


class InsufficientStockError(EngineError):
    """Raised when an item cannot be covered by the warehouse's stock."""

    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(
        self,
        product_id: int,
        *,
        available: int,
        requested: int,
        product_name: str | None = None,
        warehouse_id: int | None = None,
    ):
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, requested: {requested}",
            product_id=product_id,
            product_name=product_name,
            warehouse_id=warehouse_id,
            available=available,
            requested=requested,
        )
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested


class InsufficientBalanceError(EngineError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 409

    def __init__(self, warehouse_id: int, *, balance_cents: int, requested_cents: int):
        super().__init__(
            f"Insufficient balance. Current: {balance_cents}, requested: {requested_cents}",
            warehouse_id=warehouse_id,
            balance_cents=balance_cents,
            requested_cents=requested_cents,
        )
        self.balance_cents = balance_cents
        self.requested_cents = requested_cents


class SignatureInvalidError(EngineError):
    code = "SIGNATURE_INVALID"
    http_status = 400


class InvalidTransitionError(EngineError):
    code = "INVALID_TRANSITION"
    http_status = 409


class PaymentGatewayError(EngineError):
    code = "PAYMENT_GATEWAY_ERROR"
    http_status = 502


class TransactionConflictError(EngineError):
    """The store aborted every attempt; the caller may retry later."""

    code = "TRANSACTION_CONFLICT"
    http_status = 503
