# app/services/exceptions.py
"""
Domain errors.

Services raise these; routers turn them into HTTP responses.
Every error carries the HTTP status it maps to and a message that can
be shown to the customer as is (Portuguese, like the storefront).
"""

from typing import Optional


class OrderingError(Exception):
    """Base class for every expected failure of the ordering flow."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


# ==========================================
# ORDERS
# ==========================================

class EstablishmentNotFoundError(OrderingError):
    status_code = 404

    def __init__(self, message: str = "Establishment not found"):
        super().__init__(message)


class OrderNotFoundError(OrderingError):
    status_code = 404

    def __init__(self, message: str = "Order not found"):
        super().__init__(message)


class OrderValidationError(OrderingError):
    status_code = 400


class InvalidStatusTransition(OrderingError):
    status_code = 400


class StatusConflict(OrderingError):
    """The order changed between read and conditional write."""
    status_code = 409


# ==========================================
# COUPONS
# ==========================================

class CouponError(OrderingError):
    status_code = 400


class CouponNotFound(CouponError):
    status_code = 404

    def __init__(self, message: str = "Cupom não encontrado"):
        super().__init__(message)


class CouponExpired(CouponError):
    def __init__(self, message: str = "Cupom expirado"):
        super().__init__(message)


class CouponExhausted(CouponError):
    def __init__(self, message: str = "Cupom esgotado"):
        super().__init__(message)


class CouponFirstPurchaseOnly(CouponError):
    def __init__(self, message: str = "Este cupom é válido apenas para primeira compra"):
        super().__init__(message)


class CouponMinimumNotReached(CouponError):
    pass


# ==========================================
# PAYMENTS
# ==========================================

class PaymentProviderError(OrderingError):
    """Mercado Pago answered with an error or could not be reached."""

    status_code = 500

    def __init__(self, message: str, provider_status: Optional[int] = None, payload=None):
        super().__init__(message)
        self.provider_status = provider_status
        self.payload = payload

    @property
    def code(self) -> str:
        if self.provider_status == 404:
            return "PAYMENT_NOT_FOUND"
        if self.provider_status == 401:
            return "AUTH_ERROR"
        if self.provider_status is None and "timeout" in self.message.lower():
            return "TIMEOUT_ERROR"
        return "PAYMENT_FETCH_ERROR"
