"""Domain errors raised by the payment services.

Each error carries the HTTP status the routes translate it into.
"""

from fastapi import HTTPException, status


class PaymentError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.message)


class PaymentNotFound(PaymentError):
    status_code = status.HTTP_404_NOT_FOUND


class BookingNotFound(PaymentError):
    status_code = status.HTTP_404_NOT_FOUND


class AuthorizationNotFound(PaymentError):
    status_code = status.HTTP_404_NOT_FOUND


class AlreadyConfirmed(PaymentError):
    status_code = status.HTTP_409_CONFLICT


class InvalidTransition(PaymentError):
    status_code = status.HTTP_409_CONFLICT


class GatewayUnavailable(PaymentError):
    status_code = status.HTTP_502_BAD_GATEWAY


class Forbidden(PaymentError):
    status_code = status.HTTP_403_FORBIDDEN


class MalformedEvent(PaymentError):
    """Webhook body could not be parsed into a payment event."""


class PaymentRequestInvalid(PaymentError):
    """A payment request failed validation (bad amount, disabled method, closed booking)."""
