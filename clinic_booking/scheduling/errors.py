"""Typed booking errors.

Every failure the booking core reports is a `BookingError` subclass carrying a
stable `kind` string and the HTTP status the transport layer should use.
"""

from fastapi import HTTPException, status


class BookingError(Exception):
    kind = 'BookingError'
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SlotUnavailable(BookingError):
    kind = 'SlotUnavailable'
    status_code = status.HTTP_409_CONFLICT


class ReservationExpired(BookingError):
    kind = 'ReservationExpired'
    status_code = status.HTTP_410_GONE


class InvalidStateTransition(BookingError):
    kind = 'InvalidStateTransition'
    status_code = status.HTTP_409_CONFLICT


class NotFound(BookingError):
    kind = 'NotFound'
    status_code = status.HTTP_404_NOT_FOUND


class PolicyViolation(BookingError):
    kind = 'PolicyViolation'
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class StoreUnavailable(BookingError):
    kind = 'StoreUnavailable'
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidRequest(BookingError):
    kind = 'InvalidRequest'
    status_code = status.HTTP_400_BAD_REQUEST


class Forbidden(BookingError):
    kind = 'Forbidden'
    status_code = status.HTTP_403_FORBIDDEN


def to_http_exception(exc: BookingError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={'error': exc.kind, 'message': exc.message},
    )
