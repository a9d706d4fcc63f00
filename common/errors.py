from contextlib import contextmanager
from typing import Optional
from uuid import UUID


class ServiceError(Exception):
    """Base class for failures reported back to API callers."""

    status_code = 400
    label = "BAD REQUEST"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    pass


class NotFoundError(ServiceError):
    status_code = 404
    label = "NOT FOUND"


class ConflictError(ServiceError):
    pass


class AlreadyFinalizedError(ServiceError):
    def __init__(self, payment_id: str, status: str):
        super().__init__("payment already finalized")
        self.payment_id = payment_id
        self.status = status


class AmountMismatchError(ServiceError):
    def __init__(self, amount: int, total_amount: int):
        super().__init__(
            f"payment amount {amount} does not match order total amount {total_amount}"
        )
        self.amount = amount
        self.total_amount = total_amount


class UpstreamError(ServiceError):
    """A partner service answered with an error or could not be reached."""

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class DecodeError(UpstreamError):
    pass


@contextmanager
def unknown_id_as_bad_request():
    """Report NotFoundError as 400 on routes that change state; reads keep 404."""
    try:
        yield
    except NotFoundError as e:
        raise ValidationError(e.message) from e


def parse_uuid(value, message: str = "invalid UUID") -> str:
    """Return the canonical string form of a UUID or raise ValidationError."""
    if isinstance(value, UUID):
        return str(value)
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError):
        raise ValidationError(message) from None
