from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class NotFoundError(AppError):
    pass


class ForbiddenError(AppError):
    """Actor is known but not permitted to perform the operation."""


class UnauthenticatedError(AppError):
    pass


class ConflictError(AppError):
    pass


class ValidationError(AppError):
    pass


class InvalidNameError(ValidationError):
    pass


class StoreUnavailableError(AppError):
    """Transient collaborator failure; safe to retry."""


class OperationTimeoutError(StoreUnavailableError):
    pass


class SubscriptionClosedError(AppError):
    """Reconnect budget exhausted; the subscription will not retry."""


class SessionClosedError(AppError):
    pass
