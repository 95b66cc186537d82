from __future__ import annotations


class LedgerError(Exception):
    """Base class for failures raised by the ledger core."""


class ValidationError(LedgerError, ValueError):
    pass


class InvalidAmount(ValidationError):
    pass


class SameAccount(ValidationError):
    pass


class NotFoundError(LedgerError, LookupError):
    pass


class AccountNotFound(NotFoundError):
    pass


class BudgetNotFound(NotFoundError):
    pass


class ScheduleNotFound(NotFoundError):
    pass


class CategoryNotFound(NotFoundError):
    pass


class InsufficientFunds(LedgerError):
    pass


class RateUnavailable(LedgerError, ValueError):
    """Raised when a currency is missing from the rate table."""


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class PersistenceFailure(LedgerError):
    pass


class NotificationDeliveryFailure(LedgerError):
    pass
