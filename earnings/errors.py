class EarningsError(Exception):
    pass


class ValidationError(EarningsError):
    pass


class BelowMinimum(ValidationError):
    pass


class UnsupportedMethod(ValidationError):
    pass


class NotFoundError(EarningsError):
    pass


class UserNotFound(NotFoundError):
    pass


class TaskNotFound(NotFoundError):
    pass


class ReferralNotFound(NotFoundError):
    pass


class NotificationNotFound(NotFoundError):
    pass


class ConflictError(EarningsError):
    pass


class AlreadyCompleted(ConflictError):
    pass


class AccountExists(ConflictError):
    pass


class InsufficientFunds(EarningsError):
    pass


class PersistenceError(EarningsError):
    pass
