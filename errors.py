class LedgerError(ValueError):
    """Base class for rejected ledger operations."""


class NotFoundError(LedgerError):
    pass


class InvalidArgumentError(LedgerError):
    pass


class CycleDetectedError(LedgerError):
    pass


class TypeMismatchError(LedgerError):
    pass


class TypeLockedError(LedgerError):
    pass


class DuplicateNameError(LedgerError):
    pass
