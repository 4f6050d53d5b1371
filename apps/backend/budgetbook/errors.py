from __future__ import annotations


class BudgetbookError(Exception):
    """Base class for all domain errors raised by budgetbook."""


class NotFoundError(BudgetbookError):
    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class ValidationFailed(BudgetbookError):
    pass


class MonthCloseError(BudgetbookError):
    pass


class BackupFormatError(BudgetbookError):
    pass


class RemoteError(BudgetbookError):
    """A call to the remote backend failed (network, HTTP or API error)."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


class MappingError(BudgetbookError):
    """A remote row could not be decoded into the local schema."""


class SyncInProgressError(BudgetbookError):
    pass


class SyncDisabledError(BudgetbookError):
    pass
