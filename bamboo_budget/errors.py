from typing import Optional


class BambooError(Exception):
    """Base exception for all service-level failures."""

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class AuthRequired(BambooError):
    """No active identity; persistence operations fail fast."""


class NotFound(BambooError):
    """Record does not exist or is owned by another identity."""


class StorageUnavailable(BambooError):
    """The remote store could not be read."""


class WriteFailed(BambooError):
    """A write to the store failed."""


class DocumentTooLarge(WriteFailed):
    """Serialized document exceeds the per-document size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Document of {size} bytes exceeds the maximum allowed size of {limit} bytes")
        self.size = size
        self.limit = limit


class LocalQuotaExceeded(WriteFailed):
    """The local fallback store has no room left."""


class CascadeDeleteIncomplete(WriteFailed):
    """A trip delete stopped after the trip itself was removed."""

    def __init__(
        self,
        trip_id: str,
        step: str,
        expenses_deleted: int,
        expenses_remaining: Optional[int] = None,
    ):
        left = "an unknown number" if expenses_remaining is None else str(expenses_remaining)
        super().__init__(
            f"Deleting trip {trip_id} stopped at step {step}: "
            f"{expenses_deleted} expenses deleted, {left} left behind"
        )
        self.trip_id = trip_id
        self.step = step
        self.expenses_deleted = expenses_deleted
        self.expenses_remaining = expenses_remaining


class DailyLimitReached(BambooError):
    """The shared AI key quota for today is used up."""


class IdentityCollision(BambooError):
    """The permanent credential is already linked to another identity."""

    def __init__(self, credential: Optional[object] = None, message: str = ""):
        super().__init__(message or "Credential already in use by another identity")
        self.credential = credential


class MigrationIncomplete(BambooError):
    """Guest data migration stopped part-way; carries the progress report."""

    def __init__(self, report, cause: Optional[BaseException] = None):
        detail = (
            f"Migration stopped at step {report.step.value}: "
            f"{report.trips_migrated}/{report.trips_total} trips and "
            f"{report.expenses_migrated}/{report.expenses_total} expenses migrated"
        )
        if cause is not None:
            detail = f"{detail} ({cause})"
        super().__init__(detail)
        self.report = report
        self.cause = cause
