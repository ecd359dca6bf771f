"""Error kinds raised by the finish-line services.

Services raise these; the blueprint error handler in :mod:`finishline.routes`
turns them into JSON responses.
"""


class FinishLineError(Exception):
    """Base class for every command failure."""

    status_code = 400

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(FinishLineError):
    """Bad input shape or value."""


class InvalidTransitionError(FinishLineError):
    """Race status misuse (no race selected, reverse transition, closed race)."""

    status_code = 409


class RaceNotFoundError(FinishLineError):
    status_code = 404


class RunnerNotFoundError(FinishLineError):
    status_code = 404


class DuplicateFinishError(FinishLineError):
    """The runner already has a recorded finish."""

    status_code = 409


class EmptyLedgerError(FinishLineError):
    """Undo requested with nothing to undo."""

    status_code = 409


class UnknownHouseError(FinishLineError):
    pass


class MalformedBackupError(FinishLineError):
    pass


class PointsAlreadyAwardedError(FinishLineError):
    """The race already has house points entries."""

    status_code = 409


class ConcurrentModificationError(FinishLineError):
    """Another session changed the finish order since it was loaded."""

    status_code = 409


class GatewayError(FinishLineError):
    """Wraps any Persistence Gateway failure."""

    status_code = 502


__all__ = [
    "FinishLineError",
    "ValidationError",
    "InvalidTransitionError",
    "RaceNotFoundError",
    "RunnerNotFoundError",
    "DuplicateFinishError",
    "EmptyLedgerError",
    "UnknownHouseError",
    "MalformedBackupError",
    "ConcurrentModificationError",
    "PointsAlreadyAwardedError",
    "GatewayError",
]
