"""Exception hierarchy for the wakeup scheduler."""


class WakeupError(Exception):
    """Base class for all scheduler errors."""


class ScheduleValidationError(WakeupError, ValueError):
    """A task draft or manual run request is invalid. Raised before any side effect."""


class CronExpressionError(ScheduleValidationError):
    """A crontab expression could not be parsed."""


class RemoteCallError(WakeupError):
    """A single wakeup call failed. Only ever reported inside a fan-out outcome."""


class PersistenceError(WakeupError):
    """The durable store could not be read or written."""
