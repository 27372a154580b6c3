"""Exception hierarchy for the alerting service."""


class AlerterError(Exception):
    """Base class for all alerter errors."""


class ConfigError(AlerterError, ValueError):
    """Configuration file or rule definition is malformed.

    Raised at startup only. The service refuses to start rather than run
    with a partially understood rule set.
    """


class InvalidEventError(AlerterError, ValueError):
    """An inbound record could not be decoded into a LogEvent."""


class ProcessingError(AlerterError):
    """Processing of an accepted event failed after the guard key was taken.

    By the time this is raised the guard key has already been released, so
    a redelivered copy of the event is processed as new.
    """

    def __init__(self, message: str, idempotency_key: str | None = None):
        super().__init__(message)
        self.idempotency_key = idempotency_key
