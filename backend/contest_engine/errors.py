"""Domain error taxonomy for the contest scoring engine.

Services raise these; routers let them propagate to the exception handlers
registered in ``contest_engine.main``, which map ``http_status`` onto the
response. Workers catch them where a single game or record must not stall
the rest of a batch.
"""


class ContestEngineError(Exception):
    """Base class for all domain errors."""

    http_status = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


class ValidationError(ContestEngineError):
    """Malformed input, rejected immediately."""

    http_status = 422


class InvalidChoice(ValidationError):
    """Submitted choice is not in the prediction's valid option set."""


class NotFound(ContestEngineError):
    http_status = 404


class NotRegistered(ContestEngineError):
    http_status = 403


class DeadlinePassed(ContestEngineError):
    """Submission arrived at or after the prediction's deadline."""

    http_status = 409


class StateError(ContestEngineError):
    """Operation invalid for the contest's current lifecycle state."""

    http_status = 409


class ContestClosed(StateError):
    pass


class ContestNotActive(StateError):
    pass


class ContestFull(StateError):
    pass


class AlreadyRegistered(StateError):
    pass


class ExternalServiceError(ContestEngineError):
    """Result provider, oracle or payment gateway unavailable."""

    http_status = 503


class UnresolvedDataError(ContestEngineError):
    """Ambiguous or missing result data; the game goes to operator review."""

    http_status = 409


class ConcurrencyConflict(ContestEngineError):
    """Optimistic version check failed."""

    http_status = 409
