"""Domain exception hierarchy for the relay service layer.

Services raise these instead of bare ``ValueError`` so that the global
exception handler can map them to the correct HTTP status code without
fragile string matching.
"""


class RelayError(Exception):
    """Base for all domain exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(RelayError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class BadRequestError(RelayError):
    """Client sent an invalid request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class ConflictError(RelayError):
    """The target is not in a state that allows the change (409)."""

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


class TurnInProgressError(ConflictError):
    """A session already has a turn in flight."""

    def __init__(self, session_id: object):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a turn in progress")


class QuestionStateError(ConflictError):
    """A question was answered or skipped after it left ``pending``."""


class ProtocolViolation(RelayError):
    """A turn ended without exactly one terminal action.

    Fatal to the turn; surfaced to the operator through logging, never
    through the conversation.
    """

    def __init__(self, message: str, *, turn_id: object = None, terminal_tools: list[str] | None = None):
        super().__init__(message, status_code=500)
        self.turn_id = turn_id
        self.terminal_tools = terminal_tools or []


class DownstreamTriggerFailure(RelayError):
    """The action launched after a fan-in gate opened failed to start."""

    def __init__(self, group_id: object, cause: BaseException | str):
        self.group_id = group_id
        self.cause = cause
        super().__init__(
            f"Downstream trigger for fan-in group {group_id} failed: {cause}", status_code=502
        )


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
