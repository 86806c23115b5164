# snapmatch/exceptions.py
"""Error taxonomy shared by every service.

Store wrappers report client failures as ``False``/``None``; services turn
those into the exceptions below when the caller has to be told.
"""


class SnapmatchError(Exception):
    """Base class for all errors raised by the reconciliation services."""


class NotFoundError(SnapmatchError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found")


class ValidationError(SnapmatchError):
    """A required field was missing or malformed before a write."""


class PartialFailure(SnapmatchError):
    """A multi-step operation committed some steps and not others.

    Nothing is rolled back; ``committed`` names what already happened so an
    operator can finish or undo it by hand.
    """

    def __init__(self, committed: list[str], failed: str, detail: str = ""):
        self.committed = committed
        self.failed = failed
        self.detail = detail
        msg = f"'{failed}' failed after {', '.join(committed) or 'nothing'} committed"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class ExternalServiceError(SnapmatchError):
    def __init__(self, service: str, detail: str = ""):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} failed: {detail}" if detail else f"{service} failed")


class AllocationExhausted(SnapmatchError):
    """Every candidate identifier collided within the attempt budget."""

    def __init__(self, attempts: int, last_candidate: str):
        self.attempts = attempts
        self.last_candidate = last_candidate
        super().__init__(f"no unique identifier after {attempts} attempts (last: {last_candidate})")


class ConcurrencyConflict(SnapmatchError):
    """Optimistic-concurrency retries on a record were exhausted."""

    def __init__(self, kind: str, key: str, attempts: int):
        self.kind = kind
        self.key = key
        self.attempts = attempts
        super().__init__(f"{kind} '{key}' kept changing underneath us ({attempts} attempts)")


class NoMatchFound(SnapmatchError):
    """A face search produced no candidate above the match threshold."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"No matching faces found in the images of event {event_id}.")
