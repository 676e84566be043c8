"""Error hierarchy for refresh retry classification.

Transient failures (timeouts, locked database, lost claim races) may succeed
on retry and are the only errors tenacity retries. Permanent failures (site
layout changes, invalid state transitions, malformed store rows) will not.

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(StoreWriteError), stop=stop_after_attempt(3))
    def create_tasks(self, batch_id, items):
        ...
"""


class RefreshError(Exception):
    """Base exception for all refresh errors."""

    pass


class TransientError(RefreshError):
    """Temporary failure that may succeed on retry."""

    pass


class ScrapeTimeoutError(TransientError):
    """A scrape stage (navigate, render wait, parse) exceeded its timeout.

    Also raised when the page was detached or closed mid-navigation.
    """

    pass


class StoreWriteError(TransientError):
    """A write to the task or lesson store failed (locked database, I/O error)."""

    pass


class ClaimConflictError(TransientError):
    """Another invocation claimed the task first.

    The caller moves on to the next pending task.
    """

    pass


class PermanentError(RefreshError):
    """Failure that won't succeed on retry."""

    pass


class ScrapeStructureError(PermanentError):
    """Expected selectors are missing from the rendered page.

    Usually means the booking site changed its layout and needs operator triage.
    """

    pass


class InvalidTransitionError(PermanentError):
    """A task status change not allowed from its current status."""

    pass


class RecordValidationError(PermanentError):
    """A stored row does not match its entity schema."""

    pass
