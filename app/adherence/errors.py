"""Error types for execution report computation.

Lock contention is not a failure: it is reported as a skipped stage run.
Everything else raised while a stage computes ends with the stage marked
failed and the message persisted on the activity row.
"""


class ExecutionReportError(RuntimeError):
    """Base class for execution report errors."""


class ComputationFailure(ExecutionReportError):
    """Raised when a stage cannot compute its result from the stored inputs.

    Examples: missing plan link for a stage that needs one, malformed plan
    steps, an empty sample stream.
    """


class TransientLockContention(ExecutionReportError):
    """Another instance of the same stage already holds the lock for this activity."""

    def __init__(self, lock_key: str):
        self.lock_key = lock_key
        super().__init__(f"Lock {lock_key} is held by another transaction")


class DocumentStoreError(ExecutionReportError):
    """Base class for document merge failures."""


class ActivityNotFoundError(DocumentStoreError):
    """Raised when the activity row does not exist."""

    def __init__(self, activity_id: str):
        self.activity_id = activity_id
        super().__init__(f"Activity {activity_id} not found")


class OwnershipViolationError(DocumentStoreError):
    """Raised when a stage tries to write document keys it does not own."""


class MalformedDocumentError(DocumentStoreError):
    """Raised when the merged document fails validation."""


class LinkError(ExecutionReportError):
    """Raised when an activity cannot be linked to the requested plan."""
