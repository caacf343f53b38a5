"""Error taxonomy for the memory engine."""


class CortexError(Exception):
    """Base class for all cortex errors."""


class ValidationError(CortexError):
    """A proposed operation is malformed.

    Raised while parsing LLM output; the batch validator catches it and
    drops the operation, so it never reaches callers.
    """

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid '{field}': {reason}")


class NotFoundError(CortexError):
    """A fact or session addressed by id does not exist."""

    def __init__(self, kind: str, item_id: str) -> None:
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind.capitalize()} not found: {item_id}")


class StorageError(CortexError):
    """A storage backend failed."""


class TaskError(CortexError):
    """Processing of one queued extraction task failed."""

    def __init__(self, principal: str, cause: BaseException) -> None:
        self.principal = principal
        self.cause = cause
        super().__init__(f"Extraction task for '{principal}' failed: {cause}")
