"""
Error taxonomy for recurring task processing.

- DefinitionError: a whole definition is structurally unusable. Recorded,
  the definition is skipped, the batch continues.
- TaskCreationError: a single occurrence could not be turned into a task.
  Recorded, sibling occurrences continue.
- InfrastructureError: a collaborator (database, task store) is unreachable.
  Propagated out of the batch so the caller can retry the pass with the
  same "now"; idempotency prevents duplicate tasks on retry.

Empty or inverted windows are not errors; they produce empty results.
"""

from typing import Optional


class RecurrenceError(Exception):
    """Base class for recurring task processing errors."""


class DefinitionError(RecurrenceError):
    def __init__(self, message: str, definition_id: Optional[int] = None):
        super().__init__(message)
        self.definition_id = definition_id


class TaskCreationError(RecurrenceError):
    pass


class InfrastructureError(RecurrenceError):
    pass
