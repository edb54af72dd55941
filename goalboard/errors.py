"""
goalboard exception hierarchy.

Row and record level errors are collected into result objects; only
store-level failures are allowed to abort a run.
"""


class GoalboardError(Exception):
    """Base exception for all goalboard failures."""


class FieldError(GoalboardError):
    """A single field value is unusable. The validator reports it as a
    RowValidationError with the row and field attached."""


class RowValidationError(GoalboardError):
    """A single upload row failed validation."""

    def __init__(self, row, field, message):
        self.row = row
        self.field = field
        self.message = message
        super().__init__(f"row {row}: {field}: {message}")

    def to_dict(self):
        return {'row': self.row, 'field': self.field, 'message': self.message}


class ResolutionError(GoalboardError):
    """The metric store could not be read or written for one representative."""

    def __init__(self, representative_id, message):
        self.representative_id = representative_id
        super().__init__(f"representative {representative_id}: {message}")


class DispatchError(GoalboardError):
    """An action log could not be delivered after all retries."""

    def __init__(self, message, attempts=0):
        self.attempts = attempts
        super().__init__(message)


class MigrationRecordError(GoalboardError):
    """One snapshot could not be backfilled. The run continues."""


class MigrationFatalError(GoalboardError):
    """The store failed mid-run. The backfill stops and is marked failed."""


class MigrationStateError(GoalboardError):
    """An illegal backfill state transition was requested."""
