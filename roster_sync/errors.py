"""
Exception types raised by the roster sync core.
"""


class RosterSyncError(Exception):
    """Base class for roster sync errors."""


class SchemaError(RosterSyncError, ValueError):
    """The table's columns could not be mapped to a recognized format."""


class ValidationError(RosterSyncError, ValueError):
    """A single-record edit failed validation."""


class DuplicateIdentifierError(ValidationError):
    """An identifier is already used by another record."""

    def __init__(self, identifier: str):
        super().__init__("Identifier already exists for another record")
        self.identifier = identifier


class RecordNotFoundError(RosterSyncError, KeyError):
    """No record with the requested key exists in the store."""

    def __str__(self):
        return f"Record not found: {self.args[0] if self.args else ''}"


class MergeCancelled(RosterSyncError):
    """A merge fold was interrupted between steps."""

    def __init__(self, completed_steps: int, intermediate=None):
        super().__init__(f"Merge cancelled after {completed_steps} step(s)")
        self.completed_steps = completed_steps
        self.intermediate = intermediate
