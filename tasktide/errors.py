"""Errors raised by the recurrence, rule store and materialization layers."""
from __future__ import annotations


class MalformedRecurrence(ValueError):
    """The recurrence spec string cannot be parsed."""

    def __init__(self, spec: str | None, reason: str = "") -> None:
        self.spec = spec
        self.reason = reason
        msg = f"Malformed recurrence: {spec!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class NoFurtherOccurrence(LookupError):
    """A bounded recurrence has no date after the reference date."""

    def __init__(self, spec: str, after: str) -> None:
        self.spec = spec
        self.after = after
        super().__init__(f"Recurrence {spec!r} has no occurrence after {after}")


class NotFound(LookupError):
    """No record with that id for that owner."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")
