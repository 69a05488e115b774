"""
Collaborator interfaces used by the materializer.

The materializer depends on these Protocols rather than on the SQLite services,
so the default wiring (task_service / repeating_service modules) can be swapped
for in-memory stores in tests.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Protocol

Task = dict[str, Any]
Rule = dict[str, Any]


class TaskStore(Protocol):
    def create_task(
        self,
        owner_id: str,
        title: str,
        *,
        notes: str | None = None,
        status: str = "inbox",
        scheduled_date: str | None = None,
        project_id: str | None = None,
        heading_id: str | None = None,
        area_id: str | None = None,
        repeating_rule_id: str | None = None,
        checklist: list[str] | None = None,
        tag_ids: list[str] | None = None,
        history_event: str = "created",
    ) -> Task: ...

    def find_task_by_rule_and_date(self, rule_id: str, scheduled_date: str) -> Task | None: ...


class RuleStore(Protocol):
    def due_rules(self, owner_id: str, today: date | str) -> list[Rule]: ...
    def owners_with_due_rules(self, today: date | str) -> list[str]: ...
    def advance_rule(self, rule_id: str, owner_id: str) -> str | None: ...
    def soft_delete_rule(self, rule_id: str, owner_id: str) -> None: ...
