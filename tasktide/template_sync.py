"""
Keep a repeating rule's content snapshot in step with the tasks it spawns.

- promote: turn an existing task into a rule; the task is trashed and future
  instances come from the rule
- sync_from_task: copy a spawned instance's current content back onto its rule,
  so the next spawn carries the latest edits (last write wins)
- complete_task: completing a spawned instance syncs the rule, then moves its
  pointer forward from the completion day

Called explicitly at edit points (HTTP routes); nothing here runs on a schedule.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any

from . import repeating_service, task_service
from .errors import NoFurtherOccurrence, NotFound
from .recurrence import next_after_iso

logger = logging.getLogger(__name__)


def _load_task(task_id: str, owner_id: str | None = None) -> dict[str, Any]:
    task = task_service.get_task(task_id, owner_id)
    if not task:
        raise NotFound("Task", task_id)
    return task


def _snapshot(task: dict[str, Any]) -> dict[str, Any]:
    """Template content of a task: text, placement, ordered checklist titles and tag ids."""
    return {
        "title": task["title"],
        "notes": task.get("notes"),
        "project_id": task.get("project_id"),
        "heading_id": task.get("heading_id"),
        "area_id": task.get("area_id"),
        "checklist_items": [item["title"] for item in task.get("checklist") or []],
        "tag_ids": list(task.get("tag_ids") or []),
    }


def promote(task_id: str, rrule: str, start_date: date | str, owner_id: str | None = None) -> str:
    """
    Convert a task into a repeating rule and trash the task. The first occurrence
    is the first date strictly after start_date. Returns the new rule id.
    Raises NotFound, MalformedRecurrence, or NoFurtherOccurrence when the rule
    produces nothing after start_date.
    """
    task = _load_task(task_id, owner_id)
    first = next_after_iso(rrule, start_date)
    if first is None:
        raise NoFurtherOccurrence(rrule, start_date)
    snap = _snapshot(task)
    rule_id = repeating_service.create_rule(
        task["user_id"],
        rrule,
        first,
        snap["title"],
        notes=snap["notes"],
        project_id=snap["project_id"],
        heading_id=snap["heading_id"],
        area_id=snap["area_id"],
        checklist_items=snap["checklist_items"],
        tag_ids=snap["tag_ids"],
    )
    task_service.trash_task(task_id, history_event="promoted", details={"rule_id": rule_id})
    logger.info("Task %s promoted to repeating rule %s (first occurrence %s)", task_id, rule_id, first)
    return rule_id


def sync_from_task(task_id: str) -> dict[str, Any] | None:
    """
    Overwrite the owning rule's snapshot with the task's current content.
    No-op (returns None) for a task without a rule or whose rule has been deleted;
    returns the updated rule otherwise.
    """
    task = _load_task(task_id)
    rule_id = task.get("repeating_rule_id")
    if not rule_id:
        return None
    try:
        rule = repeating_service.update_rule(
            rule_id, task["user_id"], history_event="template_synced", **_snapshot(task)
        )
    except NotFound:
        logger.debug("Rule %s of task %s is gone; nothing to sync", rule_id, task_id)
        return None
    logger.debug("Rule %s synced from task %s", rule_id, task_id)
    return rule


def complete_task(task_id: str, today: date | str) -> dict[str, Any]:
    """
    Complete a task. For a spawned instance the rule is first synced from it and its
    next_occurrence moved to the first occurrence after today, never backwards.
    A rule deleted in the meantime does not block completion.
    """
    task = _load_task(task_id)
    rule_id = task.get("repeating_rule_id")
    if rule_id and task["status"] != "completed":
        try:
            sync_from_task(task_id)
            repeating_service.set_next_occurrence_from_date(rule_id, task["user_id"], today)
        except NotFound:
            logger.debug("Rule %s of task %s is gone; completing without sync", rule_id, task_id)
    completed = task_service.complete_task_record(task_id)
    if completed is None:
        raise NotFound("Task", task_id)
    return completed
