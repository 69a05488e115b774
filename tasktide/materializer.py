"""
Materializer: turn due repeating rules into concrete task instances.

Per due rule, one pass:
1. check existing  - a live, non-trashed task for (rule, next_occurrence) means the
                     occurrence was already spawned (a retried or repeated pass)
2. spawn           - create the task with its checklist and tag links in one store call
3. record          - report the new task id
4. advance         - move next_occurrence to the following occurrence, or retire the
                     rule (soft delete) when a bounded expression has run out

The task is always written before the rule is advanced: a crash in between leaves a
task that the next pass finds in step 1, so no occurrence is ever skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from . import repeating_service, task_service
from .date_utils import as_date, iso_date
from .ports import Rule, RuleStore, TaskStore
from .recurrence import ends_before

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RuleFailure:
    rule_id: str
    error: Exception

    def to_dict(self) -> dict[str, str]:
        return {"rule_id": self.rule_id, "error": f"{type(self.error).__name__}: {self.error}"}


@dataclass(slots=True)
class MaterializeResult:
    created_task_ids: list[str] = field(default_factory=list)
    failures: list[RuleFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_task_ids": list(self.created_task_ids),
            "failures": [f.to_dict() for f in self.failures],
        }


def _spawn(rule: Rule, tasks: TaskStore) -> str:
    task = tasks.create_task(
        rule["user_id"],
        rule["title"],
        notes=rule.get("notes"),
        status="scheduled",
        scheduled_date=rule["next_occurrence"],
        project_id=rule.get("project_id"),
        heading_id=rule.get("heading_id"),
        area_id=rule.get("area_id"),
        repeating_rule_id=rule["id"],
        checklist=repeating_service.checklist_titles(rule),
        tag_ids=repeating_service.tag_ids(rule),
        history_event="spawned",
    )
    return task["id"]


def materialize_rule(
    rule: Rule,
    today: date | str,
    *,
    tasks: TaskStore = task_service,
    rules: RuleStore = repeating_service,
) -> str | None:
    """
    Run one rule through check / spawn / advance. Returns the id of the task created,
    or None when nothing was spawned (not due, already spawned, or exhausted).
    Errors from parsing or the stores propagate.
    """
    if rule.get("status") != "active" or rule.get("deleted_at"):
        return None
    occurrence = iso_date(rule["next_occurrence"])
    if occurrence > iso_date(today):
        return None
    if ends_before(rule["rrule"], occurrence):
        # Bounded expression already ran out before the pointer (e.g. UNTIL edited back).
        rules.soft_delete_rule(rule["id"], rule["user_id"])
        logger.info("Repeating rule %s has no occurrence on or after %s; retired", rule["id"], occurrence)
        return None

    task_id: str | None = None
    existing = tasks.find_task_by_rule_and_date(rule["id"], occurrence)
    if existing:
        logger.debug("Rule %s already has task %s on %s", rule["id"], existing["id"], occurrence)
    else:
        task_id = _spawn(rule, tasks)
        logger.info("Spawned task %s from rule %s for %s", task_id, rule["id"], occurrence)
    rules.advance_rule(rule["id"], rule["user_id"])
    return task_id


def materialize_due(
    owner_id: str,
    today: date | str,
    *,
    tasks: TaskStore = task_service,
    rules: RuleStore = repeating_service,
) -> MaterializeResult:
    """
    Materialize every due rule of one owner. Rules are independent: a failing rule is
    recorded in the result and the rest of the batch still runs. Never raises for a
    per-rule problem. Safe to call repeatedly for the same day.
    """
    today = as_date(today)
    result = MaterializeResult()
    due = rules.due_rules(owner_id, today)
    # Fixed order so the end state does not depend on how the store returns rows.
    for rule in sorted(due, key=lambda r: (r["next_occurrence"], r["id"])):
        try:
            task_id = materialize_rule(rule, today, tasks=tasks, rules=rules)
        except Exception as e:
            logger.exception("Materializing rule %s for owner %s failed", rule.get("id"), owner_id)
            result.failures.append(RuleFailure(rule.get("id") or "", e))
            continue
        if task_id:
            result.created_task_ids.append(task_id)
    logger.info(
        "Materialized owner=%s today=%s due=%s created=%s failed=%s",
        owner_id, today.isoformat(), len(due), len(result.created_task_ids), len(result.failures),
    )
    return result


def materialize_all_due(
    today: date | str,
    *,
    tasks: TaskStore = task_service,
    rules: RuleStore = repeating_service,
) -> dict[str, MaterializeResult]:
    """Run materialize_due for every owner that has a due rule. Returns owner_id -> result."""
    return {
        owner_id: materialize_due(owner_id, today, tasks=tasks, rules=rules)
        for owner_id in rules.owners_with_due_rules(today)
    }
