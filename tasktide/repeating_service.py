"""
Repeating rule store: CRUD over repeating_rules plus the due-rule query.

A rule holds a recurrence spec, the date of the next instance to spawn
(next_occurrence), an active/paused status and a content snapshot (title, notes,
placement, checklist template, tag template) that each spawned task copies.
Soft-deleted rules (deleted_at set) drop out of every listing and due check.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from typing import Any

from ulid import ULID

from .database import get_connection, record_history
from .date_utils import iso_date
from .errors import NotFound
from .recurrence import next_after_iso, validate_recurrence

logger = logging.getLogger(__name__)

RULE_STATUSES = frozenset({"active", "paused"})

# Sentinel: pass for optional params to mean "don't change"; None means "set to null"
_UNSET = object()

_PLAIN_FIELDS = ("rrule", "next_occurrence", "status", "title", "notes", "project_id", "heading_id", "area_id")


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _checklist_json(items: list[Any] | None) -> str | None:
    """Serialize checklist titles (strings or {"title": ...} dicts) as [{"title": ...}, ...]."""
    if items is None:
        return None
    out = []
    for item in items:
        title = item.get("title") if isinstance(item, dict) else item
        if title is None or not str(title).strip():
            raise ValueError("checklist item title is required")
        out.append({"title": str(title).strip()})
    return json.dumps(out)


def _tags_json(tag_ids: list[str] | None) -> str | None:
    if tag_ids is None:
        return None
    return json.dumps([str(t) for t in tag_ids if t])


def checklist_titles(rule: dict[str, Any]) -> list[str]:
    """Checklist template of a rule as an ordered list of titles."""
    raw = rule.get("checklist_template")
    if not raw:
        return []
    return [item["title"] for item in json.loads(raw)]


def tag_ids(rule: dict[str, Any]) -> list[str]:
    raw = rule.get("tags_template")
    if not raw:
        return []
    return list(json.loads(raw))


def _rule_row_to_dict(row: Any) -> dict[str, Any]:
    return dict(row)


def create_rule(
    owner_id: str,
    rrule: str,
    start_date: date | str,
    title: str,
    *,
    notes: str | None = None,
    project_id: str | None = None,
    heading_id: str | None = None,
    area_id: str | None = None,
    checklist_items: list[Any] | None = None,
    tag_ids: list[str] | None = None,
    status: str = "active",
    rule_id: str | None = None,
) -> str:
    """
    Create a rule. start_date becomes next_occurrence as-is: the anchor date itself
    is the first occurrence to spawn.
    """
    if not owner_id:
        raise ValueError("owner_id is required")
    if not title or not title.strip():
        raise ValueError("title is required")
    if status not in RULE_STATUSES:
        raise ValueError(f"status must be one of {sorted(RULE_STATUSES)}")
    validate_recurrence(rrule)
    rid = rule_id or str(ULID())
    now = _now_iso()
    next_occurrence = iso_date(start_date)
    conn = get_connection()
    try:
        conn.execute(
            """INSERT INTO repeating_rules (
                id, user_id, rrule, next_occurrence, status, title, notes,
                project_id, heading_id, area_id, checklist_template, tags_template,
                created_at, updated_at, deleted_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)""",
            (
                rid, owner_id, rrule.strip(), next_occurrence, status, title.strip(), notes or None,
                project_id, heading_id, area_id, _checklist_json(checklist_items), _tags_json(tag_ids),
                now, now,
            ),
        )
        record_history(conn, rid, "rule_created", {"rrule": rrule.strip(), "next_occurrence": next_occurrence})
        conn.commit()
    finally:
        conn.close()
    logger.info("Repeating rule created id=%s owner=%s rrule=%s next=%s", rid, owner_id, rrule, next_occurrence)
    return rid


def get_rule(rule_id: str, owner_id: str) -> dict[str, Any]:
    """Return a live rule or raise NotFound (missing, deleted, or another owner's)."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM repeating_rules WHERE id = ? AND user_id = ? AND deleted_at IS NULL",
            (rule_id, owner_id),
        ).fetchone()
    finally:
        conn.close()
    if not row:
        raise NotFound("Repeating rule", rule_id)
    return _rule_row_to_dict(row)


def list_rules(owner_id: str) -> list[dict[str, Any]]:
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM repeating_rules WHERE user_id = ? AND deleted_at IS NULL ORDER BY created_at, rowid",
            (owner_id,),
        ).fetchall()
        return [_rule_row_to_dict(r) for r in rows]
    finally:
        conn.close()


def due_rules(owner_id: str, today: date | str) -> list[dict[str, Any]]:
    """Active, non-deleted rules of the owner whose next_occurrence is on or before today."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """SELECT * FROM repeating_rules
               WHERE user_id = ? AND deleted_at IS NULL AND status = 'active'
                 AND next_occurrence <= ?""",
            (owner_id, iso_date(today)),
        ).fetchall()
        return [_rule_row_to_dict(r) for r in rows]
    finally:
        conn.close()


def owners_with_due_rules(today: date | str) -> list[str]:
    conn = get_connection()
    try:
        rows = conn.execute(
            """SELECT DISTINCT user_id FROM repeating_rules
               WHERE deleted_at IS NULL AND status = 'active' AND next_occurrence <= ?
               ORDER BY user_id""",
            (iso_date(today),),
        ).fetchall()
        return [r[0] for r in rows]
    finally:
        conn.close()


def update_rule(
    rule_id: str,
    owner_id: str,
    *,
    rrule: str | object = _UNSET,
    next_occurrence: date | str | object = _UNSET,
    status: str | object = _UNSET,
    title: str | object = _UNSET,
    notes: str | None | object = _UNSET,
    project_id: str | None | object = _UNSET,
    heading_id: str | None | object = _UNSET,
    area_id: str | None | object = _UNSET,
    checklist_items: list[Any] | object = _UNSET,
    checklist_template: str | None | object = _UNSET,
    tag_ids: list[str] | object = _UNSET,
    tags_template: str | None | object = _UNSET,
    history_event: str = "rule_updated",
) -> dict[str, Any]:
    """
    Partial update: only supplied fields change; updated_at is always refreshed.
    history_event names the audit row (rule_advanced, template_synced, ...).
    checklist_items / tag_ids are lists serialized into the templates;
    checklist_template / tags_template take already-serialized JSON (or None to clear).
    """
    values: dict[str, Any] = {
        "rrule": rrule, "next_occurrence": next_occurrence, "status": status, "title": title,
        "notes": notes, "project_id": project_id, "heading_id": heading_id, "area_id": area_id,
    }
    updates: list[str] = []
    params: list[Any] = []
    for key in _PLAIN_FIELDS:
        val = values[key]
        if val is _UNSET:
            continue
        if key == "rrule":
            validate_recurrence(val)
            val = str(val).strip()
        elif key == "next_occurrence":
            val = iso_date(val)
        elif key == "status" and val not in RULE_STATUSES:
            raise ValueError(f"status must be one of {sorted(RULE_STATUSES)}")
        elif key == "title":
            if not val or not str(val).strip():
                raise ValueError("title is required")
            val = str(val).strip()
        updates.append(f"{key} = ?")
        params.append(val)
    if checklist_items is not _UNSET:
        updates.append("checklist_template = ?")
        params.append(_checklist_json(checklist_items))
    if checklist_template is not _UNSET:
        updates.append("checklist_template = ?")
        params.append(checklist_template)
    if tag_ids is not _UNSET:
        updates.append("tags_template = ?")
        params.append(_tags_json(tag_ids))
    if tags_template is not _UNSET:
        updates.append("tags_template = ?")
        params.append(tags_template)

    updates.append("updated_at = ?")
    params.append(_now_iso())
    conn = get_connection()
    try:
        cur = conn.execute(
            f"UPDATE repeating_rules SET {', '.join(updates)} WHERE id = ? AND user_id = ? AND deleted_at IS NULL",
            (*params, rule_id, owner_id),
        )
        if cur.rowcount != 1:
            raise NotFound("Repeating rule", rule_id)
        changed = [u.split(" = ")[0] for u in updates[:-1]]
        payload: dict[str, Any] = {"fields": changed}
        if "next_occurrence" in changed:
            payload["next_occurrence"] = iso_date(values["next_occurrence"])
        record_history(conn, rule_id, history_event, payload)
        conn.commit()
    finally:
        conn.close()
    return get_rule(rule_id, owner_id)


def pause_rule(rule_id: str, owner_id: str) -> dict[str, Any]:
    return update_rule(rule_id, owner_id, status="paused")


def resume_rule(rule_id: str, owner_id: str) -> dict[str, Any]:
    return update_rule(rule_id, owner_id, status="active")


def soft_delete_rule(rule_id: str, owner_id: str) -> None:
    """Set deleted_at; status is left as it was."""
    now = _now_iso()
    conn = get_connection()
    try:
        cur = conn.execute(
            """UPDATE repeating_rules SET deleted_at = ?, updated_at = ?
               WHERE id = ? AND user_id = ? AND deleted_at IS NULL""",
            (now, now, rule_id, owner_id),
        )
        if cur.rowcount != 1:
            raise NotFound("Repeating rule", rule_id)
        record_history(conn, rule_id, "rule_deleted", {"deleted_at": now})
        conn.commit()
    finally:
        conn.close()
    logger.info("Repeating rule deleted id=%s owner=%s", rule_id, owner_id)


def advance_rule(rule_id: str, owner_id: str) -> str | None:
    """
    Move next_occurrence to the following occurrence. When the recurrence has no
    further occurrence the rule is retired (soft-deleted) and None is returned.
    """
    rule = get_rule(rule_id, owner_id)
    nxt = next_after_iso(rule["rrule"], rule["next_occurrence"])
    if nxt is None:
        soft_delete_rule(rule_id, owner_id)
        logger.info("Repeating rule %s exhausted after %s; retired", rule_id, rule["next_occurrence"])
        return None
    update_rule(rule_id, owner_id, next_occurrence=nxt, history_event="rule_advanced")
    logger.debug("Repeating rule %s advanced %s -> %s", rule_id, rule["next_occurrence"], nxt)
    return nxt


def set_next_occurrence_from_date(rule_id: str, owner_id: str, after_date: date | str) -> str | None:
    """
    Re-anchor the rule on the first occurrence after after_date, but only ever forward:
    if that date is not later than the current pointer the pointer is kept.
    Retires the rule when nothing follows after_date.
    """
    rule = get_rule(rule_id, owner_id)
    nxt = next_after_iso(rule["rrule"], after_date)
    if nxt is None:
        soft_delete_rule(rule_id, owner_id)
        return None
    if nxt <= rule["next_occurrence"]:
        return rule["next_occurrence"]
    update_rule(rule_id, owner_id, next_occurrence=nxt)
    return nxt
