"""
Task Service layer: the task / checklist / tag-association store.
All task mutations go through here. Rows come back as plain dicts with their
checklist items and tag ids attached.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from ulid import ULID

from .database import get_connection, record_history
from .date_utils import iso_date

logger = logging.getLogger(__name__)

STATUSES = frozenset({"inbox", "anytime", "someday", "scheduled", "completed", "trashed"})

# Sentinel: pass for optional params to mean "don't change"; None means "set to null"
_UNSET = object()

_TASK_FIELDS = ("title", "notes", "status", "scheduled_date", "deadline", "project_id", "heading_id", "area_id")


def _new_id() -> str:
    return str(ULID())


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _date_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return iso_date(value)


def _task_row_to_dict(row: Any) -> dict[str, Any]:
    return dict(row)


def _checklist_rows(conn: sqlite3.Connection, task_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """SELECT id, title, completed, position FROM checklist_items
           WHERE task_id = ? AND deleted_at IS NULL
           ORDER BY position, created_at, rowid""",
        (task_id,),
    ).fetchall()
    return [{**dict(r), "completed": bool(r["completed"])} for r in rows]


def _tag_ids(conn: sqlite3.Connection, task_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT tag_id FROM task_tags WHERE task_id = ? AND deleted_at IS NULL ORDER BY created_at, rowid",
        (task_id,),
    ).fetchall()
    return [r[0] for r in rows]


def _add_task_relations(conn: sqlite3.Connection, out: dict[str, Any]) -> None:
    out["checklist"] = _checklist_rows(conn, out["id"])
    out["tag_ids"] = _tag_ids(conn, out["id"])


def _insert_checklist_item(
    conn: sqlite3.Connection, user_id: str, task_id: str, title: str, position: float, now: str
) -> str:
    item_id = _new_id()
    conn.execute(
        """INSERT INTO checklist_items (id, user_id, task_id, title, completed, position, created_at, updated_at)
           VALUES (?, ?, ?, ?, 0, ?, ?, ?)""",
        (item_id, user_id, task_id, title, position, now, now),
    )
    return item_id


def _insert_task_tag(conn: sqlite3.Connection, user_id: str, task_id: str, tag_id: str, now: str) -> str | None:
    exists = conn.execute(
        "SELECT 1 FROM task_tags WHERE task_id = ? AND tag_id = ? AND deleted_at IS NULL",
        (task_id, tag_id),
    ).fetchone()
    if exists:
        return None
    link_id = _new_id()
    conn.execute(
        """INSERT INTO task_tags (id, user_id, task_id, tag_id, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (link_id, user_id, task_id, tag_id, now, now),
    )
    return link_id


def create_task(
    owner_id: str,
    title: str,
    *,
    notes: str | None = None,
    status: str = "inbox",
    scheduled_date: str | None = None,
    deadline: str | None = None,
    position: float | None = None,
    project_id: str | None = None,
    heading_id: str | None = None,
    area_id: str | None = None,
    repeating_rule_id: str | None = None,
    checklist: list[str] | None = None,
    tag_ids: list[str] | None = None,
    task_id: str | None = None,
    history_event: str = "created",
) -> dict[str, Any]:
    """
    Create a task with its checklist items (positions 1..n, in order) and tag links
    in one transaction. Position defaults to the end of the owner's tasks.
    history_event names the audit row (materialized instances are recorded as "spawned").
    """
    if not owner_id:
        raise ValueError("owner_id is required")
    if not title or not title.strip():
        raise ValueError("title is required")
    if status not in STATUSES:
        raise ValueError(f"status must be one of {sorted(STATUSES)}")
    tid = task_id or _new_id()
    now = _now_iso()
    conn = get_connection()
    try:
        if repeating_rule_id:
            owner_row = conn.execute(
                "SELECT user_id FROM repeating_rules WHERE id = ?", (repeating_rule_id,)
            ).fetchone()
            if not owner_row or owner_row[0] != owner_id:
                raise ValueError("repeating_rule_id must reference a rule of the same owner")
        if position is None:
            count = conn.execute("SELECT COUNT(*) FROM tasks WHERE user_id = ?", (owner_id,)).fetchone()[0]
            position = float(count + 1)
        conn.execute(
            """INSERT INTO tasks (
                id, user_id, title, notes, status, scheduled_date, deadline, position,
                project_id, heading_id, area_id, repeating_rule_id,
                completed_at, trashed_at, created_at, updated_at, deleted_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, NULL)""",
            (
                tid, owner_id, title.strip(), notes or None, status,
                _date_or_none(scheduled_date), _date_or_none(deadline), position,
                project_id, heading_id, area_id, repeating_rule_id,
                now if status == "trashed" else None, now, now,
            ),
        )
        for index, item_title in enumerate(checklist or [], start=1):
            _insert_checklist_item(conn, owner_id, tid, item_title, float(index), now)
        for tag_id in tag_ids or []:
            if tag_id:
                _insert_task_tag(conn, owner_id, tid, tag_id, now)
        payload: dict[str, Any] = {"title": title.strip(), "status": status}
        if repeating_rule_id:
            payload.update(repeating_rule_id=repeating_rule_id, scheduled_date=_date_or_none(scheduled_date))
        record_history(conn, tid, history_event, payload)
        conn.commit()
    finally:
        conn.close()
    logger.debug("Task created id=%s owner=%s rule=%s", tid, owner_id, repeating_rule_id)
    return get_task(tid)


def get_task(task_id: str, owner_id: str | None = None) -> dict[str, Any] | None:
    """Return one live (not deleted) task with checklist and tag ids; None if missing or owned by someone else."""
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT * FROM tasks WHERE id = ? AND deleted_at IS NULL", (task_id,)
        ).fetchone()
        if not row:
            return None
        if owner_id is not None and row["user_id"] != owner_id:
            return None
        out = _task_row_to_dict(row)
        _add_task_relations(conn, out)
        return out
    finally:
        conn.close()


def find_task_by_rule_and_date(rule_id: str, scheduled_date: str) -> dict[str, Any] | None:
    """The live, non-trashed instance of a rule on a given date, if any."""
    conn = get_connection()
    try:
        row = conn.execute(
            """SELECT * FROM tasks
               WHERE repeating_rule_id = ? AND scheduled_date = ?
                 AND deleted_at IS NULL AND trashed_at IS NULL
               LIMIT 1""",
            (rule_id, iso_date(scheduled_date)),
        ).fetchone()
        if not row:
            return None
        out = _task_row_to_dict(row)
        _add_task_relations(conn, out)
        return out
    finally:
        conn.close()


def list_tasks(
    owner_id: str,
    *,
    repeating_rule_id: str | None = None,
    include_trashed: bool = False,
    limit: int = 500,
) -> list[dict[str, Any]]:
    """List an owner's live tasks ordered by position."""
    conn = get_connection()
    try:
        sql = "SELECT * FROM tasks WHERE user_id = ? AND deleted_at IS NULL"
        params: list[Any] = [owner_id]
        if repeating_rule_id:
            sql += " AND repeating_rule_id = ?"
            params.append(repeating_rule_id)
        if not include_trashed:
            sql += " AND trashed_at IS NULL"
        sql += " ORDER BY position, created_at LIMIT ?"
        params.append(limit)
        out = []
        for row in conn.execute(sql, params).fetchall():
            d = _task_row_to_dict(row)
            _add_task_relations(conn, d)
            out.append(d)
        return out
    finally:
        conn.close()


def count_tasks_for_owner(owner_id: str) -> int:
    conn = get_connection()
    try:
        return int(conn.execute("SELECT COUNT(*) FROM tasks WHERE user_id = ?", (owner_id,)).fetchone()[0])
    finally:
        conn.close()


def update_task(
    task_id: str,
    *,
    title: str | None | object = _UNSET,
    notes: str | None | object = _UNSET,
    status: str | object = _UNSET,
    scheduled_date: str | None | object = _UNSET,
    deadline: str | None | object = _UNSET,
    project_id: str | None | object = _UNSET,
    heading_id: str | None | object = _UNSET,
    area_id: str | None | object = _UNSET,
    checklist: list[str] | object = _UNSET,
    tag_ids: list[str] | object = _UNSET,
) -> dict[str, Any] | None:
    """
    Update task fields. Only provided fields are changed.
    checklist / tag_ids replace the task's current items / links when given.
    status keeps trashed_at in step: set on entering the trash, cleared on leaving it.
    """
    values = {
        "title": title, "notes": notes, "status": status, "scheduled_date": scheduled_date,
        "deadline": deadline, "project_id": project_id, "heading_id": heading_id, "area_id": area_id,
    }
    updates: list[str] = []
    params: list[Any] = []
    for key in _TASK_FIELDS:
        val = values[key]
        if val is _UNSET:
            continue
        if key == "title" and (not val or not str(val).strip()):
            raise ValueError("title is required")
        if key == "status" and val not in STATUSES:
            raise ValueError(f"status must be one of {sorted(STATUSES)}")
        if key in ("scheduled_date", "deadline"):
            val = _date_or_none(val)
        updates.append(f"{key} = ?")
        params.append(val.strip() if key == "title" else val)
        if key == "status":
            if val == "trashed":
                updates.append("trashed_at = COALESCE(trashed_at, ?)")
                params.append(_now_iso())
            else:
                updates.append("trashed_at = NULL")

    conn = get_connection()
    try:
        row = conn.execute("SELECT user_id FROM tasks WHERE id = ? AND deleted_at IS NULL", (task_id,)).fetchone()
        if not row:
            return None
        owner_id = row[0]
        now = _now_iso()
        if updates:
            updates.append("updated_at = ?")
            params.extend([now, task_id])
            conn.execute(f"UPDATE tasks SET {', '.join(updates)} WHERE id = ?", params)
        if checklist is not _UNSET:
            conn.execute(
                "UPDATE checklist_items SET deleted_at = ?, updated_at = ? WHERE task_id = ? AND deleted_at IS NULL",
                (now, now, task_id),
            )
            for index, item_title in enumerate(checklist or [], start=1):
                _insert_checklist_item(conn, owner_id, task_id, item_title, float(index), now)
        if tag_ids is not _UNSET:
            conn.execute(
                "UPDATE task_tags SET deleted_at = ?, updated_at = ? WHERE task_id = ? AND deleted_at IS NULL",
                (now, now, task_id),
            )
            for tag_id in tag_ids or []:
                if tag_id:
                    _insert_task_tag(conn, owner_id, task_id, tag_id, now)
        changed = [k for k in _TASK_FIELDS if values[k] is not _UNSET]
        if checklist is not _UNSET:
            changed.append("checklist")
        if tag_ids is not _UNSET:
            changed.append("tag_ids")
        if changed:
            record_history(conn, task_id, "updated", {"fields": changed})
        conn.commit()
    finally:
        conn.close()
    return get_task(task_id)


def trash_task(task_id: str, *, history_event: str = "trashed", details: dict[str, Any] | None = None) -> bool:
    """Move a task to the trash. Returns False if the task does not exist."""
    now = _now_iso()
    conn = get_connection()
    try:
        cur = conn.execute(
            """UPDATE tasks SET status = 'trashed', trashed_at = ?, updated_at = ?
               WHERE id = ? AND deleted_at IS NULL""",
            (now, now, task_id),
        )
        if cur.rowcount != 1:
            return False
        record_history(conn, task_id, history_event, {**(details or {}), "trashed_at": now})
        conn.commit()
        return True
    finally:
        conn.close()


def complete_task_record(task_id: str) -> dict[str, Any] | None:
    """Mark a task completed (idempotent)."""
    now = _now_iso()
    conn = get_connection()
    try:
        row = conn.execute("SELECT status FROM tasks WHERE id = ? AND deleted_at IS NULL", (task_id,)).fetchone()
        if not row:
            return None
        if row["status"] != "completed":
            conn.execute(
                "UPDATE tasks SET status = 'completed', completed_at = ?, updated_at = ? WHERE id = ?",
                (now, now, task_id),
            )
            record_history(conn, task_id, "completed", {"completed_at": now})
            conn.commit()
    finally:
        conn.close()
    return get_task(task_id)


def create_checklist_item(task_id: str, title: str, position: float | None = None) -> dict[str, Any]:
    """Append (or place) one checklist item on a task."""
    if not title or not title.strip():
        raise ValueError("title is required")
    now = _now_iso()
    conn = get_connection()
    try:
        row = conn.execute("SELECT user_id FROM tasks WHERE id = ? AND deleted_at IS NULL", (task_id,)).fetchone()
        if not row:
            raise ValueError(f"Task not found: {task_id}")
        if position is None:
            position = float(
                conn.execute(
                    "SELECT COALESCE(MAX(position), 0) + 1 FROM checklist_items WHERE task_id = ? AND deleted_at IS NULL",
                    (task_id,),
                ).fetchone()[0]
            )
        item_id = _insert_checklist_item(conn, row[0], task_id, title.strip(), float(position), now)
        conn.commit()
        return {"id": item_id, "title": title.strip(), "completed": False, "position": float(position)}
    finally:
        conn.close()


def list_checklist_items(task_id: str) -> list[dict[str, Any]]:
    conn = get_connection()
    try:
        return _checklist_rows(conn, task_id)
    finally:
        conn.close()


def add_task_tag(task_id: str, tag_id: str) -> None:
    """Link a tag id to a task (no-op if already linked)."""
    if not tag_id:
        raise ValueError("tag_id is required")
    now = _now_iso()
    conn = get_connection()
    try:
        row = conn.execute("SELECT user_id FROM tasks WHERE id = ? AND deleted_at IS NULL", (task_id,)).fetchone()
        if not row:
            raise ValueError(f"Task not found: {task_id}")
        _insert_task_tag(conn, row[0], task_id, tag_id, now)
        conn.commit()
    finally:
        conn.close()


def list_task_tag_ids(task_id: str) -> list[str]:
    conn = get_connection()
    try:
        return _tag_ids(conn, task_id)
    finally:
        conn.close()


def get_history(subject_id: str, limit: int = 100) -> list[dict[str, Any]]:
    """Return history events for a task or rule (audit)."""
    conn = get_connection()
    try:
        rows = conn.execute(
            """SELECT id, subject_id, timestamp, event, payload FROM task_history
               WHERE subject_id = ? ORDER BY id DESC LIMIT ?""",
            (subject_id, limit),
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            if d.get("payload"):
                try:
                    d["payload"] = json.loads(d["payload"])
                except (TypeError, json.JSONDecodeError):
                    pass
            out.append(d)
        return out
    finally:
        conn.close()
