"""HTTP API for tasktide: repeating rules, materialization, tasks and template sync."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from . import __version__
from . import repeating_service, task_service, template_sync
from .config import load as load_config
from .date_utils import iso_date, resolve_relative_date, today_in_tz
from .errors import NotFound
from .materializer import materialize_due
from .recurrence import describe_recurrence, upcoming_occurrences, validate_recurrence

app = FastAPI(title="Tasktide", version=__version__)
logger = logging.getLogger("tasktide.api")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """When config.debug is True, log API request method and path."""
    debug = bool(getattr(load_config(), "debug", False))
    if debug:
        qs = request.url.query
        logger.info("[API] %s %s%s", request.method, request.url.path, "?" + qs if qs else "")
    response = await call_next(request)
    if debug:
        logger.info("[API] %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


def _require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    """Dependency: require X-API-Key header to match config. Open when no key is configured; 401 if wrong."""
    key = (load_config().api_key or "").strip()
    if not key:
        return
    if not x_api_key or x_api_key.strip() != key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key. Use X-API-Key header.")


def _owner_id(x_owner_id: str | None = Header(None, alias="X-Owner-Id")) -> str:
    """Dependency: owner from X-Owner-Id, else the configured default owner."""
    return (x_owner_id or "").strip() or load_config().default_owner_id


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, sqlite3.IntegrityError):
        return HTTPException(status_code=409, detail="A live task already exists for this repeating rule and date")
    return HTTPException(status_code=400, detail=str(e))


def _today() -> str:
    return today_in_tz(load_config().user_timezone).isoformat()


def _day(value: Any, field_name: str) -> str:
    """Body date: YYYY-MM-DD or a relative phrase (today, tomorrow, in 3 days); missing = today."""
    if value is None or value == "":
        return _today()
    resolved = resolve_relative_date(str(value), load_config().user_timezone)
    if resolved is None:
        raise HTTPException(status_code=400, detail=f"{field_name} must be YYYY-MM-DD or a relative date")
    try:
        return iso_date(resolved)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _rule_out(rule: dict[str, Any]) -> dict[str, Any]:
    out = dict(rule)
    out["checklist_items"] = repeating_service.checklist_titles(rule)
    out["tag_ids"] = repeating_service.tag_ids(rule)
    out["description"] = describe_recurrence(rule.get("rrule"))
    return out


def _owned_task(task_id: str, owner_id: str) -> dict[str, Any]:
    t = task_service.get_task(task_id, owner_id)
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


# --- API schemas ---


class RuleCreate(BaseModel):
    rrule: str
    title: str
    start_date: str | None = None
    notes: str | None = None
    project_id: str | None = None
    heading_id: str | None = None
    area_id: str | None = None
    checklist_items: list[str] = Field(default_factory=list)
    tag_ids: list[str] = Field(default_factory=list)
    status: str = "active"


class MaterializeBody(BaseModel):
    today: str | None = None


class PreviewBody(BaseModel):
    rrule: str
    after: str | None = None
    limit: int = Field(5, ge=1, le=50)


class PromoteBody(BaseModel):
    rrule: str
    start_date: str | None = None


class CompleteBody(BaseModel):
    today: str | None = None


# --- Repeating rules ---

_RULE_UPDATE_KEYS = (
    "rrule", "next_occurrence", "status", "title", "notes",
    "project_id", "heading_id", "area_id", "checklist_items", "tag_ids",
)


@app.get("/api/repeating-rules", dependencies=[Depends(_require_api_key)])
def list_repeating_rules(owner_id: str = Depends(_owner_id)):
    return [_rule_out(r) for r in repeating_service.list_rules(owner_id)]


@app.post("/api/repeating-rules", dependencies=[Depends(_require_api_key)])
def create_repeating_rule(body: RuleCreate, owner_id: str = Depends(_owner_id)):
    """Create a rule. start_date (default today) is the first occurrence spawned."""
    start = _day(body.start_date, "start_date")
    try:
        rule_id = repeating_service.create_rule(
            owner_id,
            body.rrule,
            start,
            body.title,
            notes=body.notes,
            project_id=body.project_id,
            heading_id=body.heading_id,
            area_id=body.area_id,
            checklist_items=body.checklist_items,
            tag_ids=body.tag_ids,
            status=body.status,
        )
        return _rule_out(repeating_service.get_rule(rule_id, owner_id))
    except (ValueError, LookupError) as e:
        raise _http_error(e) from e


@app.post("/api/repeating-rules/materialize", dependencies=[Depends(_require_api_key)])
def materialize_repeating_rules(body: MaterializeBody | None = None, owner_id: str = Depends(_owner_id)):
    """Spawn every due instance for the owner. Safe to call repeatedly."""
    today = _day(body.today if body else None, "today")
    return {"today": today, **materialize_due(owner_id, today).to_dict()}


@app.get("/api/repeating-rules/{rule_id}", dependencies=[Depends(_require_api_key)])
def get_repeating_rule(rule_id: str, owner_id: str = Depends(_owner_id)):
    try:
        return _rule_out(repeating_service.get_rule(rule_id, owner_id))
    except NotFound as e:
        raise _http_error(e) from e


@app.put("/api/repeating-rules/{rule_id}", dependencies=[Depends(_require_api_key)])
async def update_repeating_rule(rule_id: str, request: Request, owner_id: str = Depends(_owner_id)):
    """Partial update: only keys present in the body change."""
    try:
        body = await request.json()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    fields = {k: body[k] for k in _RULE_UPDATE_KEYS if k in body}
    if "next_occurrence" in fields:
        fields["next_occurrence"] = _day(fields["next_occurrence"], "next_occurrence")
    try:
        return _rule_out(repeating_service.update_rule(rule_id, owner_id, **fields))
    except (ValueError, LookupError) as e:
        raise _http_error(e) from e


@app.delete("/api/repeating-rules/{rule_id}", dependencies=[Depends(_require_api_key)])
def delete_repeating_rule(rule_id: str, owner_id: str = Depends(_owner_id)):
    try:
        repeating_service.soft_delete_rule(rule_id, owner_id)
    except NotFound as e:
        raise _http_error(e) from e
    return {"status": "deleted"}


@app.post("/api/repeating-rules/{rule_id}/pause", dependencies=[Depends(_require_api_key)])
def pause_repeating_rule(rule_id: str, owner_id: str = Depends(_owner_id)):
    try:
        return _rule_out(repeating_service.pause_rule(rule_id, owner_id))
    except NotFound as e:
        raise _http_error(e) from e


@app.post("/api/repeating-rules/{rule_id}/resume", dependencies=[Depends(_require_api_key)])
def resume_repeating_rule(rule_id: str, owner_id: str = Depends(_owner_id)):
    try:
        return _rule_out(repeating_service.resume_rule(rule_id, owner_id))
    except NotFound as e:
        raise _http_error(e) from e


@app.post("/api/recurrence/preview", dependencies=[Depends(_require_api_key)])
def preview_recurrence(body: PreviewBody):
    """Upcoming dates strictly after `after` (default today) for a repeat spec."""
    after = _day(body.after, "after")
    try:
        canonical = validate_recurrence(body.rrule)
        dates = upcoming_occurrences(body.rrule, after, body.limit)
    except ValueError as e:
        raise _http_error(e) from e
    return {
        "rrule": canonical,
        "description": describe_recurrence(body.rrule),
        "after": after,
        "dates": [d.isoformat() for d in dates],
    }


# --- Tasks ---

_TASK_UPDATE_KEYS = (
    "title", "notes", "status", "scheduled_date", "deadline",
    "project_id", "heading_id", "area_id", "checklist", "tag_ids",
)


@app.get("/api/tasks", dependencies=[Depends(_require_api_key)])
def list_tasks(repeating_rule_id: str | None = None, limit: int = 500, owner_id: str = Depends(_owner_id)):
    return task_service.list_tasks(owner_id, repeating_rule_id=repeating_rule_id, limit=min(limit, 1000))


@app.post("/api/tasks", dependencies=[Depends(_require_api_key)])
def create_task(body: dict, owner_id: str = Depends(_owner_id)):
    title = (body.get("title") or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    scheduled = _day(body["scheduled_date"], "scheduled_date") if body.get("scheduled_date") else None
    deadline = _day(body["deadline"], "deadline") if body.get("deadline") else None
    try:
        return task_service.create_task(
            owner_id,
            title,
            notes=body.get("notes") or None,
            status=(body.get("status") or "inbox").strip() or "inbox",
            scheduled_date=scheduled,
            deadline=deadline,
            project_id=body.get("project_id") or None,
            heading_id=body.get("heading_id") or None,
            area_id=body.get("area_id") or None,
            repeating_rule_id=body.get("repeating_rule_id") or None,
            checklist=[str(c) for c in body.get("checklist") or [] if str(c).strip()],
            tag_ids=[str(t) for t in body.get("tag_ids") or [] if str(t).strip()],
        )
    except (ValueError, sqlite3.IntegrityError) as e:
        raise _http_error(e) from e


@app.get("/api/tasks/{task_id}", dependencies=[Depends(_require_api_key)])
def get_task(task_id: str, owner_id: str = Depends(_owner_id)):
    return _owned_task(task_id, owner_id)


@app.put("/api/tasks/{task_id}", dependencies=[Depends(_require_api_key)])
async def update_task(task_id: str, request: Request, owner_id: str = Depends(_owner_id)):
    """
    Partial update. Editing a still-open spawned instance copies its content back onto
    the rule; setting status to completed goes through the completion path.
    """
    try:
        body = await request.json()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    current = _owned_task(task_id, owner_id)
    fields = {k: body[k] for k in _TASK_UPDATE_KEYS if k in body}
    completing = fields.get("status") == "completed" and current["status"] != "completed"
    if completing:
        fields.pop("status")
    for key in ("scheduled_date", "deadline"):
        if fields.get(key):
            fields[key] = _day(fields[key], key)
    try:
        out = task_service.update_task(task_id, **fields) if fields else current
        if completing:
            out = template_sync.complete_task(task_id, _today())
        elif (
            fields and out and current.get("repeating_rule_id")
            and current["status"] not in ("completed", "trashed") and out["status"] != "trashed"
        ):
            template_sync.sync_from_task(task_id)
    except (ValueError, LookupError, sqlite3.IntegrityError) as e:
        raise _http_error(e) from e
    if out is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return out


@app.post("/api/tasks/{task_id}/promote", dependencies=[Depends(_require_api_key)])
def promote_task(task_id: str, body: PromoteBody, owner_id: str = Depends(_owner_id)):
    """Turn a task into a repeating rule starting strictly after start_date (default today)."""
    start = _day(body.start_date, "start_date")
    try:
        rule_id = template_sync.promote(task_id, body.rrule, start, owner_id=owner_id)
        return _rule_out(repeating_service.get_rule(rule_id, owner_id))
    except (ValueError, LookupError) as e:
        raise _http_error(e) from e


@app.post("/api/tasks/{task_id}/complete", dependencies=[Depends(_require_api_key)])
def complete_task(task_id: str, body: CompleteBody | None = None, owner_id: str = Depends(_owner_id)):
    _owned_task(task_id, owner_id)
    today = _day(body.today if body else None, "today")
    try:
        return template_sync.complete_task(task_id, today)
    except (ValueError, LookupError) as e:
        raise _http_error(e) from e


@app.get("/api/history/{subject_id}", dependencies=[Depends(_require_api_key)])
def get_history(subject_id: str, limit: int = 100, owner_id: str = Depends(_owner_id)):
    """Audit events for one of the owner's tasks or rules, newest first."""
    if task_service.get_task(subject_id, owner_id) is None:
        try:
            repeating_service.get_rule(subject_id, owner_id)
        except NotFound as e:
            raise _http_error(e) from e
    return task_service.get_history(subject_id, limit=min(limit, 500))
