"""
Daily materialization on a cron schedule.
Uses cron notation (5-field: min hour day month weekday) in user_timezone.
Start the scheduler from the main process (run.py); it runs one pass at start-up
so a process that was down at the scheduled minute catches up.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from croniter import croniter

from .config import load as load_config
from .materializer import MaterializeResult, materialize_all_due

logger = logging.getLogger(__name__)

_scheduler_thread: threading.Thread | None = None
_stop_event: threading.Event | None = None
_last_run_minute: str | None = None


def _now_in_tz(tz_name: str) -> datetime:
    try:
        tz = ZoneInfo((tz_name or "").strip() or "UTC")
    except (KeyError, ValueError):
        tz = timezone.utc
    return datetime.now(tz)


def run_materialization(now: datetime | None = None, tz_name: str = "UTC") -> dict[str, MaterializeResult]:
    """One pass over all owners for the calendar day of `now` in tz_name."""
    now = now or _now_in_tz(tz_name)
    results = materialize_all_due(now.date())
    failed = sum(len(r.failures) for r in results.values())
    created = sum(len(r.created_task_ids) for r in results.values())
    if results:
        logger.info("Scheduled materialization %s: owners=%s created=%s failed=%s",
                    now.date().isoformat(), len(results), created, failed)
    return results


def _tick(force: bool = False) -> None:
    """Run a pass if the cron expression matches the current minute (once per minute)."""
    global _last_run_minute
    config = load_config()
    now = _now_in_tz(config.user_timezone)
    cron_expr = (config.materialize_cron or "").strip()
    if not force:
        if not croniter.is_valid(cron_expr):
            logger.warning("Invalid materialize_cron expression: %s", cron_expr)
            return
        if not croniter.match(cron_expr, now):
            return
        minute = now.strftime("%Y-%m-%dT%H:%M")
        if minute == _last_run_minute:
            return
        _last_run_minute = minute
    run_materialization(now, config.user_timezone)


def _scheduler_loop(stop: threading.Event, poll_seconds: float) -> None:
    first = True
    while not stop.is_set():
        try:
            _tick(force=first)
        except Exception:
            logger.exception("Materialization tick failed")
        first = False
        stop.wait(timeout=poll_seconds)


def start_scheduler() -> bool:
    """Start the background materialization thread. Idempotent; False if disabled in config."""
    global _scheduler_thread, _stop_event
    if _scheduler_thread is not None and _scheduler_thread.is_alive():
        return True
    config = load_config()
    if not config.scheduler_enabled:
        logger.info("Materialization scheduler disabled in config")
        return False
    _stop_event = threading.Event()
    _scheduler_thread = threading.Thread(
        target=_scheduler_loop, args=(_stop_event, config.scheduler_poll_seconds), daemon=True, name="materialize-cron"
    )
    _scheduler_thread.start()
    logger.info("Materialization scheduler started (cron=%s tz=%s)", config.materialize_cron, config.user_timezone)
    return True


def stop_scheduler(timeout: float | None = None) -> None:
    """Signal the scheduler thread to stop; wait up to timeout seconds when given."""
    global _scheduler_thread, _stop_event
    if _stop_event:
        _stop_event.set()
    if _scheduler_thread is not None and timeout is not None:
        _scheduler_thread.join(timeout=timeout)
    _scheduler_thread = None
