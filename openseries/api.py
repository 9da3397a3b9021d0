"""FastAPI application for OpenSeries."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .cancellation import cancel_series
from .config import settings
from .crud import (
    civil_timezone,
    create_series,
    ensure_owner,
    get_instance_by_date,
    list_instances,
    list_series,
    require_series_by_slug,
    upcoming_instances,
    validate_rule,
)
from .database import SessionLocal
from .enums import CancelScope, FactKind, InstanceStatus, UpdateScope
from .errors import (
    InstanceNotFound,
    InvalidRecurrenceRule,
    NotAuthorized,
    SeriesNotFound,
)
from .exception_store import add_skip, edit_instance, get_exceptions
from .expander import upcoming_occurrences
from .facts import read_facts, serialize_fact
from .ics import generate_ics
from .materializer import materialize_series
from .models import Instance, Series, SeriesException
from .rrule import describe_rule, format_rule, parse_rule, short_label
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .subscriptions import is_subscribed, subscribe, subscriber_count, unsubscribe
from .updates import ScopeResult, update_series
from .utils import local_today, parse_time_of_day, to_local, utcnow

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

PREVIEW_LIMIT_MAX = 50


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("openseries")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="OpenSeries", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def current_user(x_user_id: str | None = Header(None)) -> str | None:
    """Return the acting user id supplied by the identity layer, if any."""
    cleaned = (x_user_id or "").strip()
    return cleaned or None


def require_user(user_id: str | None = Depends(current_user)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


@app.exception_handler(InvalidRecurrenceRule)
async def invalid_rule_handler(request: Request, exc: InvalidRecurrenceRule):
    return JSONResponse(
        {"detail": str(exc), "token": exc.token}, status_code=400
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(NotAuthorized)
async def not_authorized_handler(request: Request, exc: NotAuthorized):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": "Only the series owner can do that"}, status_code=403)


@app.exception_handler(SeriesNotFound)
@app.exception_handler(InstanceNotFound)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {"detail": "The database is busy at the moment. Please try again."},
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse(
        {"detail": "We hit a database issue. Please try again."}, status_code=500
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _serialize_series(series: Series, *, user_id: str | None = None) -> dict:
    rule = parse_rule(series.rule)
    return {
        "id": series.id,
        "slug": series.slug,
        "owner_id": series.owner_id,
        "title": series.title,
        "description": series.description,
        "location": series.location,
        "capacity": series.capacity,
        "rule": series.rule,
        "rule_description": describe_rule(rule),
        "rule_label": short_label(rule),
        "anchor_date": series.anchor_date.isoformat(),
        "start_time": series.start_time.strftime("%H:%M"),
        "duration_minutes": series.duration_minutes,
        "until_date": _iso(series.until_date),
        "occurrence_count": series.occurrence_count,
        "timezone": settings.civil_timezone,
        "status": series.status.value,
        "instances_generated_until": _iso(series.instances_generated_until),
        "created_at": _iso(series.created_at),
        "last_modified": _iso(series.last_modified),
        "is_owner": bool(user_id and user_id == series.owner_id),
    }


def _serialize_instance(instance: Instance) -> dict:
    tz = civil_timezone()
    return {
        "id": instance.id,
        "series_id": instance.series_id,
        "slug": instance.slug,
        "title": instance.title,
        "description": instance.description,
        "location": instance.location,
        "capacity": instance.capacity,
        "instance_date": instance.instance_date.isoformat(),
        "start_time": instance.start_time.isoformat(),
        "end_time": instance.end_time.isoformat(),
        "local_start": to_local(instance.start_time, tz).isoformat(),
        "local_end": to_local(instance.end_time, tz).isoformat(),
        "is_exception": instance.is_exception,
        "status": instance.status.value,
    }


def _serialize_exception(exception: SeriesException) -> dict:
    return {
        "id": exception.id,
        "original_date": exception.original_date.isoformat(),
        "exception_type": exception.exception_type.value,
        "reason": exception.reason,
        "created_by": exception.created_by,
        "created_at": _iso(exception.created_at),
    }


def _scope_payload(result: ScopeResult, *, user_id: str, key: str) -> dict:
    partial = result.partial_failure
    if partial is not None:
        logger.warning("Series %s: %s", result.series.slug, partial)
    return {
        "series": _serialize_series(result.series, user_id=user_id),
        key: [d.isoformat() for d in result.updated],
        "skipped": [d.isoformat() for d in result.skipped],
        "warnings": partial.as_warnings() if partial else [],
    }


class SeriesCreatePayload(BaseModel):
    title: str
    description: str | None = None
    location: str | None = None
    capacity: int | None = Field(None, ge=1)
    rule: str = Field(..., description="RRULE string such as FREQ=WEEKLY;BYDAY=MO")
    anchor_date: date
    start_time: str = Field(..., description="Local time of day, HH:MM")
    duration_minutes: int | None = Field(None, ge=1)
    until_date: date | None = None
    occurrence_count: int | None = Field(None, ge=1)


class SeriesUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    location: str | None = None
    capacity: int | None = Field(None, ge=1)
    rule: str | None = None
    start_time: str | None = Field(None, description="Local time of day, HH:MM")
    duration_minutes: int | None = Field(None, ge=1)
    until_date: date | None = None
    occurrence_count: int | None = Field(None, ge=1)
    update_scope: UpdateScope = UpdateScope.TEMPLATE_ONLY


class SkipPayload(BaseModel):
    original_date: date
    reason: str | None = None


class InstanceEditPayload(BaseModel):
    title: str | None = None
    description: str | None = None
    location: str | None = None
    capacity: int | None = Field(None, ge=1)
    start_time: str | None = Field(None, description="Local time of day, HH:MM")
    duration_minutes: int | None = Field(None, ge=1)
    reason: str | None = None


class SubscriptionPayload(BaseModel):
    auto_rsvp: bool = True


@app.post("/api/v1/series", status_code=201)
def api_create_series(
    payload: SeriesCreatePayload,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = create_series(
        db,
        owner_id=user_id,
        title=payload.title,
        description=payload.description,
        location=payload.location,
        capacity=payload.capacity,
        rule=payload.rule,
        anchor_date=payload.anchor_date,
        start_time=parse_time_of_day(payload.start_time),
        duration_minutes=payload.duration_minutes,
        until_date=payload.until_date,
        occurrence_count=payload.occurrence_count,
    )
    result = materialize_series(db, series, window_start=series.anchor_date)
    logger.info(
        "Created series %s for %s with %d initial instances",
        series.slug,
        user_id,
        len(result.created),
    )
    return {
        "series": _serialize_series(series, user_id=user_id),
        "instances": [
            _serialize_instance(instance)
            for instance in list_instances(db, series.id)
        ],
    }


@app.get("/api/v1/series")
def api_list_series(
    own: bool = Query(False),
    limit: int = Query(settings.series_per_page, ge=1, le=100),
    user_id: str | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    if own and not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    series_list = list_series(
        db,
        owner_id=user_id if own else None,
        include_cancelled=own,
        limit=limit,
    )
    return {
        "series": [_serialize_series(series, user_id=user_id) for series in series_list]
    }


@app.get("/api/v1/series/{slug}")
def api_get_series(
    slug: str,
    upcoming_limit: int = Query(settings.upcoming_limit, ge=0, le=50),
    user_id: str | None = Depends(current_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    now = utcnow()
    if series.is_active:
        materialize_series(db, series, now=now)
    upcoming = upcoming_instances(db, series.id, now=now, limit=upcoming_limit)
    return {
        "series": _serialize_series(series, user_id=user_id),
        "upcoming": [_serialize_instance(instance) for instance in upcoming],
        "exceptions": [
            _serialize_exception(exception)
            for exception in get_exceptions(db, series.id)
        ],
        "subscriber_count": subscriber_count(db, series.id),
        "is_subscribed": is_subscribed(db, series.id, user_id),
        "is_owner": bool(user_id and user_id == series.owner_id),
    }


@app.patch("/api/v1/series/{slug}")
def api_update_series(
    slug: str,
    payload: SeriesUpdatePayload,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    data = payload.model_dump(exclude_unset=True)
    scope = data.pop("update_scope", UpdateScope.TEMPLATE_ONLY)
    result = update_series(db, series.id, data, scope, actor_id=user_id)
    return _scope_payload(result, user_id=user_id, key="updated")


@app.delete("/api/v1/series/{slug}")
def api_cancel_series(
    slug: str,
    scope: CancelScope = Query(CancelScope.FUTURE),
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    result = cancel_series(db, series.id, scope, actor_id=user_id)
    return _scope_payload(result, user_id=user_id, key="cancelled")


@app.get("/api/v1/series/{slug}/instances")
def api_list_instances(
    slug: str,
    include_past: bool = Query(False),
    include_cancelled: bool = Query(False),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    statuses = None if include_cancelled else [InstanceStatus.PUBLISHED]
    now = utcnow()
    instances = [
        instance
        for instance in list_instances(db, series.id, statuses=statuses)
        if include_past or instance.end_time > now
    ]
    return {"instances": [_serialize_instance(instance) for instance in instances]}


@app.post("/api/v1/series/{slug}/materialize")
def api_materialize_series(
    slug: str,
    window_start: date | None = Query(None),
    window_end: date | None = Query(None),
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    ensure_owner(series, user_id)
    if window_start and window_end and window_end <= window_start:
        raise HTTPException(
            status_code=400, detail="window_end must be after window_start"
        )
    result = materialize_series(
        db, series, window_start=window_start, window_end=window_end
    )
    return {"materialization": result.as_dict()}


@app.post("/api/v1/series/{slug}/exceptions", status_code=201)
def api_skip_date(
    slug: str,
    payload: SkipPayload,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    ensure_owner(series, user_id)
    exception = add_skip(
        db,
        series,
        payload.original_date,
        reason=payload.reason,
        created_by=user_id,
    )
    instance = get_instance_by_date(db, series.id, payload.original_date)
    return {
        "exception": _serialize_exception(exception),
        "instance": _serialize_instance(instance) if instance else None,
    }


@app.patch("/api/v1/series/{slug}/instances/{instance_date}")
def api_edit_instance(
    slug: str,
    instance_date: date,
    payload: InstanceEditPayload,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    ensure_owner(series, user_id)
    data = payload.model_dump(exclude_unset=True)
    reason = data.pop("reason", None)
    if not data:
        raise HTTPException(status_code=400, detail="No changes supplied")
    instance = edit_instance(
        db, series, instance_date, data, actor_id=user_id, reason=reason
    )
    return {"instance": _serialize_instance(instance)}


@app.put("/api/v1/series/{slug}/subscription")
def api_subscribe(
    slug: str,
    payload: SubscriptionPayload | None = None,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    auto_rsvp = payload.auto_rsvp if payload else True
    subscription = subscribe(db, series, user_id, auto_rsvp=auto_rsvp)
    return {
        "subscribed": True,
        "auto_rsvp": subscription.auto_rsvp,
        "subscriber_count": subscriber_count(db, series.id),
    }


@app.delete("/api/v1/series/{slug}/subscription")
def api_unsubscribe(
    slug: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_db),
):
    series = require_series_by_slug(db, slug)
    removed = unsubscribe(db, series, user_id)
    return {
        "subscribed": False,
        "removed": removed,
        "subscriber_count": subscriber_count(db, series.id),
    }


@app.get("/api/v1/series/{slug}/calendar.ics")
def api_series_calendar(slug: str, db: Session = Depends(get_db)):
    """Serve every materialized instance as a downloadable ICS file."""

    series = require_series_by_slug(db, slug)
    ics_text = generate_ics(series, list_instances(db, series.id))
    filename = f"series_{series.slug}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=ics_text, media_type="text/calendar", headers=headers)


@app.get("/api/v1/facts")
def api_list_facts(
    after: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    kind: FactKind | None = Query(None),
    series_id: str | None = Query(None),
    db: Session = Depends(get_db),
):
    facts = read_facts(
        db,
        after_id=after,
        limit=limit,
        kinds=[kind] if kind else None,
        series_id=series_id,
    )
    return {
        "facts": [serialize_fact(fact) for fact in facts],
        "next_after": facts[-1].id if facts else after,
    }


@app.get("/api/v1/rules/preview")
def api_preview_rule(
    rule: str = Query(...),
    anchor: date | None = Query(None),
    limit: int = Query(10, ge=1, le=PREVIEW_LIMIT_MAX),
):
    parsed = validate_rule(rule)
    anchor_date = anchor or local_today(utcnow(), civil_timezone())
    dates = upcoming_occurrences(parsed, anchor_date, after=anchor_date, limit=limit)
    return {
        "valid": True,
        "rule": format_rule(parsed),
        "description": describe_rule(parsed),
        "label": short_label(parsed),
        "anchor_date": anchor_date.isoformat(),
        "occurrences": [d.isoformat() for d in dates],
    }
