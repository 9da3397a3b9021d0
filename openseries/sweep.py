"""Background sweeps: horizon materialization, fan-out and maintenance."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime

from .config import settings
from .crud import list_active_series_ids
from .database import engine, get_session
from .materializer import MaterializationResult, materialize_series
from .models import Series
from .subscriptions import fan_out_new_instances
from .utils import utcnow

# Use uvicorn's error logger so sweep messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def _materialize_one(series_id: str, now: datetime) -> MaterializationResult | None:
    with get_session() as session:
        series = session.get(Series, series_id)
        if series is None or not series.is_active:
            return None
        return materialize_series(session, series, now=now)


def run_materialization_sweep(
    *, now: datetime | None = None, max_workers: int | None = None
) -> dict:
    """Extend every active series to the rolling horizon.

    Each series runs in its own session. A failing series is logged and
    counted; the sweep carries on with the rest.
    """
    now = now or utcnow()
    stats = {
        "series": 0,
        "instances_created": 0,
        "races": 0,
        "skipped": 0,
        "failed": 0,
    }
    with get_session() as session:
        series_ids = list_active_series_ids(session)
    stats["series"] = len(series_ids)
    workers = max_workers or settings.sweep_concurrency

    logger.info(
        "Materialization sweep started (series=%d, horizon_days=%d, workers=%d)",
        len(series_ids),
        settings.horizon_days,
        workers,
    )
    if not series_ids:
        return stats

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(_materialize_one, series_id, now): series_id
            for series_id in series_ids
        }
        for future in as_completed(futures):
            series_id = futures[future]
            try:
                result = future.result()
            except Exception:
                logger.exception("Materialization failed for series %s", series_id)
                stats["failed"] += 1
                continue
            if result is None:
                stats["skipped"] += 1
                continue
            stats["instances_created"] += len(result.created)
            stats["races"] += len(result.races)

    if stats["failed"]:
        logger.warning(
            "Materialization sweep had %d failing series; they will be retried next run",
            stats["failed"],
        )
    logger.info(
        "Materialization sweep finished: series=%d created=%d races=%d skipped=%d failed=%d",
        stats["series"],
        stats["instances_created"],
        stats["races"],
        stats["skipped"],
        stats["failed"],
    )
    return stats


def run_subscription_fanout() -> dict:
    """Drain pending ``created`` facts in batches."""
    totals = {"facts": 0, "rsvps_created": 0, "batches": 0}
    while True:
        with get_session() as session:
            batch = fan_out_new_instances(session, batch_size=settings.fanout_batch_size)
        if not batch["facts"]:
            break
        totals["facts"] += batch["facts"]
        totals["rsvps_created"] += batch["rsvps_created"]
        totals["batches"] += 1
        if batch["facts"] < settings.fanout_batch_size:
            break
    if totals["facts"]:
        logger.info(
            "Subscription fan-out finished: facts=%d rsvps=%d batches=%d",
            totals["facts"],
            totals["rsvps_created"],
            totals["batches"],
        )
    return totals


def vacuum_database() -> None:
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
