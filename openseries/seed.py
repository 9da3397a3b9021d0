"""Development helpers for populating fake series."""

from __future__ import annotations

import random
from datetime import date, time, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_series
from .database import get_session
from .materializer import materialize_series
from .models import Series
from .storage import init_db
from .subscriptions import subscribe

_series_types = [
    "Run Club",
    "Book Circle",
    "Language Exchange",
    "Board Game Night",
    "Pickleball",
    "Open Mic",
    "Sketch Walk",
    "Coworking Morning",
]
_rules = [
    "FREQ=WEEKLY;BYDAY=MO",
    "FREQ=WEEKLY;BYDAY=TU,TH",
    "FREQ=WEEKLY;INTERVAL=2;BYDAY=SA",
    "FREQ=MONTHLY;BYDAY=1FR",
    "FREQ=MONTHLY;BYDAY=-1SU",
    "FREQ=MONTHLY;BYMONTHDAY=15",
    "FREQ=DAILY;INTERVAL=3",
]
_durations = [60, 90, 120, 180]


def seed_fake_data(
    *,
    series_count: int = 5,
    max_subscribers_per_series: int = 3,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic series and subscribers."""
    if series_count < 0:
        raise ValueError("series_count must be >= 0")
    if max_subscribers_per_series < 0:
        raise ValueError("max_subscribers_per_series must be >= 0")

    init_db()
    fake = Faker()
    stats = {"series": 0, "instances": 0, "subscriptions": 0}

    with get_session() as session:
        for _ in range(series_count):
            series = _create_series(session, fake)
            stats["series"] += 1
            result = materialize_series(session, series, window_start=series.anchor_date)
            stats["instances"] += len(result.created)
            for _ in range(random.randint(0, max_subscribers_per_series)):
                subscribe(
                    session,
                    series,
                    fake.user_name(),
                    auto_rsvp=random.random() < 0.8,
                )
                stats["subscriptions"] += 1

    return stats


def _create_series(session: Session, fake: Faker) -> Series:
    anchor = date.today() + timedelta(days=random.randint(0, 14))
    bound = random.choice(["count", "until", None])
    return create_series(
        session,
        owner_id=fake.user_name(),
        title=f"{fake.city()} {random.choice(_series_types)}",
        description=fake.paragraph(nb_sentences=3),
        location=fake.street_address(),
        capacity=random.choice([None, 10, 20, 40]),
        rule=random.choice(_rules),
        anchor_date=anchor,
        start_time=time(random.randint(7, 20), random.choice([0, 30])),
        duration_minutes=random.choice(_durations),
        occurrence_count=random.randint(4, 12) if bound == "count" else None,
        until_date=anchor + timedelta(days=120) if bound == "until" else None,
    )
