"""Score recalculation.

Asset impact and trending scores are caches that the ledger nudges on every
create/delete. These functions rebuild them from the activity table, which repairs
any drift; running them twice gives the same values.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from activity_types import ACTIVITY_TYPES, parse_activity_type
from errors import StorageError
from models_activity import Activity
from models_assets import Asset


log = logging.getLogger(__name__)

TRENDING_WINDOW_DAYS = int(os.getenv("TRENDING_WINDOW_DAYS", "7"))


def _course_filter(query, model, course):
    if course is None:
        return query
    course_id = course if isinstance(course, int) else course.id
    return query.filter(model.course_id == course_id)


def _recalculate(course, column: str, since: datetime | None = None) -> dict[int, int]:
    assets = _course_filter(Asset.query.filter(Asset.deleted_at.is_(None)), Asset, course).all()
    activities = _course_filter(Activity.query.filter(Activity.asset_id.isnot(None)), Activity, course)
    if since is not None:
        activities = activities.filter(Activity.created_at >= since)

    scores = defaultdict(int)
    for activity in activities.all():
        scores[activity.asset_id] += ACTIVITY_TYPES[parse_activity_type(activity.type)].impact

    try:
        for asset in assets:
            setattr(asset, column, scores.get(asset.id, 0))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageError(f"Failed to update asset {column}") from e

    return {asset.id: getattr(asset, column) for asset in assets}


def recalculate_impact_scores(course=None) -> dict[int, int]:
    scores = _recalculate(course, "impact_score")
    log.info("Recalculated impact scores for %d assets", len(scores))
    return scores


def recalculate_trending_scores(course=None, now: datetime | None = None, window_days: int | None = None) -> dict[int, int]:
    days = TRENDING_WINDOW_DAYS if window_days is None else window_days
    since = (now or datetime.utcnow()) - timedelta(days=days)
    scores = _recalculate(course, "trending_score", since=since)
    log.info("Recalculated trending scores for %d assets (window %d days)", len(scores), days)
    return scores
