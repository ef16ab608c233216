"""Activity ledger and points aggregator.

The ledger records every tracked interaction as an `Activity` row and keeps
`users.points` in step with it:

- create is get-or-create on the type's identity key; only a real insert credits points
- delete reverses exactly the points the row was credited with
- a type disabled in the course configuration credits 0 for new rows

Functions here flush but never commit. The caller (resolver, poller, request
handler) owns the transaction.
"""

from __future__ import annotations

import csv
import io
import logging
from collections import Counter
from datetime import datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from activity_types import (
    ACTIVITY_TYPES,
    OBJECT_TYPE_ASSET,
    OBJECT_TYPES,
    configured_points,
    get_configuration_by_type,
    get_definition,
    is_recipient_type,
    parse_activity_type,
)
from errors import AuthorizationError, StorageError, ValidationError
from models_activity import Activity
from models_assets import Asset
from models_courses import ENROLLMENT_INACTIVE, User


log = logging.getLogger(__name__)

CSV_COLUMNS = ["user_id", "user_name", "action", "date", "score", "running_total"]


def _id(obj):
    if obj is None or isinstance(obj, int):
        return obj
    return obj.id


def _type_values(types) -> list[str]:
    if isinstance(types, (list, tuple, set, frozenset)):
        return [parse_activity_type(t).value for t in types]
    return [parse_activity_type(types).value]


# ---- points aggregator ----

def apply_delta(user_id: int, course_id: int, points: int) -> None:
    """Add `points` (possibly negative) to a user's cached total."""
    if not points:
        return
    try:
        db.session.execute(
            update(User)
            .where(User.id == user_id, User.course_id == course_id)
            .values(points=func.coalesce(User.points, 0) + points)
            .execution_options(synchronize_session="fetch")
        )
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to update points for user {user_id}") from e


def recalculate_points(course, user_ids=None) -> dict[int, int]:
    """Rebuild `users.points` from the ledger and commit.

    Repair path only: in normal operation the aggregator keeps the totals exact.
    """
    course_id = _id(course)
    query = User.query.filter_by(course_id=course_id)
    if user_ids:
        query = query.filter(User.id.in_(list(user_ids)))
    users = query.all()

    totals = dict(
        db.session.query(Activity.user_id, func.coalesce(func.sum(Activity.points), 0))
        .filter(Activity.course_id == course_id)
        .group_by(Activity.user_id)
        .all()
    )

    recalculated = {}
    try:
        for user in users:
            user.points = int(totals.get(user.id, 0))
            recalculated[user.id] = user.points
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise StorageError("Failed to recalculate points") from e

    log.info("Recalculated points for %d users in course %s", len(users), course_id)
    return recalculated


# ---- side effects of ledger mutations ----

def _touch_last_activity(user_ids) -> None:
    user_ids = [u for u in set(user_ids) if u is not None]
    if not user_ids:
        return
    db.session.execute(
        update(User)
        .where(User.id.in_(user_ids))
        .values(last_activity=datetime.utcnow())
        .execution_options(synchronize_session="fetch")
    )


def _adjust_asset_scores(asset_id, amount: int) -> None:
    if not asset_id or not amount:
        return
    db.session.execute(
        update(Asset)
        .where(Asset.id == asset_id)
        .values(
            impact_score=Asset.impact_score + amount,
            trending_score=Asset.trending_score + amount,
        )
        .execution_options(synchronize_session="fetch")
    )


# ---- ledger ----

def _find_by_identity(course_id, user_id, activity_type, identity_key):
    return Activity.query.filter_by(
        course_id=course_id, user_id=user_id, type=activity_type, identity_key=identity_key
    ).first()


def create_activity(course, user, activity_type, object_id, object_type, metadata=None, actor=None):
    """Get-or-create an activity; returns `(activity, created)`.

    `metadata` may carry `assetId` (for objects that are not assets themselves),
    `reciprocalId`, `entryId` or `commentId`.
    """
    definition = get_definition(activity_type)
    activity_type = parse_activity_type(activity_type).value
    if object_type not in OBJECT_TYPES:
        raise ValidationError(f"Unknown object type: {object_type}")

    metadata = dict(metadata or {})
    course_id = _id(course)
    user_id = _id(user)
    actor_id = _id(actor) if actor is not None else user_id
    identity_key = definition.identity_key(object_type, object_id, actor_id, metadata)

    try:
        existing = _find_by_identity(course_id, user_id, activity_type, identity_key)
        if existing:
            return existing, False

        asset_id = object_id if object_type == OBJECT_TYPE_ASSET else metadata.get("assetId")
        points = configured_points(course_id, activity_type)
        activity = Activity(
            course_id=course_id,
            user_id=user_id,
            actor_id=actor_id,
            type=activity_type,
            object_type=object_type,
            object_id=object_id,
            asset_id=asset_id,
            reciprocal_id=metadata.get("reciprocalId"),
            identity_key=identity_key,
            activity_metadata=metadata,
            points=points,
            created_at=datetime.utcnow(),
        )
        try:
            with db.session.begin_nested():
                db.session.add(activity)
        except IntegrityError:
            # Lost a race with a concurrent insert of the same identity key.
            winner = _find_by_identity(course_id, user_id, activity_type, identity_key)
            if winner is None:
                raise
            log.info("Activity %s for user %s was recorded concurrently", activity_type, user_id)
            return winner, False
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to create a {activity_type} activity") from e

    apply_delta(user_id, course_id, points)
    _touch_last_activity([user_id, actor_id])
    _adjust_asset_scores(asset_id, definition.impact)

    log.debug("Created %s activity %s for user %s (%s points)", activity_type, activity.id, user_id, points)
    return activity, True


def update_activity(activity: Activity, changes: dict) -> Activity:
    """Apply metadata changes in place. Credited points never move."""
    changes = dict(changes or {})
    metadata = changes.pop("metadata", None)
    if changes:
        raise ValidationError(f"Unsupported activity changes: {', '.join(sorted(changes))}")

    if metadata is not None:
        merged = activity.metadata_dict
        merged.update(metadata)
        identity_key = get_definition(activity.type).identity_key(
            activity.object_type, activity.object_id, activity.actor_id, merged
        )
        if identity_key != activity.identity_key:
            raise ValidationError("Identity fields of an activity can not be changed")
        activity.activity_metadata = merged

    try:
        db.session.flush()
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to update activity {activity.id}") from e
    return activity


def delete_activity(course, user, types, object_id, object_type, actor=None, metadata=None) -> int:
    """Delete the matching activities and reverse their points.

    Nothing matching is a silent no-op. `metadata` narrows the match on keys such as
    `entryId`. Returns the number of rows deleted.
    """
    query = Activity.query.filter(
        Activity.course_id == _id(course),
        Activity.user_id == _id(user),
        Activity.type.in_(_type_values(types)),
        Activity.object_type == object_type,
        Activity.object_id == object_id,
    )
    if actor is not None:
        query = query.filter(Activity.actor_id == _id(actor))

    try:
        rows = query.all()
        if metadata:
            rows = [r for r in rows if all(r.metadata_dict.get(k) == v for k, v in metadata.items())]

        for row in rows:
            apply_delta(row.user_id, row.course_id, -int(row.points or 0))
            _adjust_asset_scores(row.asset_id, -ACTIVITY_TYPES[parse_activity_type(row.type)].impact)
            db.session.delete(row)
        db.session.flush()
    except SQLAlchemyError as e:
        raise StorageError("Failed to delete activities") from e

    if rows:
        log.debug("Deleted %d activities of type %s on %s %s", len(rows), types, object_type, object_id)
    return len(rows)


def get_activities(course, types=None, object_id=None, object_type=None, user=None) -> list[Activity]:
    query = Activity.query.filter(Activity.course_id == _id(course))
    if types:
        query = query.filter(Activity.type.in_(_type_values(types)))
    if object_id is not None:
        query = query.filter(Activity.object_id == object_id)
    if object_type is not None:
        query = query.filter(Activity.object_type == object_type)
    if user is not None:
        query = query.filter(Activity.user_id == _id(user))
    try:
        return query.order_by(Activity.created_at.asc(), Activity.id.asc()).all()
    except SQLAlchemyError as e:
        raise StorageError("Failed to retrieve activities") from e


def get_last_activity_for_course(course):
    return (
        Activity.query.filter_by(course_id=_id(course))
        .order_by(Activity.created_at.desc(), Activity.id.desc())
        .first()
    )


# ---- read projections ----

def _user_summary(user):
    if user is None:
        return None
    return {"id": user.id, "canvas_full_name": user.canvas_full_name, "canvas_image": user.canvas_image}


def _visible_activities(course_id):
    """Activities that count toward feeds: enabled type, live asset, no inactive admin actor."""
    enabled = [t for t, c in get_configuration_by_type(course_id).items() if c["enabled"]]
    rows = (
        Activity.query.filter(Activity.course_id == course_id, Activity.type.in_(enabled))
        .outerjoin(Asset, Asset.id == Activity.asset_id)
        .filter(Asset.deleted_at.is_(None))
        .order_by(Activity.created_at.desc(), Activity.id.desc())
        .all()
    )
    return [
        a for a in rows
        if not (a.actor is not None and a.actor.is_admin and a.actor.canvas_enrollment_state == ENROLLMENT_INACTIVE)
    ]


def _empty_feed():
    return {
        "engagements": [],
        "interactions": [],
        "creations": [],
        "counts": {"user": {}, "course": {}},
    }


def get_activities_for_user_id(course, user_id: int) -> dict:
    """The "my activity" feed: own actions and impacts received, grouped and counted."""
    course_id = _id(course)
    activities = _visible_activities(course_id)

    feed = {"actions": _empty_feed(), "impacts": _empty_feed()}
    course_counts = Counter(a.type for a in activities)

    for activity in activities:
        side = "impacts" if is_recipient_type(activity.type) else "actions"
        feed[side]["counts"]["course"][activity.type] = course_counts[activity.type]
        if activity.user_id != user_id:
            continue
        group = ACTIVITY_TYPES[parse_activity_type(activity.type)].group
        entry = activity.to_dict()
        entry["actor"] = _user_summary(activity.actor)
        feed[side][group].append(entry)
        user_counts = feed[side]["counts"]["user"]
        user_counts[activity.type] = user_counts.get(activity.type, 0) + 1

    return feed


def get_activities_for_asset_id(course, asset_id: int) -> list[dict]:
    course_id = _id(course)
    items = []
    for activity in _visible_activities(course_id):
        if activity.asset_id != asset_id:
            continue
        entry = activity.to_dict()
        entry["user"] = _user_summary(activity.user)
        entry["actor"] = _user_summary(activity.actor)
        items.append(entry)
    return items


def get_interactions(course) -> list[dict]:
    """Reciprocal credits between pairs of users, counted per type."""
    course_id = _id(course)
    enabled = [t for t, c in get_configuration_by_type(course_id).items() if c["enabled"] and t.startswith("get_")]
    rows = (
        db.session.query(Activity.actor_id, Activity.user_id, Activity.type, func.count(Activity.id))
        .filter(
            Activity.course_id == course_id,
            Activity.type.in_(enabled),
            Activity.actor_id != Activity.user_id,
        )
        .group_by(Activity.actor_id, Activity.user_id, Activity.type)
        .all()
    )
    return [
        {"source": actor_id, "target": user_id, "type": activity_type[len("get_"):], "count": int(count)}
        for actor_id, user_id, activity_type, count in rows
    ]


def export_activities_csv(course, user) -> str:
    """Admin-only CSV of every enabled-type activity, with a per-user running total."""
    if user is None or not user.is_admin:
        raise AuthorizationError("Only administrators can export activities")

    course_id = _id(course)
    configuration = get_configuration_by_type(course_id)
    rows = (
        db.session.query(Activity, User)
        .join(User, User.id == Activity.user_id)
        .filter(Activity.course_id == course_id)
        .order_by(Activity.created_at.asc(), Activity.id.asc())
        .all()
    )

    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(CSV_COLUMNS)
    running = Counter()
    for activity, owner in rows:
        config = configuration.get(activity.type)
        if not config or not config["enabled"]:
            continue
        running[owner.id] += config["points"]
        writer.writerow([
            owner.id,
            owner.canvas_full_name,
            activity.type,
            activity.created_at.isoformat(),
            config["points"],
            running[owner.id],
        ])
    return out.getvalue()


def get_leaderboard(course, user) -> list[dict]:
    """Active users by points. Non-admins only see users sharing their points (and themselves)."""
    users = (
        User.query.filter(User.course_id == _id(course), User.canvas_enrollment_state != ENROLLMENT_INACTIVE)
        .order_by(User.points.desc(), User.id.asc())
        .all()
    )
    if user is None or not user.is_admin:
        users = [u for u in users if u.share_points or (user is not None and u.id == user.id)]
    return [u.to_dict() for u in users if not u.is_admin]
