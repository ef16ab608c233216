"""Daily and weekly digest eligibility.

The ledger decides which courses and users get a digest and what it summarizes;
delivery is the dispatcher's job. A dispatcher is any object with
`send(kind, course, users, data)`.

Daily:  course has daily notifications on; users with an email who received
        comments or replies from someone else in the last 24 hours.
Weekly: course has weekly notifications on plus Asset Library and Engagement Index
        URLs; active users with an email; summary counts enabled types only.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta

from activity_types import ActivityType, get_activity_type_configuration
from courses import get_active_courses
from errors import AuthorizationError, ValidationError
from models_activity import Activity
from models_assets import Asset
from models_courses import ENROLLMENT_INACTIVE, User


log = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"

DAILY_TYPES = {
    ActivityType.GET_ASSET_COMMENT.value: "asset_comment",
    ActivityType.GET_ASSET_COMMENT_REPLY.value: "asset_comment_reply",
}

# Which asset counter each actor activity bumps in the weekly summary.
ASSET_TOTAL_KEYS = {
    ActivityType.ASSET_COMMENT.value: "comments",
    ActivityType.LIKE.value: "likes",
    ActivityType.VIEW_ASSET.value: "views",
}


def _recipients(course) -> list[User]:
    return (
        User.query.filter(
            User.course_id == course.id,
            User.canvas_enrollment_state != ENROLLMENT_INACTIVE,
            User.canvas_email.isnot(None),
        )
        .order_by(User.id.asc())
        .all()
    )


# ---- daily ----

def get_daily_digest(course, now: datetime | None = None) -> list[dict]:
    """Per-user lists of comment/reply activity from others in the last day."""
    if not course.enable_daily_notifications:
        return []
    since = (now or datetime.utcnow()) - timedelta(days=1)

    activities = (
        Activity.query.filter(
            Activity.course_id == course.id,
            Activity.type.in_(list(DAILY_TYPES)),
            Activity.created_at >= since,
            Activity.actor_id != Activity.user_id,
        )
        .order_by(Activity.created_at.asc())
        .all()
    )
    by_user = defaultdict(list)
    for activity in activities:
        by_user[activity.user_id].append(activity)

    digest = []
    for user in _recipients(course):
        grouped = {}
        for activity in by_user.get(user.id, []):
            asset = activity.asset
            if asset is None or asset.deleted_at is not None:
                continue
            key = (activity.type, asset.id)
            item = grouped.setdefault(key, {
                "type": DAILY_TYPES[activity.type],
                "asset": {"id": asset.id, "title": asset.title},
                "actors": [],
            })
            name = activity.actor.canvas_full_name if activity.actor else None
            if name and name not in item["actors"]:
                item["actors"].append(name)
        if grouped:
            digest.append({"user": user.to_dict(include_email=True), "activities": list(grouped.values())})
    return digest


# ---- weekly ----

def _new_user_totals():
    return {"activities": defaultdict(int), "points": defaultdict(int), "assets": set()}


def summarize_activities(activities, configuration, users: dict[int, User]) -> dict:
    """Weekly totals for the course, its assets and its users.

    `configuration` is the course's effective activity type configuration and
    `users` maps user id to user.
    """
    by_type = {c["type"]: c for c in configuration}
    course_totals = defaultdict(int)
    asset_totals: dict[int, dict] = {}
    user_totals: dict[int, dict] = defaultdict(_new_user_totals)
    assets: dict[int, Asset] = {}

    for activity in activities:
        config = by_type.get(activity.type)
        if not config or not config["enabled"]:
            continue
        points = config["points"]

        if activity.asset is not None:
            asset = activity.asset
            assets[asset.id] = asset
            totals = asset_totals.setdefault(asset.id, {"comments": 0, "likes": 0, "views": 0})
            key = ASSET_TOTAL_KEYS.get(activity.type)
            if key:
                totals[key] += 1
            for owner in asset.users:
                user_totals[owner.id]["assets"].add(asset.id)

        recipient = user_totals[activity.user_id]
        recipient["activities"][activity.type] += 1
        recipient["points"][activity.type] += points
        recipient["points"]["collected"] += points
        course_totals[activity.type] += points
        course_totals["generated"] += points

        if activity.actor_id and activity.actor_id != activity.user_id:
            user_totals[activity.actor_id]["points"]["generated"] += points
            recipient["points"]["received"] += points
            course_totals["received"] += points
        else:
            recipient["points"]["generated"] += points

    user_count = len(users) or 1
    summary = {
        "course": {
            "totals": dict(course_totals),
            "averages": {k: round(v / user_count) for k, v in course_totals.items()},
            "topAssets": {},
            "topUsers": {},
        },
        "assets": {asset_id: {"asset": assets[asset_id].to_dict(), "weeklyTotals": t} for asset_id, t in asset_totals.items()},
        "users": {
            user_id: {
                "activities": dict(t["activities"]),
                "points": dict(t["points"]),
                "assets": sorted(t["assets"]),
            }
            for user_id, t in user_totals.items()
        },
    }

    for key in ("comments", "likes", "views"):
        best_id, best = None, 0
        for asset_id, totals in asset_totals.items():
            asset = assets[asset_id]
            # Deleted or hidden assets still count toward points but never surface as top assets,
            # nor do assets owned only by admins.
            if asset.deleted_at is not None or not asset.visible:
                continue
            if not any(not u.is_admin for u in asset.users):
                continue
            if totals[key] > best:
                best_id, best = asset_id, totals[key]
        if best_id is not None:
            summary["course"]["topAssets"][key] = summary["assets"][best_id]

    for key, points_key in (("pointsGenerated", "generated"), ("pointsReceived", "received")):
        best_id, best = None, 0
        for user_id, totals in user_totals.items():
            value = totals["points"].get(points_key, 0)
            if value > best:
                best_id, best = user_id, value
        if best_id is not None:
            user = users.get(best_id)
            shared = user.to_dict() if user is not None and user.share_points else {}
            summary["course"]["topUsers"][key] = {"total": best, "user": shared}

    return summary


def rank_users(users) -> dict[int, int]:
    """Leaderboard rank per user id; equal points share a rank."""
    ranks = {}
    ordered = sorted(users, key=lambda u: -(u.points or 0))
    for position, user in enumerate(ordered):
        if position and (user.points or 0) == (ordered[position - 1].points or 0):
            ranks[user.id] = ranks[ordered[position - 1].id]
        else:
            ranks[user.id] = position + 1
    return ranks


def get_weekly_digest(course, now: datetime | None = None) -> dict | None:
    if not course.enable_weekly_notifications:
        return None
    if not course.assetlibrary_url or not course.engagementindex_url:
        return None

    since = (now or datetime.utcnow()) - timedelta(days=7)
    activities = Activity.query.filter(Activity.course_id == course.id, Activity.created_at >= since).all()
    if not activities:
        return None

    course_users = User.query.filter(
        User.course_id == course.id, User.canvas_enrollment_state != ENROLLMENT_INACTIVE
    ).all()
    users = {u.id: u for u in course_users}
    summary = summarize_activities(activities, get_activity_type_configuration(course.id), users)
    ranks = rank_users([u for u in course_users if not u.is_admin])

    recipients = []
    for user in _recipients(course):
        recipients.append({
            "user": user.to_dict(include_email=True),
            "rank": ranks.get(user.id),
            "totals": summary["users"].get(user.id, {}),
        })
    return {"summary": summary, "users": recipients}


# ---- collection ----

def collect_course(kind: str, course, dispatcher, now: datetime | None = None) -> bool:
    if kind == DAILY:
        digest = get_daily_digest(course, now=now)
        if not digest:
            return False
        dispatcher.send(DAILY, course, [d["user"] for d in digest], {"digest": digest})
    elif kind == WEEKLY:
        digest = get_weekly_digest(course, now=now)
        if not digest or not digest["users"]:
            return False
        dispatcher.send(WEEKLY, course, [d["user"] for d in digest["users"]], digest)
    else:
        raise ValidationError(f"Unknown notification kind: {kind}")
    log.info("Dispatched %s notifications for course %s", kind, course.id)
    return True


def collect(kind: str, dispatcher, now: datetime | None = None) -> dict:
    """Dispatch digests for every active course; one course failing does not stop the rest."""
    sent = skipped = failed = 0
    for course in get_active_courses():
        try:
            if collect_course(kind, course, dispatcher, now=now):
                sent += 1
            else:
                skipped += 1
        except Exception:
            failed += 1
            log.exception("Unable to collect %s notifications for course %s", kind, course.id)
    return {"kind": kind, "sent": sent, "skipped": skipped, "failed": failed}


def send_notifications_for_course(kind: str, course, user, dispatcher) -> bool:
    """Manual trigger, admins only."""
    if user is None or not user.is_admin:
        raise AuthorizationError(f"Unauthorized to send {kind} notifications for a course")
    return collect_course(kind, course, dispatcher)
