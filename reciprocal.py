"""Reciprocal activity resolver.

Turns one user-facing interaction into the ledger activities it implies: the
actor's activity plus, for types with a `reciprocal` in the type table, one
recipient activity per asset co-owner other than the actor. Recipient rows carry
`reciprocalId` pointing back at the actor's row.

Resolver functions only flush. Callers wrap each interaction in `interaction()`
so that the whole reciprocal set commits or rolls back together.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager

from extensions import db
from activity import create_activity, delete_activity, get_activities
from activity_types import (
    ACTIVITY_TYPES,
    OBJECT_TYPE_ASSET,
    OBJECT_TYPE_COMMENT,
    ActivityType,
)
from errors import AuthorizationError
from models_assets import ASSET_TYPE_WHITEBOARD


log = logging.getLogger(__name__)


@contextmanager
def interaction(name: str):
    """Commit everything recorded inside the block, or nothing."""
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        log.warning("Rolled back %s interaction", name)
        raise


# ---- ownership ----

def is_owner(asset, user_id: int) -> bool:
    return user_id in asset.user_ids


def other_owners(asset, user_id: int) -> list:
    return [u for u in asset.users if u.id != user_id]


# ---- pairs ----

def record_pair(course, actor, asset, activity_type: ActivityType, object_id, object_type, metadata=None):
    """Create the actor activity and its reciprocal for every other co-owner."""
    metadata = dict(metadata or {})
    activity, created = create_activity(course, actor, activity_type, object_id, object_type, metadata)

    reciprocal = ACTIVITY_TYPES[activity_type].reciprocal
    if reciprocal is not None:
        for owner in other_owners(asset, actor.id):
            create_activity(
                course, owner, reciprocal, object_id, object_type,
                {**metadata, "reciprocalId": activity.id}, actor=actor,
            )
    return activity


def remove_pair(course, actor, activity_type: ActivityType, object_id, object_type) -> int:
    """Delete the actor activity and every reciprocal it produced, recipients first."""
    removed = 0
    reciprocal = ACTIVITY_TYPES[activity_type].reciprocal
    if reciprocal is not None:
        recipients = {
            a.user_id
            for a in get_activities(course, reciprocal, object_id, object_type)
            if a.actor_id == actor.id
        }
        for recipient_id in recipients:
            removed += delete_activity(course, recipient_id, reciprocal, object_id, object_type, actor=actor)
    removed += delete_activity(course, actor, activity_type, object_id, object_type)
    return removed


# ---- interactions ----

def resolve_asset_created(course, asset, skip_create_activity: bool = False) -> list:
    if skip_create_activity or not asset.visible:
        return []
    activity_type = ActivityType.EXPORT_WHITEBOARD if asset.type == ASSET_TYPE_WHITEBOARD else ActivityType.ADD_ASSET
    return [create_activity(course, user, activity_type, asset.id, OBJECT_TYPE_ASSET)[0] for user in asset.users]


def resolve_view(course, user, asset) -> bool:
    if is_owner(asset, user.id):
        return False
    record_pair(course, user, asset, ActivityType.VIEW_ASSET, asset.id, OBJECT_TYPE_ASSET)
    return True


def current_like(course, user, asset):
    """True for a like, False for a dislike, None when neither exists."""
    rows = get_activities(course, [ActivityType.LIKE, ActivityType.DISLIKE], asset.id, OBJECT_TYPE_ASSET, user=user)
    if not rows:
        return None
    return rows[0].type == ActivityType.LIKE.value


def resolve_like(course, user, asset, like):
    """Move the user's like state on an asset to `like`; returns the previous state."""
    if is_owner(asset, user.id):
        if like is None:
            return None
        raise AuthorizationError("You can not like or dislike your own assets")

    previous = current_like(course, user, asset)
    if previous is like:
        return previous

    if previous is not None:
        old_type = ActivityType.LIKE if previous else ActivityType.DISLIKE
        remove_pair(course, user, old_type, asset.id, OBJECT_TYPE_ASSET)
    if like is not None:
        new_type = ActivityType.LIKE if like else ActivityType.DISLIKE
        record_pair(course, user, asset, new_type, asset.id, OBJECT_TYPE_ASSET)
    return previous


def _comment_scores(asset, comment, parent) -> bool:
    if not is_owner(asset, comment.user_id):
        return True
    return parent is not None and parent.user_id != comment.user_id


def resolve_comment(course, asset, comment) -> None:
    parent = comment.parent
    actor = comment.user
    reciprocal_id = None

    if _comment_scores(asset, comment, parent):
        activity = record_pair(
            course, actor, asset, ActivityType.ASSET_COMMENT, comment.id, OBJECT_TYPE_COMMENT, {"assetId": asset.id}
        )
        reciprocal_id = activity.id

    if parent is not None and parent.user_id != comment.user_id:
        metadata = {"assetId": asset.id, "commentId": comment.id}
        if reciprocal_id:
            metadata["reciprocalId"] = reciprocal_id
        create_activity(
            course, parent.user, ActivityType.GET_ASSET_COMMENT_REPLY, parent.id, OBJECT_TYPE_COMMENT,
            metadata, actor=actor,
        )


def resolve_comment_deleted(course, asset, comment) -> None:
    parent = comment.parent
    if parent is not None and parent.user_id != comment.user_id:
        delete_activity(
            course, parent.user_id, ActivityType.GET_ASSET_COMMENT_REPLY, parent.id, OBJECT_TYPE_COMMENT,
            actor=comment.user_id, metadata={"commentId": comment.id},
        )
    remove_pair(course, comment.user, ActivityType.ASSET_COMMENT, comment.id, OBJECT_TYPE_COMMENT)


def resolve_pin(course, user, asset):
    """Credit a pin, or a repin if this user pinned the asset before."""
    if is_owner(asset, user.id):
        return None

    pinned_before = bool(get_activities(course, ActivityType.PIN_ASSET, asset.id, OBJECT_TYPE_ASSET, user=user))
    activity_type = ActivityType.REPIN_ASSET if pinned_before else ActivityType.PIN_ASSET
    activity, _ = create_activity(course, user, activity_type, asset.id, OBJECT_TYPE_ASSET)

    for owner in other_owners(asset, user.id):
        credited_before = any(
            a.actor_id == user.id
            for a in get_activities(course, ActivityType.GET_PIN_ASSET, asset.id, OBJECT_TYPE_ASSET, user=owner)
        )
        recipient_type = ActivityType.GET_REPIN_ASSET if credited_before else ActivityType.GET_PIN_ASSET
        create_activity(
            course, owner, recipient_type, asset.id, OBJECT_TYPE_ASSET, {"reciprocalId": activity.id}, actor=user
        )
    return activity


def resolve_whiteboard_add_asset(course, user, asset, whiteboard_id: int):
    if is_owner(asset, user.id):
        return None
    return record_pair(
        course, user, asset, ActivityType.WHITEBOARD_ADD_ASSET, asset.id, OBJECT_TYPE_ASSET,
        {"whiteboard_id": whiteboard_id},
    )


def resolve_remix(course, user, asset, whiteboard_id: int):
    if is_owner(asset, user.id):
        return None
    return record_pair(
        course, user, asset, ActivityType.REMIX_WHITEBOARD, asset.id, OBJECT_TYPE_ASSET,
        {"whiteboard_id": whiteboard_id},
    )
