"""Activity type registry.

Every activity the ledger records is one of the types in `ACTIVITY_TYPES`. The
table drives the ledger and the reciprocal resolver:

- `default_points` / `default_enabled`: what a course earns unless it overrides them.
- `impact`: weight toward an asset's impact and trending scores (never overridden).
- `identity`: builds the key that makes get-or-create idempotent.
- `reciprocal`: the type credited to the other party of the interaction.

Course overrides live in `activity_type_overrides`; a null override field inherits
the default.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable

from extensions import db
from errors import AuthorizationError, ValidationError
from models_activity import ActivityTypeOverride


class ActivityType(str, enum.Enum):
    ADD_ASSET = "add_asset"
    EXPORT_WHITEBOARD = "export_whiteboard"
    VIEW_ASSET = "view_asset"
    GET_VIEW_ASSET = "get_view_asset"
    LIKE = "like"
    GET_LIKE = "get_like"
    DISLIKE = "dislike"
    GET_DISLIKE = "get_dislike"
    ASSET_COMMENT = "asset_comment"
    GET_ASSET_COMMENT = "get_asset_comment"
    GET_ASSET_COMMENT_REPLY = "get_asset_comment_reply"
    PIN_ASSET = "pin_asset"
    GET_PIN_ASSET = "get_pin_asset"
    REPIN_ASSET = "repin_asset"
    GET_REPIN_ASSET = "get_repin_asset"
    WHITEBOARD_ADD_ASSET = "whiteboard_add_asset"
    GET_WHITEBOARD_ADD_ASSET = "get_whiteboard_add_asset"
    REMIX_WHITEBOARD = "remix_whiteboard"
    GET_REMIX_WHITEBOARD = "get_remix_whiteboard"
    SUBMIT_ASSIGNMENT = "submit_assignment"
    DISCUSSION_TOPIC = "discussion_topic"
    DISCUSSION_ENTRY = "discussion_entry"
    GET_DISCUSSION_ENTRY_REPLY = "get_discussion_entry_reply"


OBJECT_TYPE_ASSET = "asset"
OBJECT_TYPE_COMMENT = "comment"
OBJECT_TYPE_WHITEBOARD = "whiteboard"
OBJECT_TYPE_CANVAS_DISCUSSION = "canvas_discussion"
OBJECT_TYPE_CANVAS_SUBMISSION = "canvas_submission"

OBJECT_TYPES = frozenset({
    OBJECT_TYPE_ASSET,
    OBJECT_TYPE_COMMENT,
    OBJECT_TYPE_WHITEBOARD,
    OBJECT_TYPE_CANVAS_DISCUSSION,
    OBJECT_TYPE_CANVAS_SUBMISSION,
})

GROUP_ENGAGEMENT = "engagements"
GROUP_INTERACTION = "interactions"
GROUP_CREATION = "creations"


# ---- identity keys ----

def _by_object(object_type, object_id, actor_id, metadata) -> str:
    return f"{object_type}:{object_id}"


def _by_object_and_actor(object_type, object_id, actor_id, metadata) -> str:
    return f"{object_type}:{object_id}:actor:{actor_id}"


def _by_entry(object_type, object_id, actor_id, metadata) -> str:
    return f"{object_type}:{object_id}:entry:{(metadata or {}).get('entryId')}"


def _by_reply(object_type, object_id, actor_id, metadata) -> str:
    return f"{object_type}:{object_id}:reply:{(metadata or {}).get('commentId')}"


@dataclass(frozen=True)
class ActivityTypeDefinition:
    title: str
    default_points: int
    group: str
    impact: int = 0
    default_enabled: bool = True
    identity: Callable[..., str] = _by_object
    reciprocal: ActivityType | None = None

    def identity_key(self, object_type, object_id, actor_id=None, metadata=None) -> str:
        return self.identity(object_type, object_id, actor_id, metadata)


T = ActivityType

ACTIVITY_TYPES: dict[ActivityType, ActivityTypeDefinition] = {
    T.ADD_ASSET: ActivityTypeDefinition("Add a new asset to the Asset Library", 5, GROUP_CREATION),
    T.EXPORT_WHITEBOARD: ActivityTypeDefinition("Export a whiteboard to the Asset Library", 10, GROUP_CREATION),
    T.VIEW_ASSET: ActivityTypeDefinition(
        "View an asset in the Asset Library", 0, GROUP_ENGAGEMENT, impact=1, reciprocal=T.GET_VIEW_ASSET
    ),
    T.GET_VIEW_ASSET: ActivityTypeDefinition(
        "Receive a view in the Asset Library", 0, GROUP_ENGAGEMENT, identity=_by_object_and_actor
    ),
    T.LIKE: ActivityTypeDefinition(
        "Like an asset in the Asset Library", 1, GROUP_ENGAGEMENT, impact=2, reciprocal=T.GET_LIKE
    ),
    T.GET_LIKE: ActivityTypeDefinition(
        "Receive a like in the Asset Library", 1, GROUP_ENGAGEMENT, identity=_by_object_and_actor
    ),
    T.DISLIKE: ActivityTypeDefinition(
        "Dislike an asset in the Asset Library", 0, GROUP_ENGAGEMENT, reciprocal=T.GET_DISLIKE
    ),
    T.GET_DISLIKE: ActivityTypeDefinition(
        "Receive a dislike in the Asset Library", 0, GROUP_ENGAGEMENT, identity=_by_object_and_actor
    ),
    T.ASSET_COMMENT: ActivityTypeDefinition(
        "Comment on an asset in the Asset Library", 3, GROUP_INTERACTION, impact=3, reciprocal=T.GET_ASSET_COMMENT
    ),
    T.GET_ASSET_COMMENT: ActivityTypeDefinition(
        "Receive a comment in the Asset Library", 1, GROUP_INTERACTION, identity=_by_object_and_actor
    ),
    T.GET_ASSET_COMMENT_REPLY: ActivityTypeDefinition(
        "Receive a reply on a comment in the Asset Library", 1, GROUP_INTERACTION, identity=_by_reply
    ),
    T.PIN_ASSET: ActivityTypeDefinition(
        "Pin an asset for later use", 1, GROUP_ENGAGEMENT, impact=2, reciprocal=T.GET_PIN_ASSET
    ),
    T.GET_PIN_ASSET: ActivityTypeDefinition(
        "Receive a pin of an asset", 1, GROUP_ENGAGEMENT, identity=_by_object_and_actor
    ),
    T.REPIN_ASSET: ActivityTypeDefinition(
        "Pin an asset again after unpinning it", 0, GROUP_ENGAGEMENT, impact=2, reciprocal=T.GET_REPIN_ASSET
    ),
    T.GET_REPIN_ASSET: ActivityTypeDefinition(
        "Receive a repin of an asset", 0, GROUP_ENGAGEMENT, identity=_by_object_and_actor
    ),
    T.WHITEBOARD_ADD_ASSET: ActivityTypeDefinition(
        "Add an asset to a whiteboard", 8, GROUP_INTERACTION, impact=3, reciprocal=T.GET_WHITEBOARD_ADD_ASSET
    ),
    T.GET_WHITEBOARD_ADD_ASSET: ActivityTypeDefinition(
        "Have one of your assets added to a whiteboard", 0, GROUP_INTERACTION, identity=_by_object_and_actor
    ),
    T.REMIX_WHITEBOARD: ActivityTypeDefinition(
        "Remix a whiteboard", 0, GROUP_CREATION, impact=5, reciprocal=T.GET_REMIX_WHITEBOARD
    ),
    T.GET_REMIX_WHITEBOARD: ActivityTypeDefinition(
        "Have your whiteboard remixed", 0, GROUP_CREATION, identity=_by_object_and_actor
    ),
    T.SUBMIT_ASSIGNMENT: ActivityTypeDefinition("Submit a new assignment in Assignments", 20, GROUP_CREATION),
    T.DISCUSSION_TOPIC: ActivityTypeDefinition("Add a new topic in Discussions", 5, GROUP_CREATION),
    T.DISCUSSION_ENTRY: ActivityTypeDefinition(
        "Add an entry on a topic in Discussions", 3, GROUP_INTERACTION,
        identity=_by_entry, reciprocal=T.GET_DISCUSSION_ENTRY_REPLY,
    ),
    T.GET_DISCUSSION_ENTRY_REPLY: ActivityTypeDefinition(
        "Receive a reply on an entry in Discussions", 1, GROUP_INTERACTION, identity=_by_entry
    ),
}

del T


def parse_activity_type(value) -> ActivityType:
    try:
        return ActivityType(value)
    except ValueError:
        raise ValidationError(f"Unknown activity type: {value}")


def get_definition(activity_type) -> ActivityTypeDefinition:
    return ACTIVITY_TYPES[parse_activity_type(activity_type)]


def is_recipient_type(activity_type) -> bool:
    return parse_activity_type(activity_type).value.startswith("get_")


def get_activity_type_configuration(course_id: int) -> list[dict]:
    """Merge the default type table with the course's overrides."""
    overrides = {o.type: o for o in ActivityTypeOverride.query.filter_by(course_id=course_id).all()}

    configuration = []
    for activity_type, definition in ACTIVITY_TYPES.items():
        override = overrides.get(activity_type.value)
        points = definition.default_points
        enabled = definition.default_enabled
        if override is not None:
            if override.points is not None:
                points = override.points
            if override.enabled is not None:
                enabled = override.enabled
        configuration.append({
            "type": activity_type.value,
            "title": definition.title,
            "points": int(points),
            "enabled": bool(enabled),
        })
    return configuration


def get_configuration_by_type(course_id: int) -> dict[str, dict]:
    return {c["type"]: c for c in get_activity_type_configuration(course_id)}


def configured_points(course_id: int, activity_type) -> int:
    """Points a new activity of this type earns right now (0 when disabled)."""
    config = get_configuration_by_type(course_id)[parse_activity_type(activity_type).value]
    return config["points"] if config["enabled"] else 0


def _validate_update(update) -> dict:
    if not isinstance(update, dict):
        raise ValidationError("Each activity type update must be an object")
    activity_type = parse_activity_type(update.get("type"))

    has_points = "points" in update and update["points"] is not None
    has_enabled = "enabled" in update and update["enabled"] is not None
    if not has_points and not has_enabled:
        raise ValidationError(f"Update for {activity_type.value} needs points or enabled")

    points = update.get("points")
    if has_points and (isinstance(points, bool) or not isinstance(points, int) or points < 0):
        raise ValidationError(f"Invalid points for {activity_type.value}")
    enabled = update.get("enabled")
    if has_enabled and not isinstance(enabled, bool):
        raise ValidationError(f"Invalid enabled flag for {activity_type.value}")

    return {
        "type": activity_type.value,
        "points": points if has_points else None,
        "enabled": enabled if has_enabled else None,
    }


def edit_activity_type_configuration(course_id: int, updates, user=None) -> list[dict]:
    """Upsert course overrides.

    Only course admins may edit. Points already banked are left untouched; the new
    values apply to activities created from now on.
    """
    if user is not None and not user.is_admin:
        raise AuthorizationError("Only administrators can edit the activity type configuration")
    if not isinstance(updates, list) or not updates:
        raise ValidationError("At least one activity type update is required")

    validated = [_validate_update(u) for u in updates]

    try:
        for update in validated:
            override = ActivityTypeOverride.query.filter_by(course_id=course_id, type=update["type"]).first()
            if not override:
                override = ActivityTypeOverride(course_id=course_id, type=update["type"])
                db.session.add(override)
            if update["points"] is not None:
                override.points = update["points"]
            if update["enabled"] is not None:
                override.enabled = update["enabled"]
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return get_activity_type_configuration(course_id)
