"""Analytics event metadata scrubbing.

Shipping events is somebody else's job; this only decides which metadata fields
may leave the application.
"""

from __future__ import annotations


EVENT_METADATA_BLACKLIST = frozenset({
    "asset_categories",
    "asset_created_at",
    "asset_description_hashtag",
    "asset_description_length",
    "asset_dislikes",
    "asset_image_url",
    "asset_liked",
    "asset_mime",
    "asset_source",
    "asset_thumbnail_url",
    "asset_type",
    "asset_url",
    "asset_users",
    "comment_body_length",
    "comment_created_at",
    "comment_is_reply",
    "comment_parent_id",
    "whiteboard_batch_total",
    "whiteboard_chat_body",
    "whiteboard_chat_length",
    "whiteboard_created_at",
    "whiteboard_element_angle",
    "whiteboard_element_background_color",
    "whiteboard_element_fill",
    "whiteboard_element_index",
    "whiteboard_element_left",
    "whiteboard_element_scale_x",
    "whiteboard_element_scale_y",
    "whiteboard_element_stroke",
    "whiteboard_element_stroke_width",
    "whiteboard_element_text",
    "whiteboard_element_top",
    "whiteboard_element_type",
    "whiteboard_elements",
    "whiteboard_image_url",
    "whiteboard_thumbnail_url",
})

# Keys that duplicate an object id the event already carries.
OBJECT_ID_KEYS = {
    "activity": frozenset({"activity_id", "activityId"}),
    "asset": frozenset({"asset_id", "assetId"}),
    "comment": frozenset({"comment_id"}),
    "whiteboard": frozenset({"whiteboard_id"}),
    "whiteboard_element": frozenset({"whiteboard_element_uid", "whiteboard_element_id"}),
}


def scrub_metadata(metadata: dict | None, object_ids: dict | None = None, blacklist=EVENT_METADATA_BLACKLIST) -> dict:
    """Drop blacklisted keys, keys redundant with `object_ids`, and None values.

    `object_ids` maps an object kind ("asset", "comment", ...) to its id; a kind with
    a truthy id excludes that kind's metadata keys. `blacklist` is never modified.
    """
    exclusions = frozenset(blacklist)
    for kind, object_id in (object_ids or {}).items():
        if object_id:
            exclusions = exclusions | OBJECT_ID_KEYS.get(kind, frozenset())

    return {k: v for k, v in (metadata or {}).items() if k not in exclusions and v is not None}
