"""Asset Library interaction APIs.

Routes:
- POST   /api/<course_id>/assets/link
- POST   /api/<course_id>/assets/<asset_id>/view
- POST   /api/<course_id>/assets/<asset_id>/like          body: {"like": true|false|null}
- POST   /api/<course_id>/assets/<asset_id>/comments      body: {"body": "...", "parent_id": 1}
- DELETE /api/<course_id>/assets/<asset_id>/comments/<comment_id>
- POST   /api/<course_id>/assets/<asset_id>/pin
- POST   /api/<course_id>/assets/<asset_id>/unpin
- POST   /api/<course_id>/assets/<asset_id>/remix          body: {"whiteboard_id": 1}

Every interaction records its activities (and their reciprocals) before the
response is sent.
"""

from flask import Blueprint, jsonify, request

from extensions import limiter
from activities_api import current_user
from assets import create_comment, create_link, delete_comment, like, pin_asset, remix_whiteboard, view_asset
from courses import get_course
from errors import ValidationError


assets_api = Blueprint("assets_api", __name__)


def _payload() -> dict:
    return request.get_json(silent=True) or {}


@assets_api.post("/api/<int:course_id>/assets/link")
@limiter.limit("30 per minute")
def api_create_link(course_id: int):
    user = current_user(course_id)
    data = _payload()
    opts = {"visible": data.get("visible", True)}
    asset = create_link(get_course(course_id), user, (data.get("url") or "").strip(), data.get("title"), opts)
    return jsonify({"success": True, "asset": asset.to_dict()}), 201


@assets_api.post("/api/<int:course_id>/assets/<int:asset_id>/view")
def api_view_asset(course_id: int, asset_id: int):
    user = current_user(course_id)
    asset = view_asset(get_course(course_id), user, asset_id)
    return jsonify({"success": True, "asset": asset.to_dict()})


@assets_api.post("/api/<int:course_id>/assets/<int:asset_id>/like")
def api_like(course_id: int, asset_id: int):
    user = current_user(course_id)
    data = _payload()
    if "like" not in data:
        raise ValidationError("like is required")
    asset = like(get_course(course_id), user, asset_id, data["like"])
    return jsonify({"success": True, "asset": asset.to_dict()})


@assets_api.post("/api/<int:course_id>/assets/<int:asset_id>/comments")
@limiter.limit("60 per minute")
def api_create_comment(course_id: int, asset_id: int):
    user = current_user(course_id)
    data = _payload()
    comment = create_comment(get_course(course_id), user, asset_id, data.get("body") or "", data.get("parent_id"))
    return jsonify({"success": True, "comment": comment.to_dict()}), 201


@assets_api.delete("/api/<int:course_id>/assets/<int:asset_id>/comments/<int:comment_id>")
def api_delete_comment(course_id: int, asset_id: int, comment_id: int):
    user = current_user(course_id)
    delete_comment(get_course(course_id), user, asset_id, comment_id)
    return jsonify({"success": True})


@assets_api.post("/api/<int:course_id>/assets/<int:asset_id>/pin")
def api_pin(course_id: int, asset_id: int):
    user = current_user(course_id)
    asset = pin_asset(get_course(course_id), user, asset_id, pin=True)
    return jsonify({"success": True, "asset": asset.to_dict()})


@assets_api.post("/api/<int:course_id>/assets/<int:asset_id>/unpin")
def api_unpin(course_id: int, asset_id: int):
    user = current_user(course_id)
    asset = pin_asset(get_course(course_id), user, asset_id, pin=False)
    return jsonify({"success": True, "asset": asset.to_dict()})


@assets_api.post("/api/<int:course_id>/assets/<int:asset_id>/remix")
def api_remix(course_id: int, asset_id: int):
    user = current_user(course_id)
    whiteboard_id = _payload().get("whiteboard_id")
    if not isinstance(whiteboard_id, int):
        raise ValidationError("whiteboard_id is required")
    asset = remix_whiteboard(get_course(course_id), user, asset_id, whiteboard_id)
    return jsonify({"success": True, "asset": asset.to_dict()})
