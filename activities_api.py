"""Activity, points and leaderboard APIs.

Routes:
- GET  /api/<course_id>/activities/configuration
- POST /api/<course_id>/activities/configuration        (admin)
- GET  /api/<course_id>/activities/export               (admin, CSV)
- GET  /api/<course_id>/activities/user/<user_id>
- GET  /api/<course_id>/activities/asset/<asset_id>
- GET  /api/<course_id>/activities/interactions
- GET  /api/<course_id>/leaderboard

Assumptions:
- The LTI launch stores the course-scoped user id in the session (`user_id`).
- Errors raised by the ledger carry their own HTTP status and render through
  the `SuiteCError` handler registered in app.py.
"""

from flask import Blueprint, Response, jsonify, request, session as flask_session

from extensions import db, limiter
from activity import (
    export_activities_csv,
    get_activities_for_asset_id,
    get_activities_for_user_id,
    get_interactions,
    get_leaderboard,
)
from activity_types import edit_activity_type_configuration, get_activity_type_configuration
from courses import get_course
from errors import AuthorizationError, NotFoundError
from models_courses import User


activities_api = Blueprint("activities_api", __name__)


def current_user(course_id: int) -> User:
    """The session user, which must belong to `course_id`."""
    user_id = flask_session.get("user_id")
    if not user_id:
        raise AuthorizationError("Not logged in")
    user = db.session.get(User, int(user_id))
    if not user or user.course_id != course_id:
        raise AuthorizationError("Not a member of this course")
    return user


@activities_api.get("/api/<int:course_id>/activities/configuration")
def get_configuration(course_id: int):
    current_user(course_id)
    return jsonify(get_activity_type_configuration(course_id))


@activities_api.post("/api/<int:course_id>/activities/configuration")
@limiter.limit("30 per minute")
def edit_configuration(course_id: int):
    user = current_user(course_id)
    data = request.get_json(silent=True)
    configuration = edit_activity_type_configuration(course_id, data, user=user)
    return jsonify({"success": True, "configuration": configuration})


@activities_api.get("/api/<int:course_id>/activities/export")
def export_activities(course_id: int):
    user = current_user(course_id)
    course = get_course(course_id)
    body = export_activities_csv(course, user)
    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=engagement_index_activities_{course_id}.csv"},
    )


@activities_api.get("/api/<int:course_id>/activities/user/<int:user_id>")
def get_user_activities(course_id: int, user_id: int):
    current_user(course_id)
    course = get_course(course_id)
    if not User.query.filter_by(id=user_id, course_id=course.id).first():
        raise NotFoundError(f"User {user_id} not found")
    return jsonify(get_activities_for_user_id(course, user_id))


@activities_api.get("/api/<int:course_id>/activities/asset/<int:asset_id>")
def get_asset_activities(course_id: int, asset_id: int):
    current_user(course_id)
    return jsonify(get_activities_for_asset_id(get_course(course_id), asset_id))


@activities_api.get("/api/<int:course_id>/activities/interactions")
def get_course_interactions(course_id: int):
    current_user(course_id)
    return jsonify(get_interactions(get_course(course_id)))


@activities_api.get("/api/<int:course_id>/leaderboard")
def leaderboard(course_id: int):
    user = current_user(course_id)
    return jsonify(get_leaderboard(get_course(course_id), user))
