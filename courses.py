"""Course and user directory used by the poller and the notification jobs."""

from __future__ import annotations

import logging

from sqlalchemy import update

from extensions import db
from errors import NotFoundError
from models_courses import Course, User


log = logging.getLogger(__name__)


def get_course(course_id: int) -> Course:
    course = db.session.get(Course, course_id)
    if not course:
        raise NotFoundError(f"Course {course_id} not found")
    return course


def get_active_courses() -> list[Course]:
    return Course.query.filter_by(active=True).order_by(Course.id.asc()).all()


def get_course_users(course, include_inactive: bool = True) -> list[User]:
    query = User.query.filter_by(course_id=course.id)
    if not include_inactive:
        query = query.filter(User.canvas_enrollment_state != "inactive")
    return query.order_by(User.id.asc()).all()


def get_or_create_user(canvas_user_id: int, course, defaults: dict) -> User:
    """Upsert a course user by LMS id, applying `defaults` to new and existing rows."""
    user = User.query.filter_by(course_id=course.id, canvas_user_id=canvas_user_id).first()
    if not user:
        user = User(course_id=course.id, canvas_user_id=canvas_user_id, points=0)
        db.session.add(user)
        log.info("Creating user %s in course %s", canvas_user_id, course.id)
    for key, value in (defaults or {}).items():
        setattr(user, key, value)
    db.session.commit()
    return user


def update_users(user_ids, changes: dict) -> int:
    if not user_ids:
        return 0
    result = db.session.execute(
        update(User)
        .where(User.id.in_(list(user_ids)))
        .values(**changes)
        .execution_options(synchronize_session="fetch")
    )
    db.session.commit()
    return result.rowcount


def update_course(course: Course, changes: dict) -> Course:
    for key, value in changes.items():
        setattr(course, key, value)
    db.session.commit()
    return course


def deactivate_course(course: Course) -> Course:
    log.warning("Deactivating course %s", course.id)
    return update_course(course, {"active": False})
