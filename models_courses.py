"""Course, user and category models.

A user row is scoped to one course: the same LMS person enrolled in two courses
has two rows, each with its own cached `points`.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from extensions import db


ENROLLMENT_ACTIVE = "active"
ENROLLMENT_COMPLETED = "completed"
ENROLLMENT_INACTIVE = "inactive"
ENROLLMENT_INVITED = "invited"
ENROLLMENT_STATES = (ENROLLMENT_ACTIVE, ENROLLMENT_COMPLETED, ENROLLMENT_INACTIVE, ENROLLMENT_INVITED)

ROLE_STUDENT = "Student"
ROLE_INSTRUCTOR = "urn:lti:role:ims/lis/Instructor"

# Any of these fragments in the LTI role string makes the user a course admin.
ADMIN_ROLES = ("Instructor", "ContentDeveloper", "TeachingAssistant", "Administrator")

TOOL_URL_FIELDS = ("assetlibrary_url", "dashboard_url", "engagementindex_url", "whiteboards_url")


class Course(db.Model):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True)
    canvas_course_id = Column(Integer, nullable=False)
    canvas_api_domain = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    assetlibrary_url = Column(String(255), nullable=True)
    dashboard_url = Column(String(255), nullable=True)
    engagementindex_url = Column(String(255), nullable=True)
    whiteboards_url = Column(String(255), nullable=True)

    enable_daily_notifications = Column(Boolean, nullable=False, default=True)
    enable_weekly_notifications = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", back_populates="course")

    __table_args__ = (
        UniqueConstraint("canvas_course_id", "canvas_api_domain", name="uq_courses_canvas"),
        Index("idx_courses_active", "active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "canvas_course_id": self.canvas_course_id,
            "canvas_api_domain": self.canvas_api_domain,
            "name": self.name,
            "active": self.active,
            "assetlibrary_url": self.assetlibrary_url,
            "dashboard_url": self.dashboard_url,
            "engagementindex_url": self.engagementindex_url,
            "whiteboards_url": self.whiteboards_url,
            "enable_daily_notifications": self.enable_daily_notifications,
            "enable_weekly_notifications": self.enable_weekly_notifications,
        }


class User(db.Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    canvas_user_id = Column(Integer, nullable=False)
    canvas_course_role = Column(String(255), nullable=False, default=ROLE_STUDENT)
    canvas_enrollment_state = Column(String(32), nullable=False, default=ENROLLMENT_ACTIVE)
    canvas_full_name = Column(String(255), nullable=False, default="")
    canvas_image = Column(String(255), nullable=True)
    canvas_email = Column(String(255), nullable=True)
    canvas_course_sections = Column(JSON, nullable=True)

    points = Column(Integer, nullable=False, default=0)
    share_points = Column(Boolean, nullable=True)
    last_activity = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    course = relationship("Course", back_populates="users")

    __table_args__ = (
        UniqueConstraint("course_id", "canvas_user_id", name="uq_users_course_canvas_user"),
        Index("idx_users_course_points", "course_id", "points"),
    )

    @property
    def is_admin(self) -> bool:
        role = self.canvas_course_role or ""
        return any(r in role for r in ADMIN_ROLES)

    def to_dict(self, include_email: bool = False):
        d = {
            "id": self.id,
            "course_id": self.course_id,
            "canvas_user_id": self.canvas_user_id,
            "canvas_course_role": self.canvas_course_role,
            "canvas_enrollment_state": self.canvas_enrollment_state,
            "canvas_full_name": self.canvas_full_name,
            "canvas_image": self.canvas_image,
            "canvas_course_sections": self.canvas_course_sections or [],
            "is_admin": self.is_admin,
            "points": int(self.points or 0),
            "share_points": self.share_points,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }
        if include_email:
            d["canvas_email"] = self.canvas_email
        return d


class Category(db.Model):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    canvas_assignment_id = Column(Integer, nullable=True)
    canvas_assignment_name = Column(String(255), nullable=True)
    visible = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    assets = relationship("Asset", secondary="asset_categories", back_populates="categories")

    __table_args__ = (
        Index("idx_categories_assignment", "course_id", "canvas_assignment_id"),
    )

    @property
    def asset_count(self) -> int:
        return sum(1 for a in self.assets if a.deleted_at is None)

    def to_dict(self):
        return {
            "id": self.id,
            "course_id": self.course_id,
            "title": self.title,
            "canvas_assignment_id": self.canvas_assignment_id,
            "canvas_assignment_name": self.canvas_assignment_name,
            "visible": self.visible,
            "asset_count": self.asset_count,
        }
