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


class Activity(db.Model):
    """Point-bearing ledger row.

    `user_id` is the user credited; `actor_id` is who performed the interaction
    (the same user unless this is a reciprocal `get_*` row). `points` is what was
    credited when the row was created, so deleting the row reverses exactly that
    amount no matter how the course configuration changed in between.
    """

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    type = Column(String(40), nullable=False)
    object_type = Column(String(32), nullable=False)
    object_id = Column(Integer, nullable=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=True)
    reciprocal_id = Column(Integer, ForeignKey("activities.id", ondelete="SET NULL"), nullable=True)
    identity_key = Column(String(255), nullable=False)
    activity_metadata = Column("metadata", JSON, nullable=True)
    points = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", foreign_keys=[user_id])
    actor = relationship("User", foreign_keys=[actor_id])
    asset = relationship("Asset")

    __table_args__ = (
        UniqueConstraint("course_id", "user_id", "type", "identity_key", name="uq_activities_identity"),
        Index("idx_activities_course_type", "course_id", "type"),
        Index("idx_activities_course_created", "course_id", "created_at"),
        Index("idx_activities_asset", "asset_id"),
        Index("idx_activities_object", "object_type", "object_id"),
    )

    @property
    def metadata_dict(self) -> dict:
        return dict(self.activity_metadata or {})

    def to_dict(self):
        return {
            "id": self.id,
            "course_id": self.course_id,
            "user_id": self.user_id,
            "actor_id": self.actor_id,
            "type": self.type,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "asset_id": self.asset_id,
            "reciprocal_id": self.reciprocal_id,
            "metadata": self.metadata_dict,
            "points": self.points,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ActivityTypeOverride(db.Model):
    """Course-level override of a default activity type; null fields inherit."""

    __tablename__ = "activity_type_overrides"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    type = Column(String(40), nullable=False)
    points = Column(Integer, nullable=True)
    enabled = Column(Boolean, nullable=True)

    __table_args__ = (
        UniqueConstraint("course_id", "type", name="uq_activity_type_overrides_course_type"),
    )

    def to_dict(self):
        return {
            "course_id": self.course_id,
            "type": self.type,
            "points": self.points,
            "enabled": self.enabled,
        }
