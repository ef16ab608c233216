"""Asset Library models: assets, their co-owners, comments and pins.

`impact_score` and `trending_score` are caches; `scores.py` can rebuild both
from the activity ledger at any time.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from extensions import db


ASSET_TYPE_LINK = "link"
ASSET_TYPE_FILE = "file"
ASSET_TYPE_WHITEBOARD = "whiteboard"


asset_users = Table(
    "asset_users",
    db.metadata,
    Column("asset_id", Integer, ForeignKey("assets.id"), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
)

asset_categories = Table(
    "asset_categories",
    db.metadata,
    Column("asset_id", Integer, ForeignKey("assets.id"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id"), primary_key=True),
)


class Asset(db.Model):
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    title = Column(String(255), nullable=True)
    url = Column(Text, nullable=True)
    download_url = Column(Text, nullable=True)
    mime = Column(String(255), nullable=True)
    canvas_assignment_id = Column(Integer, nullable=True)
    visible = Column(Boolean, nullable=False, default=True)

    likes = Column(Integer, nullable=False, default=0)
    dislikes = Column(Integer, nullable=False, default=0)
    views = Column(Integer, nullable=False, default=0)
    comment_count = Column(Integer, nullable=False, default=0)
    impact_score = Column(Integer, nullable=False, default=0)
    trending_score = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    users = relationship("User", secondary=asset_users, lazy="selectin")
    categories = relationship("Category", secondary=asset_categories, back_populates="assets")
    comments = relationship("Comment", back_populates="asset", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_assets_course_deleted", "course_id", "deleted_at"),
        Index("idx_assets_assignment", "canvas_assignment_id"),
    )

    @property
    def user_ids(self) -> list[int]:
        return [u.id for u in self.users]

    def to_dict(self):
        return {
            "id": self.id,
            "course_id": self.course_id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "download_url": self.download_url,
            "canvas_assignment_id": self.canvas_assignment_id,
            "visible": self.visible,
            "likes": self.likes,
            "dislikes": self.dislikes,
            "views": self.views,
            "comment_count": self.comment_count,
            "impact_score": self.impact_score,
            "trending_score": self.trending_score,
            "users": [u.to_dict() for u in self.users],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }


class Comment(db.Model):
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("comments.id"), nullable=True, index=True)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    asset = relationship("Asset", back_populates="comments")
    user = relationship("User")
    parent = relationship("Comment", remote_side=[id], backref="replies")

    def to_dict(self):
        return {
            "id": self.id,
            "asset_id": self.asset_id,
            "user_id": self.user_id,
            "parent_id": self.parent_id,
            "body": self.body,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Pin(db.Model):
    __tablename__ = "pinned_user_assets"

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey("assets.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("asset_id", "user_id", name="uq_pins_asset_user"),
    )

    def to_dict(self):
        return {
            "asset_id": self.asset_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
