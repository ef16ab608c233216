"""Asset Library service.

Owns asset, comment and pin rows and hands every gamified interaction to the
reciprocal resolver inside a single `interaction()` transaction.

Rules:
- hidden assets (and submissions imported by the poller) earn no creation points
- deleting assets is a soft delete; their activities stay in the ledger
- a comment with replies can not be deleted
- pinning twice without unpinning is rejected
"""

from __future__ import annotations

import logging
from datetime import datetime

from extensions import db
from errors import AuthorizationError, NotFoundError, ValidationError
from models_assets import ASSET_TYPE_FILE, ASSET_TYPE_LINK, ASSET_TYPE_WHITEBOARD, Asset, Comment, Pin
from models_courses import Category
from reciprocal import (
    interaction,
    resolve_asset_created,
    resolve_comment,
    resolve_comment_deleted,
    resolve_like,
    resolve_pin,
    resolve_remix,
    resolve_view,
    resolve_whiteboard_add_asset,
)


log = logging.getLogger(__name__)


def get_asset(course, asset_id: int, include_deleted: bool = False) -> Asset:
    query = Asset.query.filter_by(id=asset_id, course_id=course.id)
    if not include_deleted:
        query = query.filter(Asset.deleted_at.is_(None))
    asset = query.first()
    if not asset:
        raise NotFoundError(f"Asset {asset_id} not found")
    return asset


def _create_asset(course, users, asset_type, title, opts=None, **fields) -> Asset:
    opts = opts or {}
    with interaction(f"create {asset_type} asset"):
        asset = Asset(
            course_id=course.id,
            type=asset_type,
            title=title,
            canvas_assignment_id=opts.get("assignment"),
            visible=bool(opts.get("visible", True)),
            created_at=datetime.utcnow(),
            **fields,
        )
        asset.users = list(users)
        category_ids = opts.get("categories") or []
        if category_ids:
            asset.categories = Category.query.filter(
                Category.course_id == course.id, Category.id.in_(category_ids)
            ).all()
        db.session.add(asset)
        db.session.flush()
        resolve_asset_created(course, asset, skip_create_activity=bool(opts.get("skip_create_activity")))

    log.info("Created %s asset %s in course %s", asset_type, asset.id, course.id)
    return asset


def create_link(course, user, url: str, title: str | None = None, opts=None) -> Asset:
    if not url:
        raise ValidationError("A link asset needs a url")
    return _create_asset(course, [user], ASSET_TYPE_LINK, title or url, opts, url=url)


def create_file(course, user, title: str, download_url: str, mime: str | None = None, opts=None) -> Asset:
    if not download_url:
        raise ValidationError("A file asset needs a download url")
    return _create_asset(course, [user], ASSET_TYPE_FILE, title, opts, download_url=download_url, mime=mime)


def create_whiteboard_export(course, users, title: str, url: str | None = None, opts=None) -> Asset:
    if not users:
        raise ValidationError("An exported whiteboard needs at least one collaborator")
    return _create_asset(course, users, ASSET_TYPE_WHITEBOARD, title, opts, url=url)


def add_user_to_asset(asset: Asset, user) -> Asset:
    if user.id not in asset.user_ids:
        asset.users.append(user)
        db.session.commit()
    return asset


def delete_assets(course, asset_ids) -> int:
    """Soft-delete assets. Their activities are kept so points do not move."""
    if not asset_ids:
        return 0
    assets = Asset.query.filter(
        Asset.course_id == course.id, Asset.id.in_(list(asset_ids)), Asset.deleted_at.is_(None)
    ).all()
    now = datetime.utcnow()
    for asset in assets:
        asset.deleted_at = now
    db.session.commit()
    return len(assets)


def view_asset(course, user, asset_id: int) -> Asset:
    asset = get_asset(course, asset_id)
    with interaction("view"):
        if resolve_view(course, user, asset):
            asset.views = (asset.views or 0) + 1
    return asset


def like(course, user, asset_id: int, value) -> Asset:
    """`value` is True (like), False (dislike) or None (undo)."""
    if value not in (True, False, None):
        raise ValidationError("like must be true, false or null")
    asset = get_asset(course, asset_id)
    with interaction("like"):
        previous = resolve_like(course, user, asset, value)
        if previous is not value:
            if previous is True:
                asset.likes = max(0, (asset.likes or 0) - 1)
            elif previous is False:
                asset.dislikes = max(0, (asset.dislikes or 0) - 1)
            if value is True:
                asset.likes = (asset.likes or 0) + 1
            elif value is False:
                asset.dislikes = (asset.dislikes or 0) + 1
    return asset


def create_comment(course, user, asset_id: int, body: str, parent_id: int | None = None) -> Comment:
    if not body or not body.strip():
        raise ValidationError("A comment needs a body")
    asset = get_asset(course, asset_id)

    parent = None
    if parent_id is not None:
        parent = Comment.query.filter_by(id=parent_id, asset_id=asset.id).first()
        if not parent:
            raise NotFoundError(f"Comment {parent_id} not found")

    with interaction("comment"):
        comment = Comment(asset_id=asset.id, user=user, parent=parent, body=body.strip())
        db.session.add(comment)
        db.session.flush()
        asset.comment_count = (asset.comment_count or 0) + 1
        resolve_comment(course, asset, comment)
    return comment


def delete_comment(course, user, asset_id: int, comment_id: int) -> None:
    asset = get_asset(course, asset_id)
    comment = Comment.query.filter_by(id=comment_id, asset_id=asset.id).first()
    if not comment:
        raise NotFoundError(f"Comment {comment_id} not found")
    if comment.user_id != user.id and not user.is_admin:
        raise AuthorizationError("You can only delete your own comments")
    if Comment.query.filter_by(parent_id=comment.id).count():
        raise ValidationError("A comment with replies can not be deleted")

    with interaction("delete comment"):
        resolve_comment_deleted(course, asset, comment)
        asset.comment_count = max(0, (asset.comment_count or 0) - 1)
        db.session.delete(comment)


def pin_asset(course, user, asset_id: int, pin: bool = True) -> Asset:
    asset = get_asset(course, asset_id)
    existing = Pin.query.filter_by(asset_id=asset.id, user_id=user.id).first()

    if pin:
        if existing:
            raise ValidationError("The asset is already pinned")
        with interaction("pin"):
            db.session.add(Pin(asset_id=asset.id, user_id=user.id))
            resolve_pin(course, user, asset)
    else:
        if not existing:
            raise NotFoundError("The asset is not pinned")
        # Pin activities stay: repin detection reads them.
        db.session.delete(existing)
        db.session.commit()
    return asset


def add_asset_to_whiteboard(course, user, asset_id: int, whiteboard_id: int) -> Asset:
    asset = get_asset(course, asset_id)
    with interaction("whiteboard add asset"):
        resolve_whiteboard_add_asset(course, user, asset, whiteboard_id)
    return asset


def remix_whiteboard(course, user, asset_id: int, whiteboard_id: int) -> Asset:
    asset = get_asset(course, asset_id)
    if asset.type != ASSET_TYPE_WHITEBOARD:
        raise ValidationError("Only exported whiteboards can be remixed")
    with interaction("remix"):
        resolve_remix(course, user, asset, whiteboard_id)
    return asset
