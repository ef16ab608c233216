import itertools
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["RATELIMIT_ENABLED"] = "0"

import pytest

from app import create_app
from extensions import db
from models_assets import ASSET_TYPE_LINK, Asset
from models_courses import ROLE_INSTRUCTOR, ROLE_STUDENT, Course, User


@pytest.fixture(scope="session")
def app():
    return create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "RATELIMIT_ENABLED": False,
    })


@pytest.fixture(autouse=True)
def database(app):
    with app.app_context():
        db.create_all()
        yield db
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


_canvas_ids = itertools.count(1000)


@pytest.fixture
def make_course(database):
    def _make(**fields):
        defaults = {
            "canvas_course_id": next(_canvas_ids),
            "canvas_api_domain": "bcourses.example.edu",
            "name": "Introduction to Engagement",
            "active": True,
            "assetlibrary_url": "https://suitec.example.edu/assetlibrary/1",
            "engagementindex_url": "https://suitec.example.edu/engagementindex/1",
        }
        defaults.update(fields)
        course = Course(**defaults)
        db.session.add(course)
        db.session.commit()
        return course
    return _make


@pytest.fixture
def course(make_course):
    return make_course()


@pytest.fixture
def make_user(course):
    def _make(name="Student", admin=False, **fields):
        defaults = {
            "course_id": course.id,
            "canvas_user_id": next(_canvas_ids),
            "canvas_full_name": name,
            "canvas_course_role": ROLE_INSTRUCTOR if admin else ROLE_STUDENT,
            "canvas_email": f"{name.lower().replace(' ', '.')}@example.edu",
            "share_points": True,
            "points": 0,
        }
        defaults.update(fields)
        user = User(**defaults)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def instructor(make_user):
    return make_user("Ivy Instructor", admin=True)


@pytest.fixture
def make_asset(course):
    """Asset rows without any ledger side effects."""
    def _make(*owners, asset_type=ASSET_TYPE_LINK, title="An asset", **fields):
        asset = Asset(course_id=course.id, type=asset_type, title=title, url="https://example.com/a", **fields)
        asset.users = list(owners)
        db.session.add(asset)
        db.session.commit()
        return asset
    return _make


@pytest.fixture
def points_of():
    def _points(user) -> int:
        db.session.refresh(user)
        return user.points
    return _points
