from datetime import datetime, timedelta
from unittest import mock

import pytest

from activity import get_activities
from activity_types import ActivityType, edit_activity_type_configuration
from canvas_poller import CanvasPoller, MinimumIntervalScheduler
from errors import ExternalServiceError
from extensions import db
from models_activity import Activity
from models_assets import Asset
from models_courses import ENROLLMENT_INACTIVE, ROLE_INSTRUCTOR, Category, User


ALICE, BOB, CAROL, TEACHER = 11, 12, 13, 99


def canvas_user(canvas_id, name, course, role="StudentEnrollment", state="active"):
    return {
        "id": canvas_id,
        "name": name,
        "email": f"{name.lower()}@example.edu",
        "avatar_url": f"https://canvas.example.edu/avatars/{canvas_id}",
        "enrollments": [{"course_id": course.canvas_course_id, "role": role, "enrollment_state": state}],
    }


@pytest.fixture
def canvas(course):
    canvas = mock.Mock()
    canvas.get_course_tabs.return_value = [
        {"html_url": "/assetlibrary/1", "hidden": False},
        {"html_url": "/engagementindex/1", "hidden": False},
    ]
    canvas.get_course_sections.return_value = [
        {"name": "Lab 101", "students": [{"id": ALICE}, {"id": BOB}]},
    ]
    canvas.get_course_users.return_value = [
        canvas_user(ALICE, "Alice", course),
        canvas_user(BOB, "Bob", course),
        canvas_user(CAROL, "Carol", course),
        canvas_user(TEACHER, "Teacher", course, role="TeacherEnrollment"),
    ]
    canvas.get_assignments.return_value = []
    canvas.get_submissions.return_value = []
    canvas.get_discussions.return_value = []
    canvas.get_discussion_entries.return_value = []
    return canvas


@pytest.fixture
def poller(canvas):
    scheduler = MinimumIntervalScheduler(0, clock=lambda: 0.0, sleep=mock.Mock())
    return CanvasPoller(canvas, scheduler=scheduler, deactivation_threshold_days=0)


def _user(canvas_id):
    return User.query.filter_by(canvas_user_id=canvas_id).one()


def test_scheduler_spaces_out_course_starts():
    now = [100.0]
    sleep = mock.Mock(side_effect=lambda seconds: now.__setitem__(0, now[0] + seconds))
    scheduler = MinimumIntervalScheduler(5.0, clock=lambda: now[0], sleep=sleep)

    assert scheduler.wait() == 0.0
    now[0] += 2.0
    assert scheduler.wait() == pytest.approx(3.0)
    now[0] += 6.0
    assert scheduler.wait() == 0.0
    sleep.assert_called_once_with(pytest.approx(3.0))


# ---- tabs ----

def test_hidden_tab_clears_its_url(course, poller, canvas):
    canvas.get_course_tabs.return_value = [
        {"html_url": "/assetlibrary/1", "hidden": True},
        {"html_url": "/engagementindex/1", "hidden": False},
    ]

    poller.poll_tab_configuration(course)

    assert course.assetlibrary_url is None
    assert course.engagementindex_url is not None
    assert course.active is True


def test_course_without_tools_is_deactivated_and_skipped(course, poller, canvas):
    canvas.get_course_tabs.return_value = []

    assert poller.handle_course(course) is True

    db.session.refresh(course)
    assert course.active is False
    canvas.get_course_users.assert_not_called()


# ---- users ----

def test_users_are_upserted(course, poller):
    users = poller.poll_users(course)

    assert set(users) == {ALICE, BOB, CAROL, TEACHER}
    alice = _user(ALICE)
    assert alice.canvas_full_name == "Alice"
    assert alice.canvas_course_sections == ["Lab 101"]
    assert alice.canvas_email == "alice@example.edu"
    assert _user(TEACHER).canvas_course_role == ROLE_INSTRUCTOR
    assert _user(TEACHER).is_admin


def test_users_missing_from_canvas_become_inactive(course, poller, canvas):
    poller.poll_users(course)
    canvas.get_course_users.return_value = canvas.get_course_users.return_value[:2]

    poller.poll_users(course)

    assert _user(CAROL).canvas_enrollment_state == ENROLLMENT_INACTIVE
    assert _user(ALICE).canvas_enrollment_state == "active"


# ---- assignments ----

def _assignment(**fields):
    assignment = {
        "id": 500,
        "name": "Essay",
        "published": True,
        "submission_types": ["online_url"],
        "has_submitted_submissions": True,
    }
    assignment.update(fields)
    return assignment


def _submission(canvas_id, attempt=1, **fields):
    submission = {
        "id": 7000 + canvas_id,
        "user_id": canvas_id,
        "attempt": attempt,
        "workflow_state": "submitted",
        "submission_type": "online_url",
        "url": f"https://example.com/essay/{canvas_id}",
    }
    submission.update(fields)
    return submission


def test_submissions_are_recorded_once(course, poller, canvas, points_of):
    canvas.get_assignments.return_value = [_assignment()]
    canvas.get_submissions.return_value = [
        _submission(ALICE),
        _submission(BOB, workflow_state="unsubmitted"),
        _submission(404),
    ]

    users = poller.poll_users(course)
    poller.poll_assignments(course, users)
    poller.poll_assignments(course, users)

    activities = get_activities(course, ActivityType.SUBMIT_ASSIGNMENT)
    assert [a.user_id for a in activities] == [_user(ALICE).id]
    assert points_of(_user(ALICE)) == 20

    category = Category.query.filter_by(canvas_assignment_id=500).one()
    assert category.title == "Essay"
    assert category.visible is False
    # Hidden assignment categories do not import submissions as assets.
    assert Asset.query.count() == 0


def test_new_attempt_updates_without_double_credit(course, poller, canvas, instructor, points_of):
    canvas.get_assignments.return_value = [_assignment()]
    canvas.get_submissions.return_value = [_submission(ALICE, attempt=1)]
    users = poller.poll_users(course)
    poller.poll_assignments(course, users)

    edit_activity_type_configuration(course.id, [{"type": "submit_assignment", "points": 30}], user=instructor)
    canvas.get_submissions.return_value = [_submission(ALICE, attempt=2)]
    poller.poll_assignments(course, users)

    activity = get_activities(course, ActivityType.SUBMIT_ASSIGNMENT)[0]
    assert activity.metadata_dict["attempt"] == 2
    assert points_of(_user(ALICE)) == 20
    assert activity.points == 20


def test_resubmission_after_disabling_keeps_banked_points(course, poller, canvas, instructor, points_of):
    canvas.get_assignments.return_value = [_assignment()]
    canvas.get_submissions.return_value = [_submission(ALICE, attempt=1)]
    users = poller.poll_users(course)
    poller.poll_assignments(course, users)
    assert points_of(_user(ALICE)) == 20

    edit_activity_type_configuration(course.id, [{"type": "submit_assignment", "enabled": False}], user=instructor)
    canvas.get_submissions.return_value = [_submission(ALICE, attempt=2)]
    poller.poll_assignments(course, users)

    activities = get_activities(course, ActivityType.SUBMIT_ASSIGNMENT)
    assert len(activities) == 1
    assert activities[0].metadata_dict["attempt"] == 2
    assert activities[0].points == 20
    assert points_of(_user(ALICE)) == 20


def test_visible_category_imports_submissions_as_assets(course, canvas, points_of):
    poller = CanvasPoller(
        canvas,
        scheduler=MinimumIntervalScheduler(0, clock=lambda: 0.0, sleep=mock.Mock()),
        enable_assignment_categories=True,
    )
    canvas.get_assignments.return_value = [_assignment()]
    canvas.get_submissions.return_value = [_submission(ALICE)]
    users = poller.poll_users(course)
    poller.poll_assignments(course, users)

    first = Asset.query.filter_by(canvas_assignment_id=500).one()
    assert first.url == "https://example.com/essay/11"
    assert first.user_ids == [_user(ALICE).id]
    # Imported submissions earn submit_assignment only.
    assert points_of(_user(ALICE)) == 20

    canvas.get_submissions.return_value = [_submission(ALICE, attempt=2, url="https://example.com/essay/11/v2")]
    poller.poll_assignments(course, users)

    live = Asset.query.filter(Asset.canvas_assignment_id == 500, Asset.deleted_at.is_(None)).all()
    assert [a.url for a in live] == ["https://example.com/essay/11/v2"]


def test_group_upload_is_imported_once(course, canvas):
    storage = mock.Mock()
    storage.store_attachment.return_value = "s3://bucket/essay.pdf"
    poller = CanvasPoller(
        canvas,
        scheduler=MinimumIntervalScheduler(0, clock=lambda: 0.0, sleep=mock.Mock()),
        enable_assignment_categories=True,
        storage=storage,
    )
    attachment = {"id": 1, "display_name": "essay.pdf", "content-type": "application/pdf", "size": 10}
    canvas.get_assignments.return_value = [_assignment(submission_types=["online_upload"])]
    canvas.get_submissions.return_value = [
        _submission(ALICE, submission_type="online_upload", attachments=[attachment]),
        _submission(BOB, submission_type="online_upload", attachments=[attachment]),
    ]

    users = poller.poll_users(course)
    poller.poll_assignments(course, users)

    asset = Asset.query.one()
    assert asset.download_url == "s3://bucket/essay.pdf"
    assert sorted(asset.user_ids) == sorted([_user(ALICE).id, _user(BOB).id])
    storage.store_attachment.assert_called_once()


def test_one_failing_submission_does_not_stop_the_others(course, poller, canvas, points_of):
    canvas.get_assignments.return_value = [_assignment()]
    canvas.get_submissions.return_value = [_submission(ALICE), _submission(BOB)]
    users = poller.poll_users(course)

    real_handle = poller._handle_submission

    def flaky(course_, users_, assignment, category, index, imported, submission):
        if submission["user_id"] == ALICE:
            raise ExternalServiceError("attachment download failed")
        return real_handle(course_, users_, assignment, category, index, imported, submission)

    with mock.patch.object(poller, "_handle_submission", side_effect=flaky):
        poller.poll_assignments(course, users)

    assert points_of(_user(BOB)) == 20
    assert points_of(_user(ALICE)) == 0


def test_unpublished_and_discussion_assignments_are_ignored(course, poller, canvas):
    canvas.get_assignments.return_value = [
        _assignment(id=501, published=False),
        _assignment(id=502, submission_types=["discussion_topic"]),
    ]
    users = poller.poll_users(course)
    poller.poll_assignments(course, users)

    assert Category.query.count() == 0
    canvas.get_submissions.assert_not_called()


def test_empty_category_of_deleted_assignment_is_removed(course, poller, canvas):
    canvas.get_assignments.return_value = [_assignment(has_submitted_submissions=False)]
    users = poller.poll_users(course)
    poller.poll_assignments(course, users)
    assert Category.query.count() == 1

    canvas.get_assignments.return_value = []
    poller.poll_assignments(course, users)
    assert Category.query.count() == 0


# ---- discussions ----

def _discussion(**fields):
    discussion = {
        "id": 300,
        "published": True,
        "author": {"id": ALICE},
        "discussion_subentry_count": 3,
    }
    discussion.update(fields)
    return discussion


def test_discussion_topics_entries_and_replies(course, poller, canvas, points_of):
    canvas.get_discussions.return_value = [_discussion()]
    canvas.get_discussion_entries.return_value = [
        {
            "id": 1,
            "user_id": BOB,
            "recent_replies": [
                {"id": 2, "user_id": ALICE, "parent_id": 1},
                {"id": 3, "user_id": ALICE, "parent_id": 2},
                {"id": 4, "user_id": CAROL, "parent_id": 404},
            ],
        },
        {"id": 5, "user_id": ALICE, "recent_replies": []},
    ]

    users = poller.poll_users(course)
    poller.poll_discussions(course, users)
    poller.poll_discussions(course, users)

    alice, bob = _user(ALICE), _user(BOB)
    assert sorted(a.type for a in get_activities(course, user=alice)) == ["discussion_entry", "discussion_topic"]
    assert sorted(a.type for a in get_activities(course, user=bob)) == ["discussion_entry", "get_discussion_entry_reply"]

    reply_credit = get_activities(course, ActivityType.GET_DISCUSSION_ENTRY_REPLY)[0]
    entry_row = get_activities(course, ActivityType.DISCUSSION_ENTRY, user=alice)[0]
    assert reply_credit.actor_id == alice.id
    assert reply_credit.metadata_dict["reciprocalId"] == entry_row.id
    assert (points_of(alice), points_of(bob)) == (8, 4)


def test_assigned_and_unpublished_discussions(course, poller, canvas):
    canvas.get_discussions.return_value = [
        _discussion(id=301, assignment={"id": 9}, discussion_subentry_count=0),
        _discussion(id=302, published=False),
    ]
    users = poller.poll_users(course)
    poller.poll_discussions(course, users)

    assert Activity.query.count() == 0
    canvas.get_discussion_entries.assert_not_called()


# ---- deactivation and passes ----

def test_stale_course_is_deactivated(course, canvas, make_user):
    poller = CanvasPoller(canvas, deactivation_threshold_days=120, now=lambda: datetime.utcnow() + timedelta(days=200))
    user = make_user()
    db.session.add(Activity(
        course_id=course.id, user_id=user.id, actor_id=user.id, type="discussion_topic",
        object_type="canvas_discussion", object_id=1, identity_key="canvas_discussion:1", points=5,
        created_at=datetime.utcnow(),
    ))
    db.session.commit()

    assert poller.check_deactivation(course) is True
    assert course.active is False


def test_deactivation_disabled_by_default(course, poller):
    assert poller.check_deactivation(course) is False
    assert course.active is True


def test_failing_course_does_not_stop_the_pass(course, make_course, poller, canvas):
    other = make_course()
    calls = []

    def users_for(target):
        calls.append(target.id)
        if target.id == course.id:
            raise ExternalServiceError("Canvas returned 503")
        return []

    canvas.get_course_users.side_effect = users_for

    assert poller.run_once() == 2
    assert calls == [course.id, other.id]
    assert poller.handle_course(course) is False
    assert poller.scheduler._sleep.call_count == 0


def test_run_forever_survives_a_failing_pass(app, canvas):
    poller = CanvasPoller(canvas)
    with mock.patch.object(poller, "run_once", side_effect=[RuntimeError("boom"), 0]), \
            mock.patch("canvas_poller.time.sleep", side_effect=[None, KeyboardInterrupt]):
        with pytest.raises(KeyboardInterrupt):
            poller.run_forever(app, interval=1)
        assert poller.run_once.call_count == 2


# ---- worker entry point ----

def test_main_builds_the_poller_from_the_environment(app, monkeypatch):
    import canvas_poller

    client, storage = mock.Mock(), mock.Mock()
    factories = {"lms.client:make": lambda: client, "lms.storage:make": lambda: storage}
    monkeypatch.setenv("CANVAS_CLIENT_FACTORY", "lms.client:make")
    monkeypatch.setenv("ATTACHMENT_STORAGE_FACTORY", "lms.storage:make")

    with mock.patch.object(canvas_poller, "create_app", return_value=app), \
            mock.patch.object(canvas_poller, "import_string", side_effect=factories.__getitem__), \
            mock.patch.object(canvas_poller, "ENABLE_ASSIGNMENT_CATEGORIES", True), \
            mock.patch.object(CanvasPoller, "run_forever", autospec=True) as run_forever:
        canvas_poller.main()

    run_forever.assert_called_once_with(mock.ANY, app, canvas_poller.POLLING_INTERVAL)
    poller = run_forever.call_args[0][0]
    assert poller.canvas is client
    assert poller.storage is storage
    assert poller.enable_assignment_categories is True


def test_main_requires_a_canvas_client(app, monkeypatch):
    import canvas_poller

    monkeypatch.delenv("CANVAS_CLIENT_FACTORY", raising=False)
    with mock.patch.object(canvas_poller, "create_app", return_value=app), \
            mock.patch.object(CanvasPoller, "run_forever") as run_forever:
        with pytest.raises(RuntimeError):
            canvas_poller.main()
    run_forever.assert_not_called()


def test_optional_storage_factory_may_be_unset(monkeypatch):
    from canvas_poller import load_factory

    monkeypatch.delenv("ATTACHMENT_STORAGE_FACTORY", raising=False)
    assert load_factory("ATTACHMENT_STORAGE_FACTORY", required=False) is None
