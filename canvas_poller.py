"""Canvas reconciliation poller.

Run one pass over every active course, one course at a time:

1. tabs         clear tool URLs whose tab is gone or hidden; no tools left -> inactive
2. users        upsert enrolled users, mark users missing from Canvas inactive
3. assignments  keep submission categories in step and record `submit_assignment`
4. discussions  record topics, entries and replies (never for self-replies)
5. deactivation course with no activity for the threshold -> inactive

A failing step is logged and the rest of that course is skipped until the next
pass; it never stops the other courses. Course starts are paced by a
`MinimumIntervalScheduler` so the LMS only ever sees one course at a time.

Run this as a worker service:
  python canvas_poller.py

Environment:
- CANVAS_CLIENT_FACTORY         dotted path of a callable returning the LMS client
- ATTACHMENT_STORAGE_FACTORY    optional, dotted path of a callable returning the storage
- ENABLE_ASSIGNMENT_CATEGORIES  1 to import visible assignment submissions as assets
- CANVAS_POLLING_INTERVAL_SECONDS
- MINIMUM_INTERVAL_BETWEEN_COURSES_MS
- COURSE_DEACTIVATION_THRESHOLD_DAYS (0 disables deactivation)
"""

from __future__ import annotations

import logging
import os
import time
from collections import defaultdict
from datetime import datetime

from werkzeug.utils import import_string

from app import create_app
from extensions import db
from activity import create_activity, get_activities, get_last_activity_for_course, update_activity
from activity_types import (
    OBJECT_TYPE_CANVAS_DISCUSSION,
    OBJECT_TYPE_CANVAS_SUBMISSION,
    ActivityType,
    get_definition,
)
from assets import add_user_to_asset, create_file, create_link, delete_assets
from courses import deactivate_course, get_active_courses, get_course_users, get_or_create_user, update_course, update_users
from models_assets import Asset
from models_courses import (
    ENROLLMENT_ACTIVE,
    ENROLLMENT_COMPLETED,
    ENROLLMENT_INACTIVE,
    ENROLLMENT_STATES,
    ROLE_INSTRUCTOR,
    ROLE_STUDENT,
    TOOL_URL_FIELDS,
    Category,
    User,
)


log = logging.getLogger(__name__)

POLLING_INTERVAL = int(os.getenv("CANVAS_POLLING_INTERVAL_SECONDS", "300"))
MINIMUM_INTERVAL_BETWEEN_COURSES_MS = int(os.getenv("MINIMUM_INTERVAL_BETWEEN_COURSES_MS", "5000"))
COURSE_DEACTIVATION_THRESHOLD_DAYS = int(os.getenv("COURSE_DEACTIVATION_THRESHOLD_DAYS", "0"))
ENABLE_ASSIGNMENT_CATEGORIES = os.getenv("ENABLE_ASSIGNMENT_CATEGORIES", "0") == "1"

MAXIMUM_ASSIGNMENT_SUBMISSION_SIZE = 1_000_000_000
TEACHER_ENROLLMENTS = ("TeacherEnrollment",)
PENDING_SUBMISSION_STATES = ("unsubmitted", "pending_upload")
SYNCABLE_SUBMISSION_TYPES = ("online_url", "online_upload")
DISCUSSION_TYPES = (
    ActivityType.DISCUSSION_TOPIC,
    ActivityType.DISCUSSION_ENTRY,
    ActivityType.GET_DISCUSSION_ENTRY_REPLY,
)


class MinimumIntervalScheduler:
    """Token bucket of one: `wait()` returns no sooner than `min_interval` after the previous start."""

    def __init__(self, min_interval: float, clock=time.monotonic, sleep=time.sleep):
        self.min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep
        self._last_start = None

    def wait(self) -> float:
        now = self._clock()
        waited = 0.0
        if self._last_start is not None:
            remaining = self._last_start + self.min_interval - now
            if remaining > 0:
                self._sleep(remaining)
                waited = remaining
                now = self._clock()
        self._last_start = now
        return waited


def _is_pending(submission: dict) -> bool:
    if submission.get("workflow_state") in PENDING_SUBMISSION_STATES:
        return True
    if submission.get("submission_type") == "online_upload":
        return any(a.get("workflow_state") in PENDING_SUBMISSION_STATES for a in submission.get("attachments") or [])
    return False


class CanvasPoller:
    """Reconcile Canvas state into the ledger.

    `canvas` is the LMS client: get_course_tabs, get_course_sections, get_course_users,
    get_assignments, get_submissions, get_discussions, get_discussion_entries.
    `storage`, when given, re-hosts submission attachments and returns their URI.
    """

    def __init__(
        self,
        canvas,
        scheduler: MinimumIntervalScheduler | None = None,
        deactivation_threshold_days: int = COURSE_DEACTIVATION_THRESHOLD_DAYS,
        enable_assignment_categories: bool = False,
        storage=None,
        now=datetime.utcnow,
    ):
        self.canvas = canvas
        self.scheduler = scheduler or MinimumIntervalScheduler(MINIMUM_INTERVAL_BETWEEN_COURSES_MS / 1000.0)
        self.deactivation_threshold_days = deactivation_threshold_days
        self.enable_assignment_categories = enable_assignment_categories
        self.storage = storage
        self._now = now

    # ---- passes ----

    def run_once(self) -> int:
        courses = get_active_courses()
        log.info("Polling %d active courses", len(courses))
        for course in courses:
            self.scheduler.wait()
            self.handle_course(course)
        return len(courses)

    def run_forever(self, app, interval: int = POLLING_INTERVAL):
        log.info("Canvas poller started (interval %ss)", interval)
        while True:
            with app.app_context():
                try:
                    self.run_once()
                except Exception:
                    db.session.rollback()
                    log.exception("Canvas poll pass failed")
            time.sleep(interval)

    def _step(self, course, name, fn, *args):
        try:
            return True, fn(course, *args)
        except Exception:
            db.session.rollback()
            log.exception("Unable to %s for course %s, moving on to the next course", name, course.id)
            return False, None

    def handle_course(self, course) -> bool:
        """Run every step for one course; returns whether all of them completed."""
        log.info("Polling course %s", course.id)

        ok, _ = self._step(course, "poll tab configuration", self.poll_tab_configuration)
        if not ok:
            return False
        if not course.active:
            log.info("Skipping further syncing for inactive course %s", course.id)
            return True

        ok, users = self._step(course, "poll users", self.poll_users)
        if not ok:
            return False
        ok, _ = self._step(course, "poll assignments", self.poll_assignments, users)
        if not ok:
            return False
        ok, _ = self._step(course, "poll discussions", self.poll_discussions, users)
        if not ok:
            return False
        ok, _ = self._step(course, "check deactivation", self.check_deactivation)
        return ok

    # ---- 1. tabs ----

    def poll_tab_configuration(self, course) -> dict:
        tabs = self.canvas.get_course_tabs(course) or []
        updates = {}
        has_active_tools = False

        for field in TOOL_URL_FIELDS:
            url = getattr(course, field)
            if not url:
                continue
            tab = next((t for t in tabs if t and t.get("html_url") and url.endswith(t["html_url"])), None)
            if tab is None or tab.get("hidden"):
                log.info("No active tab for %s in course %s, clearing it", field, course.id)
                updates[field] = None
            else:
                has_active_tools = True

        if not has_active_tools:
            log.info("No active SuiteC tools in course %s, marking it inactive", course.id)
            updates["active"] = False

        if updates:
            update_course(course, updates)
        return updates

    # ---- 2. users ----

    def poll_users(self, course) -> dict[int, User]:
        users = {u.canvas_user_id: u for u in get_course_users(course)}
        canvas_users = self.canvas.get_course_users(course) or []
        sections = self.canvas.get_course_sections(course) or []
        log.info("Got %d users and %d sections from Canvas for course %s", len(canvas_users), len(sections), course.id)

        user_sections = defaultdict(list)
        for section in sections:
            for student in section.get("students") or []:
                user_sections[student["id"]].append(section["name"])

        seen = set()
        for canvas_user in canvas_users:
            user = self._sync_user(course, users.get(canvas_user["id"]), canvas_user, user_sections.get(canvas_user["id"]))
            users[canvas_user["id"]] = user
            seen.add(user.id)

        unseen = [u.id for u in users.values() if u.id not in seen and u.canvas_enrollment_state != ENROLLMENT_INACTIVE]
        if unseen:
            log.debug("Marking %d users inactive in course %s", len(unseen), course.id)
            update_users(unseen, {"canvas_enrollment_state": ENROLLMENT_INACTIVE})
        return users

    def _sync_user(self, course, user, canvas_user: dict, sections) -> User:
        enrollment = next(
            (e for e in canvas_user.get("enrollments") or [] if e.get("course_id") == course.canvas_course_id),
            None,
        )
        state = ENROLLMENT_ACTIVE
        role = ROLE_STUDENT
        if enrollment is None:
            state = ENROLLMENT_COMPLETED
        else:
            if enrollment.get("enrollment_state") in ENROLLMENT_STATES:
                state = enrollment["enrollment_state"]
            if enrollment.get("role") in TEACHER_ENROLLMENTS:
                role = ROLE_INSTRUCTOR

        defaults = {
            "canvas_course_role": role,
            "canvas_course_sections": sections,
            "canvas_enrollment_state": state,
            "canvas_full_name": canvas_user.get("name") or "",
            "canvas_image": canvas_user.get("avatar_url") or None,
            "canvas_email": canvas_user.get("email") or None,
        }
        if user is not None and all(getattr(user, k) == v for k, v in defaults.items()):
            return user
        return get_or_create_user(canvas_user["id"], course, defaults)

    # ---- 3. assignments ----

    def poll_assignments(self, course, users: dict[int, User]) -> None:
        assignments = self.canvas.get_assignments(course) or []
        log.info("Got %d assignments from Canvas for course %s", len(assignments), course.id)
        categories = Category.query.filter_by(course_id=course.id).all()

        for assignment in assignments:
            try:
                self._handle_assignment(course, users, categories, assignment)
            except Exception:
                db.session.rollback()
                log.exception("Unable to sync assignment %s in course %s", assignment.get("id"), course.id)

        # Empty categories whose assignment disappeared are removed outright so they can be recreated later.
        assignment_ids = {a["id"] for a in assignments}
        for category in Category.query.filter_by(course_id=course.id).all():
            if category.canvas_assignment_id and category.asset_count == 0 and category.canvas_assignment_id not in assignment_ids:
                log.info("Removing category %s for a deleted assignment", category.id)
                db.session.delete(category)
        db.session.commit()

    def _handle_assignment(self, course, users, categories, assignment: dict) -> None:
        if not assignment.get("published"):
            return
        submission_types = assignment.get("submission_types") or []
        if submission_types and submission_types[0] == "discussion_topic":
            return

        category = self._sync_category(course, categories, assignment, submission_types)
        if category is not None:
            self._handle_submissions(course, users, assignment, category)

    def _sync_category(self, course, categories, assignment: dict, submission_types):
        category = next((c for c in categories if c.canvas_assignment_id == assignment["id"]), None)
        syncable = any(t in submission_types for t in SYNCABLE_SUBMISSION_TYPES)

        if not syncable and category is None:
            return None
        if not syncable and category.asset_count == 0:
            log.info("Removing non-syncable assignment category %s", category.id)
            categories.remove(category)
            db.session.delete(category)
            db.session.commit()
            return None

        name = assignment.get("name")
        if category is not None:
            if category.canvas_assignment_name != name:
                # Only follow the rename when the title was never customized.
                if category.title == category.canvas_assignment_name:
                    category.title = name
                category.canvas_assignment_name = name
                db.session.commit()
            return category

        category = Category(
            course_id=course.id,
            title=name,
            canvas_assignment_id=assignment["id"],
            canvas_assignment_name=name,
            visible=self.enable_assignment_categories,
        )
        db.session.add(category)
        db.session.commit()
        categories.append(category)
        return category

    def _handle_submissions(self, course, users, assignment: dict, category: Category) -> None:
        if not assignment.get("has_submitted_submissions"):
            return

        index = self._index_activities(
            course, ActivityType.SUBMIT_ASSIGNMENT, assignment["id"], OBJECT_TYPE_CANVAS_SUBMISSION
        )
        submissions = self.canvas.get_submissions(course, assignment) or []
        active = [s for s in submissions if not _is_pending(s)]
        log.info(
            "Got %d submissions for assignment %s, will process %d active submissions",
            len(submissions), assignment["id"], len(active),
        )

        imported = {"by_attachment_id": {}, "by_url": {}}
        for submission in active:
            try:
                self._handle_submission(course, users, assignment, category, index, imported, submission)
            except Exception:
                db.session.rollback()
                log.exception("Unable to sync submission %s for assignment %s", submission.get("id"), assignment["id"])

    def _handle_submission(self, course, users, assignment, category, index, imported, submission: dict) -> None:
        user = users.get(submission.get("user_id"))
        if user is None:
            return

        file_sync_enabled = bool(category.visible)
        metadata = {
            "submission_id": submission.get("id"),
            "attempt": submission.get("attempt"),
            "file_sync_enabled": file_sync_enabled,
        }
        activity, created = self._get_or_create(
            course, users, index, submission["user_id"], ActivityType.SUBMIT_ASSIGNMENT,
            assignment["id"], OBJECT_TYPE_CANVAS_SUBMISSION, metadata,
        )
        if not created:
            previous = activity.metadata_dict
            if previous.get("attempt") == metadata["attempt"] and previous.get("file_sync_enabled") == file_sync_enabled:
                return
            update_activity(activity, {"metadata": metadata})
        # Record the attempt before touching assets so a failing import is not repeated forever.
        db.session.commit()

        previous_assets = (
            Asset.query.filter(
                Asset.course_id == course.id,
                Asset.canvas_assignment_id == assignment["id"],
                Asset.deleted_at.is_(None),
                Asset.users.any(User.id == user.id),
            ).all()
        )
        if previous_assets:
            delete_assets(course, [a.id for a in previous_assets])

        if not file_sync_enabled:
            return

        opts = {"assignment": assignment["id"], "categories": [category.id], "skip_create_activity": True}
        submission_type = submission.get("submission_type")
        if submission_type == "online_url":
            url = submission.get("url")
            existing = imported["by_url"].get(url)
            if existing is not None:
                add_user_to_asset(existing, user)
            elif url:
                imported["by_url"][url] = create_link(course, user, url, opts=opts)
        elif submission_type == "online_upload":
            for attachment in submission.get("attachments") or []:
                self._import_attachment(course, user, imported, attachment, opts)

    def _import_attachment(self, course, user, imported, attachment: dict, opts: dict) -> None:
        if (attachment.get("size") or 0) > MAXIMUM_ASSIGNMENT_SUBMISSION_SIZE:
            return
        existing = imported["by_attachment_id"].get(attachment["id"])
        if existing is not None:
            add_user_to_asset(existing, user)
            return

        uri = self.storage.store_attachment(course, attachment) if self.storage else attachment.get("url")
        title = attachment.get("display_name") or attachment.get("filename")
        imported["by_attachment_id"][attachment["id"]] = create_file(
            course, user, title, uri, attachment.get("content-type"), opts=opts
        )

    # ---- 4. discussions ----

    def poll_discussions(self, course, users: dict[int, User]) -> None:
        discussions = self.canvas.get_discussions(course) or []
        log.info("Got %d discussions from Canvas for course %s", len(discussions), course.id)
        if not discussions:
            return

        index = self._index_activities(course, list(DISCUSSION_TYPES))
        for discussion in discussions:
            try:
                self._handle_discussion(course, users, index, discussion)
                db.session.commit()
            except Exception:
                db.session.rollback()
                log.exception("Unable to sync discussion %s in course %s", discussion.get("id"), course.id)

    def _handle_discussion(self, course, users, index, discussion: dict) -> None:
        if not discussion.get("published"):
            return
        topic_id = discussion["id"]
        author_id = (discussion.get("author") or {}).get("id")

        # Assigned discussions are set up by instructors and earn nothing.
        if not discussion.get("assignment"):
            self._get_or_create(
                course, users, index, author_id, ActivityType.DISCUSSION_TOPIC, topic_id, OBJECT_TYPE_CANVAS_DISCUSSION
            )

        if not discussion.get("discussion_subentry_count"):
            return

        for entry in self.canvas.get_discussion_entries(course, discussion) or []:
            if entry.get("user_id") != author_id:
                self._get_or_create(
                    course, users, index, entry.get("user_id"), ActivityType.DISCUSSION_ENTRY, topic_id,
                    OBJECT_TYPE_CANVAS_DISCUSSION, {"entryId": entry["id"]},
                )
            replies = entry.get("recent_replies") or []
            for reply in replies:
                self._handle_reply(course, users, index, topic_id, entry, replies, reply)

    def _handle_reply(self, course, users, index, topic_id, entry, replies, reply: dict) -> None:
        if reply.get("parent_id") == entry["id"]:
            parent = entry
        else:
            parent = next((r for r in replies if r["id"] == reply.get("parent_id")), None)
        if parent is None:
            log.debug("Could not find parent %s for discussion reply %s", reply.get("parent_id"), reply.get("id"))
            return
        if reply.get("user_id") == parent.get("user_id"):
            return

        entry_activity, _ = self._get_or_create(
            course, users, index, reply.get("user_id"), ActivityType.DISCUSSION_ENTRY, topic_id,
            OBJECT_TYPE_CANVAS_DISCUSSION, {"entryId": reply["id"]},
        )
        metadata = {"entryId": reply["id"]}
        if entry_activity is not None:
            metadata["reciprocalId"] = entry_activity.id
        self._get_or_create(
            course, users, index, parent.get("user_id"), ActivityType.GET_DISCUSSION_ENTRY_REPLY, topic_id,
            OBJECT_TYPE_CANVAS_DISCUSSION, metadata, canvas_actor_id=reply.get("user_id"),
        )

    # ---- 5. deactivation ----

    def check_deactivation(self, course) -> bool:
        if not self.deactivation_threshold_days:
            return False
        last_activity = get_last_activity_for_course(course)
        if last_activity is None:
            return False
        if (self._now() - last_activity.created_at).days < self.deactivation_threshold_days:
            return False
        log.warning("Deactivating course %s, last activity at %s", course.id, last_activity.created_at.isoformat())
        deactivate_course(course)
        return True

    # ---- ledger helpers ----

    def _index_activities(self, course, types, object_id=None, object_type=None) -> dict:
        return {
            (a.user_id, a.type, a.identity_key): a
            for a in get_activities(course, types, object_id, object_type)
        }

    def _get_or_create(
        self, course, users, index, canvas_user_id, activity_type, object_id, object_type,
        metadata=None, canvas_actor_id=None,
    ):
        """Create an activity unless this pass (or an earlier one) already recorded it.

        Users unknown to the course produce nothing.
        """
        user = users.get(canvas_user_id)
        if user is None:
            return None, False
        actor = None
        if canvas_actor_id is not None:
            actor = users.get(canvas_actor_id)
            if actor is None:
                return None, False

        definition = get_definition(activity_type)
        actor_id = actor.id if actor is not None else user.id
        key = (user.id, activity_type.value, definition.identity_key(object_type, object_id, actor_id, metadata))
        existing = index.get(key)
        if existing is not None:
            return existing, False

        activity, created = create_activity(course, user, activity_type, object_id, object_type, metadata, actor=actor)
        index[key] = activity
        return activity, created


def load_factory(env_name: str, required: bool = True):
    path = os.getenv(env_name)
    if not path:
        if required:
            raise RuntimeError(f"{env_name} must name a factory, e.g. mypackage.canvas:make_client")
        return None
    return import_string(path)


def main():
    app = create_app()
    canvas = load_factory("CANVAS_CLIENT_FACTORY")()
    storage_factory = load_factory("ATTACHMENT_STORAGE_FACTORY", required=False)
    poller = CanvasPoller(
        canvas,
        enable_assignment_categories=ENABLE_ASSIGNMENT_CATEGORIES,
        storage=storage_factory() if storage_factory else None,
    )
    poller.run_forever(app, POLLING_INTERVAL)


if __name__ == "__main__":
    main()
