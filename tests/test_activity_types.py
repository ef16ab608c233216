import pytest

from activity_types import (
    ACTIVITY_TYPES,
    ActivityType,
    configured_points,
    edit_activity_type_configuration,
    get_activity_type_configuration,
    get_configuration_by_type,
    is_recipient_type,
    parse_activity_type,
)
from errors import AuthorizationError, ValidationError
from models_activity import ActivityTypeOverride


def test_defaults_cover_every_type(course):
    configuration = get_activity_type_configuration(course.id)

    assert [c["type"] for c in configuration] == [t.value for t in ActivityType]
    by_type = {c["type"]: c for c in configuration}
    assert by_type["add_asset"]["points"] == 5
    assert by_type["submit_assignment"]["points"] == 20
    assert by_type["view_asset"]["points"] == 0
    assert all(c["enabled"] for c in configuration)


def test_every_reciprocal_is_a_recipient_type():
    for activity_type, definition in ACTIVITY_TYPES.items():
        if definition.reciprocal is not None:
            assert is_recipient_type(definition.reciprocal), activity_type
            assert not is_recipient_type(activity_type)


def test_parse_rejects_unknown_types():
    assert parse_activity_type("like") is ActivityType.LIKE
    with pytest.raises(ValidationError):
        parse_activity_type("poke")


def test_override_points_and_enabled(course, instructor):
    edit_activity_type_configuration(course.id, [
        {"type": "like", "points": 4},
        {"type": "add_asset", "enabled": False},
    ], user=instructor)

    by_type = get_configuration_by_type(course.id)
    assert by_type["like"]["points"] == 4
    assert by_type["like"]["enabled"] is True
    # Disabling keeps the configured points, but nothing is earned.
    assert by_type["add_asset"]["points"] == 5
    assert by_type["add_asset"]["enabled"] is False
    assert configured_points(course.id, "add_asset") == 0
    assert configured_points(course.id, ActivityType.LIKE) == 4


def test_partial_override_inherits_the_other_field(course, instructor):
    edit_activity_type_configuration(course.id, [{"type": "pin_asset", "enabled": False}], user=instructor)
    edit_activity_type_configuration(course.id, [{"type": "pin_asset", "points": 7}], user=instructor)

    override = ActivityTypeOverride.query.filter_by(course_id=course.id, type="pin_asset").one()
    assert override.points == 7
    assert override.enabled is False


def test_overrides_are_course_scoped(course, make_course, instructor):
    other = make_course()
    edit_activity_type_configuration(course.id, [{"type": "like", "points": 9}], user=instructor)

    assert configured_points(course.id, "like") == 9
    assert configured_points(other.id, "like") == 1


@pytest.mark.parametrize("updates", [
    [],
    None,
    [{"type": "like"}],
    [{"type": "poke", "points": 1}],
    [{"type": "like", "points": -1}],
    [{"type": "like", "points": "3"}],
    [{"type": "like", "points": True}],
    [{"type": "like", "enabled": "yes"}],
])
def test_invalid_updates_are_rejected(course, instructor, updates):
    with pytest.raises(ValidationError):
        edit_activity_type_configuration(course.id, updates, user=instructor)
    assert ActivityTypeOverride.query.count() == 0


def test_one_invalid_update_rejects_the_whole_batch(course, instructor):
    with pytest.raises(ValidationError):
        edit_activity_type_configuration(course.id, [
            {"type": "like", "points": 2},
            {"type": "dislike", "points": -2},
        ], user=instructor)
    assert configured_points(course.id, "like") == 1


def test_only_admins_edit(course, make_user):
    student = make_user("Sam Student")
    with pytest.raises(AuthorizationError) as exc:
        edit_activity_type_configuration(course.id, [{"type": "like", "points": 2}], user=student)
    assert exc.value.code == 401
