import pytest
from shiftblock.engine.cascade import cascade_move
from shiftblock.engine.availability import (
    Placement,
    can_place_block,
    closed_reason,
    find_violations,
    is_slot_available,
    shares_resource,
    windows_overlap,
)
from shiftblock.models.entities import (
    EntityKind,
    Room,
    SchoolClass,
    SchoolSettings,
    SlotState,
    Teacher,
    TimeSlot,
)
from shiftblock.models.snapshot import Snapshot


class TestSlotResolution:
    """Layered open/closed resolution for school, teachers, classes and rooms."""

    def test_unconstrained_slot_is_open(self, scenario_single):
        assert is_slot_available(scenario_single, EntityKind.TEACHER, 1, TimeSlot(3, 4))

    def test_teacher_constraint_closes_slot(self):
        teacher = Teacher(id=1, constraints={TimeSlot(2, 3): SlotState.CLOSED})
        snapshot = Snapshot.build([], teachers=[teacher])
        assert not is_slot_available(snapshot, EntityKind.TEACHER, 1, TimeSlot(2, 3))
        assert is_slot_available(snapshot, EntityKind.TEACHER, 1, TimeSlot(2, 4))

    def test_override_note_reopens_closed_slot(self):
        """A non-empty override annotation re-opens a slot closed by the constraint map."""
        teacher = Teacher(
            id=1,
            constraints={TimeSlot(2, 3): SlotState.CLOSED},
            schedule_overrides={"2_3": "exam supervision swapped"},
        )
        snapshot = Snapshot.build([], teachers=[teacher])
        assert is_slot_available(snapshot, EntityKind.TEACHER, 1, TimeSlot(2, 3))

    @pytest.mark.parametrize("note", ["", "CLOSED", "moved to Friday"])
    def test_override_leaves_open_slot_open(self, note):
        """Overrides only re-open; they never close a slot the constraint map leaves open."""
        cls = SchoolClass(id=1, schedule_overrides={"1_1": note})
        snapshot = Snapshot.build([], classes=[cls])
        assert is_slot_available(snapshot, EntityKind.CLASS, 1, TimeSlot(1, 1))

    @pytest.mark.parametrize("note", ["", "  ", "closed"])
    def test_empty_or_marker_override_keeps_closed_slot_closed(self, note):
        teacher = Teacher(
            id=1,
            constraints={TimeSlot(1, 1): SlotState.CLOSED},
            schedule_overrides={"1_1": note},
        )
        snapshot = Snapshot.build([], teachers=[teacher])
        assert not is_slot_available(snapshot, EntityKind.TEACHER, 1, TimeSlot(1, 1))

    def test_empty_override_does_not_block_move(self, make_block, teachers):
        cls = SchoolClass(id=1, name="9A", schedule_overrides={"2_3": ""})
        snapshot = Snapshot.build([make_block(1, class_id=1, teachers=(1,))], teachers, [cls])
        result = cascade_move(snapshot, 1, 2, 3)
        assert result.success
        assert [(c.block_id, c.new_day, c.new_hour) for c in result.changes] == [(1, 2, 3)]

    def test_school_closure_beats_override(self):
        """Nothing re-opens a slot the school timetable closes."""
        teacher = Teacher(id=1, schedule_overrides={"1_1": "extra lesson"})
        school = SchoolSettings(default_timetable={TimeSlot(1, 1): SlotState.CLOSED})
        snapshot = Snapshot.build([], teachers=[teacher], school=school)
        assert not is_slot_available(snapshot, EntityKind.TEACHER, 1, TimeSlot(1, 1))
        assert not is_slot_available(snapshot, EntityKind.SCHOOL, 0, TimeSlot(1, 1))

    def test_room_constraint_closes_slot(self):
        room = Room(id=7, name="Lab", constraints={TimeSlot(1, 2): SlotState.CLOSED})
        snapshot = Snapshot.build([], rooms=[room])
        assert not is_slot_available(snapshot, EntityKind.ROOM, 7, TimeSlot(1, 2))

    def test_open_default_slot_extends_day(self):
        school = SchoolSettings(max_hours=8, default_timetable={TimeSlot(3, 9): SlotState.OPEN})
        assert school.effective_max_hours == 9


class TestCanPlaceBlock:
    """Legality of a single block window."""

    def test_own_window_never_collides(self, scenario_single):
        block = scenario_single.blocks[1]
        ok, reason = can_place_block(block, 1, 1, scenario_single)
        assert ok
        assert reason == ""

    def test_window_past_end_of_day(self, scenario_single):
        block = scenario_single.blocks[1]
        ok, reason = can_place_block(block, 1, 8, scenario_single)
        assert not ok
        assert "end of the day" in reason

    def test_day_out_of_range(self, scenario_single):
        ok, reason = can_place_block(scenario_single.blocks[1], 6, 1, scenario_single)
        assert not ok
        assert "day 6" in reason

    def test_collision_names_other_block(self, make_block, teachers, classes):
        snapshot = Snapshot.build(
            [make_block(1, teachers=(1,), class_id=1), make_block(2, teachers=(1,), class_id=2, day=2, hour=2)],
            teachers,
            classes,
        )
        ok, reason = can_place_block(snapshot.blocks[1], 2, 2, snapshot)
        assert not ok
        assert reason == "overlaps block 2"

    def test_closed_slot_names_entity(self, make_block, classes):
        teacher = Teacher(id=1, name="Ms. Kaya", constraints={TimeSlot(2, 1): SlotState.CLOSED})
        snapshot = Snapshot.build([make_block(1)], [teacher], classes)
        ok, reason = can_place_block(snapshot.blocks[1], 2, 1, snapshot)
        assert not ok
        assert "Ms. Kaya" in reason

    def test_daily_cap(self, make_block, classes):
        teacher = Teacher(id=1, name="T1", max_hours_per_day=2)
        blocks = [
            make_block(1, class_id=1, day=1, hour=1),
            make_block(2, class_id=2, day=1, hour=2),
            make_block(3, class_id=3, day=2, hour=1),
        ]
        snapshot = Snapshot.build(blocks, [teacher], classes)
        ok, reason = can_place_block(snapshot.blocks[3], 1, 4, snapshot)
        assert not ok
        assert "3h on day 1" in reason

    def test_weekly_cap(self, make_block, classes):
        teacher = Teacher(id=1, name="T1", max_hours_per_week=2)
        blocks = [make_block(1, class_id=1, day=1, hour=1), make_block(2, class_id=2, day=2, hour=1)]
        snapshot = Snapshot.build(blocks, [teacher], classes)
        # Moving within the week keeps the weekly load unchanged
        ok, _ = can_place_block(snapshot.blocks[2], 3, 1, snapshot)
        assert ok

    def test_lifted_block_frees_window(self, make_block, teachers, classes):
        snapshot = Snapshot.build([make_block(1), make_block(2, day=2)], teachers, classes)
        placement = Placement(snapshot)
        assert placement.colliding(snapshot.blocks[2], 1, 1) == [1]
        placement.lift(1)
        assert placement.colliding(snapshot.blocks[2], 1, 1) == []


class TestHelpers:
    """Overlap and resource sharing."""

    @pytest.mark.parametrize("a, b, expected", [
        ((1, 2), (2, 1), True),
        ((1, 2), (3, 1), False),
        ((3, 1), (1, 3), True),
    ])
    def test_windows_overlap(self, a, b, expected):
        assert windows_overlap(a[0], a[1], b[0], b[1]) == expected

    def test_shares_room(self, make_block):
        a = make_block(1, class_id=1, teachers=(1,), room_id=5)
        b = make_block(2, class_id=2, teachers=(2,), room_id=5)
        c = make_block(3, class_id=3, teachers=(3,))
        assert shares_resource(a, b)
        assert not shares_resource(a, c)

    def test_closed_reason_none_for_open_window(self, scenario_single):
        assert closed_reason(scenario_single, scenario_single.blocks[1], 3, 3) is None


class TestFindViolations:
    """Global invariant checker."""

    def test_clean_snapshot(self, scenario_two_level):
        assert find_violations(scenario_two_level) == []

    def test_double_booking_reported(self, make_block, teachers, classes):
        snapshot = Snapshot.build(
            [make_block(1, class_id=1, teachers=(1,)), make_block(2, class_id=2, teachers=(1,))], teachers, classes
        )
        issues = find_violations(snapshot)
        assert issues == ["blocks 1 and 2 are double-booked on day 1"]
