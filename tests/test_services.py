import pytest
from shiftblock.graph.dependency_graph import analyze, build_teacher_graph
from shiftblock.models.entities import SchoolClass, SchoolSettings, SlotState, Teacher, TimeSlot
from shiftblock.models.snapshot import Snapshot
from shiftblock.utils.validation import validate


class TestValidation:
    """Four-score validation report and heatmap."""

    def test_clean_timetable(self, scenario_two_level):
        report = validate(scenario_two_level)
        assert report.assignment_completeness == 100
        assert report.teacher_availability == 100
        assert report.resource_balance == 100
        assert report.schedule_feasibility == 100
        assert report.critical_conflicts == []
        assert report.can_proceed

    def test_heatmap_cells(self, make_block):
        school = SchoolSettings(max_days=1, max_hours=3, default_timetable={TimeSlot(1, 3): SlotState.CLOSED})
        teachers = [Teacher(id=1), Teacher(id=2, constraints={TimeSlot(1, 2): SlotState.CLOSED})]
        snapshot = Snapshot.build([make_block(1, hour=1)], teachers, [SchoolClass(id=1)], school=school)

        report = validate(snapshot)
        assert report.heatmap == {1: {1: "2/1", 2: "1/0", 3: "-"}}

    def test_empty_cell_is_neutral(self):
        """A cell with no available teachers and nothing running is not a conflict."""
        snapshot = Snapshot.build([], school=SchoolSettings(max_days=1, max_hours=2))
        report = validate(snapshot)
        assert report.heatmap == {1: {1: "0/0", 2: "0/0"}}
        assert report.resource_balance == 100
        assert report.resource_issues == []

    def test_overbooked_slot(self, make_block, classes):
        teachers = [Teacher(id=1, constraints={TimeSlot(1, 1): SlotState.CLOSED})]
        snapshot = Snapshot.build([make_block(1)], teachers, classes)
        report = validate(snapshot)
        assert report.heatmap[1][1] == "0/1"
        assert report.resource_balance == 95
        # the block also sits in its teacher's closed slot
        assert report.teacher_availability == 90
        assert len(report.teacher_issues) == 1

    def test_unplaced_blocks_lower_completeness(self, make_block, teachers, classes):
        snapshot = Snapshot.build([make_block(1), make_block(2, class_id=2, day=0, hour=0)], teachers, classes)
        report = validate(snapshot)
        assert report.assignment_completeness == 50
        assert report.assignment_issues == ["Block 2 (L2) is not placed"]
        assert not report.can_proceed

    def test_capacity_shortfall(self, make_block):
        school = SchoolSettings(max_days=1, max_hours=2)
        blocks = [make_block(i, day=0, hour=0) for i in range(1, 4)]
        snapshot = Snapshot.build(blocks, [Teacher(id=1)], [SchoolClass(id=1)], school=school)

        report = validate(snapshot)
        assert len(report.schedule_issues) == 1
        # 40 for the shortfall, minus 25 for the overloaded teacher
        assert [c for c in report.critical_conflicts if "needs 3h" in c]
        assert report.schedule_feasibility == 15

    def test_double_booking_is_critical(self, make_block, teachers, classes):
        snapshot = Snapshot.build(
            [make_block(1, class_id=1, teachers=(1,)), make_block(2, class_id=2, teachers=(1,))], teachers, classes
        )
        report = validate(snapshot)
        assert report.critical_conflicts == ["[CRITICAL] blocks 1 and 2 are double-booked on day 1"]
        assert report.schedule_feasibility == 75


class TestDependencyAnalysis:
    """Teacher dependency graph and stress."""

    @pytest.fixture
    def snapshot(self, make_block, teachers, classes):
        blocks = [
            make_block(1, class_id=1, teachers=(1, 2), lesson_id=1),
            make_block(2, class_id=1, teachers=(1,), lesson_id=2, hour=2),
            make_block(3, class_id=2, teachers=(3,), lesson_id=1, room_id=1),
            make_block(4, class_id=2, teachers=(2,), lesson_id=3, room_id=1, hour=2),
        ]
        return Snapshot.build(blocks, teachers, classes)

    def test_edges(self, snapshot):
        edges = {(e.source, e.target): e for e in analyze(snapshot).edges}
        assert set(edges) == {("t_1", "t_2"), ("t_1", "t_3"), ("t_2", "t_3")}
        assert edges[("t_1", "t_2")].weight == pytest.approx(16.0)
        assert edges[("t_1", "t_2")].type == "class,lesson,team"
        assert edges[("t_1", "t_3")].weight == pytest.approx(5.0)
        assert edges[("t_1", "t_3")].type == "lesson"
        assert edges[("t_2", "t_3")].weight == pytest.approx(7.5)
        assert edges[("t_2", "t_3")].type == "class,lesson,room"

    def test_nodes_and_stress(self, snapshot):
        analysis = analyze(snapshot)
        nodes = {n.id: n for n in analysis.nodes}
        # teachers without blocks are left out
        assert set(nodes) == {"t_1", "t_2", "t_3"}
        assert nodes["t_1"].stress == pytest.approx(5.0)
        assert nodes["t_3"].stress == pytest.approx(2.5)
        assert nodes["t_1"].lesson_count == 2
        assert nodes["t_2"].class_count == 2
        assert nodes["t_2"].room_count == 1
        assert all(n.relation_count == 2 for n in analysis.nodes)
        assert analysis.overall_strain == pytest.approx(12.5 / 3)

    def test_closed_slots_raise_stress(self, make_block, classes):
        closed = {TimeSlot(d, h): SlotState.CLOSED for d in range(1, 6) for h in range(1, 9) if h > 2}
        snapshot = Snapshot.build([make_block(1)], [Teacher(id=1, constraints=closed)], classes)
        assert analyze(snapshot).nodes[0].stress == pytest.approx(10.0)

    def test_pairs_are_ordered(self, snapshot):
        assert all(a < b for a, b in build_teacher_graph(snapshot))

    def test_empty_snapshot(self):
        analysis = analyze(Snapshot.build([]))
        assert analysis.nodes == []
        assert analysis.edges == []
        assert analysis.overall_strain == 0.0
