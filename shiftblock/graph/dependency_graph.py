from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Set, Tuple

from shiftblock.models.entities import SlotState
from shiftblock.models.snapshot import Snapshot

# Edge weight added per shared relation, in the order relations are collected.
RELATION_WEIGHTS = {
    "class": 1.0,
    "lesson": 5.0,
    "team": 10.0,
    "room": 1.5,
}


@dataclass
class Node:
    id: str
    label: str
    stress: float
    lesson_count: int
    class_count: int
    room_count: int
    relation_count: int = 0


@dataclass
class Edge:
    source: str
    target: str
    weight: float
    label: str
    type: str


@dataclass
class DependencyAnalysis:
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    overall_strain: float = 0.0


def _node_id(teacher_id: int) -> str:
    return f"t_{teacher_id}"


def build_teacher_graph(snapshot: Snapshot) -> Dict[Tuple[int, int], Dict[str, List[str]]]:
    """
    Pair up teachers that constrain each other.

    Returns {(teacher_a, teacher_b): {relation_type: [labels]}} with a < b.
    Teachers co-teaching one block form a team; teachers of the same class,
    of the same lesson or sharing a room are related more loosely.
    """
    pairs: Dict[Tuple[int, int], Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))

    def link(teacher_ids: Iterable[int], relation: str, label: str) -> None:
        for a, b in combinations(sorted(set(teacher_ids)), 2):
            pairs[(a, b)][relation].append(label)

    blocks = sorted(snapshot.blocks.values(), key=lambda b: b.id)

    by_class: Dict[int, Set[int]] = defaultdict(set)
    by_lesson: Dict[int, Set[int]] = defaultdict(set)
    by_room: Dict[int, Set[int]] = defaultdict(set)
    lesson_codes: Dict[int, str] = {}
    team_blocks = []
    for block in blocks:
        by_class[block.class_id] |= block.teacher_ids
        by_lesson[block.lesson_id] |= block.teacher_ids
        lesson_codes.setdefault(block.lesson_id, block.lesson_code)
        if block.room_id is not None:
            by_room[block.room_id] |= block.teacher_ids
        if len(block.teacher_ids) > 1:
            team_blocks.append(block)

    for class_id, tids in sorted(by_class.items()):
        cls = snapshot.classes.get(class_id)
        link(tids, "class", f"Class ({cls.name if cls and cls.name else class_id})")
    for lesson_id, tids in sorted(by_lesson.items()):
        link(tids, "lesson", f"Lesson ({lesson_codes[lesson_id] or lesson_id})")
    for block in team_blocks:
        link(block.teacher_ids, "team", f"Team teaching ({block.lesson_code})")
    for room_id, tids in sorted(by_room.items()):
        room = snapshot.rooms.get(room_id)
        link(tids, "room", f"Room ({room.name if room and room.name else room_id})")
    return pairs


def analyze(snapshot: Snapshot) -> DependencyAnalysis:
    """
    Teacher dependency and stress analysis.

    Stress is weekly load over open slots, as a percentage capped at 100.
    A teacher with no open slot at all scores 100.
    """
    school = snapshot.school
    total_slots = school.max_days * school.effective_max_hours
    result = DependencyAnalysis()
    nodes: Dict[int, Node] = {}

    for tid, teacher in sorted(snapshot.teachers.items()):
        own = [b for b in snapshot.blocks.values() if tid in b.teacher_ids]
        load = sum(b.duration for b in own)
        if load == 0:
            continue
        closed = sum(1 for state in teacher.constraints.values() if state == SlotState.CLOSED)
        open_slots = total_slots - closed
        ratio = load / open_slots if open_slots > 0 else 2.0
        nodes[tid] = Node(
            id=_node_id(tid),
            label=teacher.name or str(tid),
            stress=min(100.0, ratio * 100),
            lesson_count=load,
            class_count=len({b.class_id for b in own}),
            room_count=len({b.room_id for b in own if b.room_id is not None}),
        )

    for (a, b), relations in sorted(build_teacher_graph(snapshot).items()):
        if a not in nodes or b not in nodes:
            continue
        nodes[a].relation_count += 1
        nodes[b].relation_count += 1
        labels = list(dict.fromkeys(label for labels in relations.values() for label in labels))
        result.edges.append(
            Edge(
                source=_node_id(a),
                target=_node_id(b),
                weight=sum(RELATION_WEIGHTS[kind] * len(labels) for kind, labels in relations.items()),
                label=", ".join(labels),
                type=",".join(relations),
            )
        )

    result.nodes = list(nodes.values())
    if result.nodes:
        result.overall_strain = sum(n.stress for n in result.nodes) / len(result.nodes)
    return result
