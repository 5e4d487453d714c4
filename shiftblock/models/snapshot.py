import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List

from shiftblock.models.entities import BlockChange, DistributionBlock, Room, SchoolClass, SchoolSettings, Teacher


@dataclass(frozen=True)
class Snapshot:
    """
    Read-only view of one timetable, taken before a move computation starts.

    Engines never mutate a snapshot; `with_changes` returns a new one with the
    listed blocks relocated and every other object shared.
    """

    blocks: Dict[int, DistributionBlock]
    teachers: Dict[int, Teacher] = field(default_factory=dict)
    classes: Dict[int, SchoolClass] = field(default_factory=dict)
    rooms: Dict[int, Room] = field(default_factory=dict)
    school: SchoolSettings = field(default_factory=SchoolSettings)
    revision: int = 0

    @classmethod
    def build(
        cls,
        blocks: Iterable[DistributionBlock],
        teachers: Iterable[Teacher] = (),
        classes: Iterable[SchoolClass] = (),
        rooms: Iterable[Room] = (),
        school: SchoolSettings = None,
        revision: int = 0,
    ) -> "Snapshot":
        return cls(
            blocks={b.id: b for b in blocks},
            teachers={t.id: t for t in teachers},
            classes={c.id: c for c in classes},
            rooms={r.id: r for r in rooms},
            school=school or SchoolSettings(),
            revision=revision,
        )

    def placed_blocks(self) -> List[DistributionBlock]:
        return [b for b in self.blocks.values() if b.is_placed]

    def with_changes(self, changes: Iterable[BlockChange]) -> "Snapshot":
        blocks = dict(self.blocks)
        for change in changes:
            blocks[change.block_id] = replace(blocks[change.block_id], day=change.new_day, hour=change.new_hour)
        return replace(self, blocks=blocks)

    def fingerprint(self) -> str:
        """Hash of the revision and every block window; used as a cache key component."""
        windows = sorted((b.id, b.day, b.hour, b.duration, b.is_locked) for b in self.blocks.values())
        data = json.dumps({"revision": self.revision, "windows": windows})
        return hashlib.sha256(data.encode()).hexdigest()[:16]
