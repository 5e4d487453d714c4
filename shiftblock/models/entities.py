from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


CLOSED_MARKER = "CLOSED"
DAY_NAMES = ("", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class SlotState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class PlacementMode(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class EntityKind(str, Enum):
    SCHOOL = "school"
    TEACHER = "teacher"
    CLASS = "class"
    ROOM = "room"


class FailureKind(str, Enum):
    INVALID_REQUEST = "invalid_request"
    LOCKED_BLOCK = "locked_block_violation"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNRESOLVABLE_CASCADE = "unresolvable_cascade"


@dataclass(frozen=True, order=True)
class TimeSlot:
    day: int
    hour: int

    @property
    def cell_key(self) -> str:
        """Key used by schedule-override maps, e.g. ``"2_5"``."""
        return f"{self.day}_{self.hour}"

    @classmethod
    def from_cell_key(cls, key: str) -> "TimeSlot":
        day, hour = key.split("_")
        return cls(int(day), int(hour))

    def label(self) -> str:
        name = DAY_NAMES[self.day] if 0 < self.day < len(DAY_NAMES) else f"Day{self.day}"
        return f"{name} {self.hour}"


@dataclass(frozen=True)
class DistributionBlock:
    id: int
    class_id: int
    lesson_id: int
    lesson_code: str
    teacher_ids: FrozenSet[int]
    duration: int = 1
    day: int = 0  # 0 = not placed
    hour: int = 0
    room_id: Optional[int] = None
    is_locked: bool = False
    is_manual: bool = False

    @property
    def is_placed(self) -> bool:
        return self.day > 0 and self.hour > 0

    @property
    def slot(self) -> TimeSlot:
        return TimeSlot(self.day, self.hour)

    def hours(self, hour: Optional[int] = None) -> range:
        start = self.hour if hour is None else hour
        return range(start, start + self.duration)


@dataclass(frozen=True)
class Teacher:
    id: int
    name: str = ""
    constraints: Dict[TimeSlot, SlotState] = field(default_factory=dict)
    schedule_overrides: Dict[str, str] = field(default_factory=dict)  # "day_hour" -> note
    max_hours_per_day: Optional[int] = None
    max_hours_per_week: Optional[int] = None


@dataclass(frozen=True)
class SchoolClass:
    id: int
    name: str = ""
    constraints: Dict[TimeSlot, SlotState] = field(default_factory=dict)
    schedule_overrides: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Room:
    id: int
    name: str = ""
    constraints: Dict[TimeSlot, SlotState] = field(default_factory=dict)


@dataclass(frozen=True)
class SchoolSettings:
    max_days: int = 5
    max_hours: int = 8
    default_timetable: Dict[TimeSlot, SlotState] = field(default_factory=dict)
    name: str = ""

    @property
    def effective_max_hours(self) -> int:
        # Open default-timetable slots past the configured day length extend it.
        open_hours = [s.hour for s, state in self.default_timetable.items() if state == SlotState.OPEN]
        return max([self.max_hours] + open_hours)


@dataclass(frozen=True)
class BlockChange:
    block_id: int
    old_day: int
    old_hour: int
    new_day: int
    new_hour: int
    description: str = ""


@dataclass(frozen=True)
class MoveResult:
    success: bool
    message: str
    changes: Tuple[BlockChange, ...] = ()
    failure: Optional[FailureKind] = None

    @classmethod
    def ok(cls, message: str, changes: Tuple[BlockChange, ...] = ()) -> "MoveResult":
        return cls(success=True, message=message, changes=tuple(changes))

    @classmethod
    def fail(cls, failure: FailureKind, message: str) -> "MoveResult":
        return cls(success=False, message=message, changes=(), failure=failure)
