from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

DEFAULT_TEMPO = 500000  # µs per beat (120 BPM)
DEFAULT_TICKS_PER_BEAT = 480

# Reference hardware limits
MAX_OPS = 59
MAX_OP_MS = 2550


# --- Input event stream ---

@dataclass(frozen=True)
class NoteOn:
    note: int
    velocity: int


@dataclass(frozen=True)
class NoteOff:
    note: int


@dataclass(frozen=True)
class SetTempo:
    us_per_beat: int


@dataclass(frozen=True)
class TrackBoundary:
    pass


@dataclass(frozen=True)
class Other:
    pass


Event = Union[NoteOn, NoteOff, SetTempo, TrackBoundary, Other]


@dataclass(frozen=True)
class EventRecord:
    advance_ticks: int
    channel: int
    event: Event


# --- Pipeline data ---

START = "start"
STOP = "stop"
TEMPO = "tempo"


@dataclass(frozen=True)
class RawTransition:
    """Tick-time transition. ``value`` is the note for START, µs/beat for TEMPO."""

    tick: int
    channel: int
    kind: str
    value: Optional[int] = None


@dataclass(frozen=True)
class PlayInterval:
    channel: int
    start_ms: int
    len_ms: int
    note: int

    @property
    def end_ms(self) -> int:
        return self.start_ms + self.len_ms


@dataclass(frozen=True)
class MixRule:
    destination: int
    sources: Tuple[int, ...]


@dataclass(frozen=True)
class PlayOp:
    note: Optional[int]  # None = silence
    duration_ms: int

    @property
    def is_silence(self) -> bool:
        return self.note is None


@dataclass
class PlayOpSequence:
    """Atomically transmitted batch of ops for one device."""

    channel: int
    start_ms: int
    ops: List[PlayOp] = field(default_factory=list)

    @property
    def total_len_ms(self) -> int:
        return sum(op.duration_ms for op in self.ops)

    @property
    def end_ms(self) -> int:
        return self.start_ms + self.total_len_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "start_ms": self.start_ms,
            "ops": [{"note": op.note, "ms": op.duration_ms} for op in self.ops],
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "PlayOpSequence":
        ops = []
        for o in obj.get("ops", []):
            note = o.get("note")
            ops.append(PlayOp(None if note is None else int(note), int(o["ms"])))
        return cls(channel=int(obj.get("channel", 0)), start_ms=int(obj.get("start_ms", 0)), ops=ops)
