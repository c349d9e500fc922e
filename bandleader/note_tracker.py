from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from bandleader.model import (
    START,
    STOP,
    TEMPO,
    EventRecord,
    NoteOff,
    NoteOn,
    RawTransition,
    SetTempo,
    TrackBoundary,
)

logger = logging.getLogger(__name__)


class ChannelState:
    """Tick position and note changes for one logical channel.

    Tick time restarts at 0 after every track boundary, so a channel that
    keeps going after a boundary overlays a new segment on the same timeline.
    Press/release changes are recorded per segment and resolved together in
    tick order by ``resolve``: the active note is the earliest-pressed held
    note of any segment, simultaneous presses go to the lowest note value, and
    each tick yields at most one Stop and one Start.
    """

    def __init__(self, channel: int) -> None:
        self.channel = channel
        self.tick = 0
        self.segment = 0
        # notes held in the current segment
        self.held: Set[int] = set()
        # (tick, segment, note, pressed)
        self.changes: List[Tuple[int, int, int, bool]] = []

    def advance(self, ticks: int) -> None:
        if ticks > 0:
            self.tick += int(ticks)

    def press(self, note: int) -> None:
        self.held.add(note)
        self.changes.append((self.tick, self.segment, note, True))

    def release(self, note: int) -> None:
        if note in self.held:
            self.held.discard(note)
            self.changes.append((self.tick, self.segment, note, False))

    def end(self) -> None:
        for note in sorted(self.held):
            self.changes.append((self.tick, self.segment, note, False))
        self.held.clear()
        self.segment += 1
        self.tick = 0

    def resolve(self, out: List[RawTransition]) -> None:
        # (segment, note) -> tick it was pressed
        held: Dict[Tuple[int, int], int] = {}
        active: Optional[int] = None
        changes = sorted(self.changes, key=lambda c: c[0])
        i = 0
        while i < len(changes):
            tick = changes[i][0]
            while i < len(changes) and changes[i][0] == tick:
                _, seg, note, pressed = changes[i]
                if pressed:
                    held[(seg, note)] = tick
                else:
                    held.pop((seg, note), None)
                i += 1
            if held:
                new = min(held.items(), key=lambda kv: (kv[1], kv[0][1], kv[0][0]))[0][1]
            else:
                new = None
            if new == active:
                continue
            if active is not None:
                out.append(RawTransition(tick, self.channel, STOP))
            if new is not None:
                out.append(RawTransition(tick, self.channel, START, new))
            active = new


def track_notes(records: Iterable[EventRecord]) -> List[RawTransition]:
    """Turn the raw event stream into Start/Stop/TempoChange transitions.

    Result is ordered by tick, ties by channel; transitions of one channel at
    one tick keep their emission order (Stop before Start).
    """
    states: Dict[int, ChannelState] = {}
    out: List[RawTransition] = []
    for rec in records:
        st = states.get(rec.channel)
        if st is None:
            st = states[rec.channel] = ChannelState(rec.channel)
        st.advance(rec.advance_ticks)
        ev = rec.event
        if isinstance(ev, NoteOn):
            if ev.velocity > 0:
                st.press(ev.note)
            else:
                st.release(ev.note)
        elif isinstance(ev, NoteOff):
            st.release(ev.note)
        elif isinstance(ev, SetTempo):
            out.append(RawTransition(st.tick, st.channel, TEMPO, int(ev.us_per_beat)))
        elif isinstance(ev, TrackBoundary):
            st.end()
    for st in states.values():
        # streams without a trailing boundary still get their last note closed
        if st.held:
            st.end()
        st.resolve(out)
    out.sort(key=lambda tr: (tr.tick, tr.channel))
    logger.debug("tracked %d transitions over %d channels", len(out), len(states))
    return out
