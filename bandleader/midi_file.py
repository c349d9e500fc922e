"""Standard MIDI File decoding into the event stream consumed by the pipeline.

Each MIDI track becomes one logical channel, numbered by track index.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import mido

from bandleader.errors import DecodeError
from bandleader.model import (
    DEFAULT_TICKS_PER_BEAT,
    Event,
    EventRecord,
    NoteOff,
    NoteOn,
    Other,
    SetTempo,
    TrackBoundary,
)

logger = logging.getLogger(__name__)


def resolve_ticks_per_beat(division: int) -> int:
    """Ticks per beat from the header division; SMPTE bases fall back to 480."""
    # mido unpacks the division as a signed short, so SMPTE shows up negative
    if division < 0 or division & 0x8000:
        logger.warning("Unsupported time base %#06x (SMPTE); using %d ticks per beat", division & 0xFFFF, DEFAULT_TICKS_PER_BEAT)
        return DEFAULT_TICKS_PER_BEAT
    if division == 0:
        logger.warning("Zero ticks per beat in header; using %d", DEFAULT_TICKS_PER_BEAT)
        return DEFAULT_TICKS_PER_BEAT
    return int(division)


def _event(msg) -> Event:
    if msg.type == "note_on":
        return NoteOn(int(msg.note), int(msg.velocity))
    if msg.type == "note_off":
        return NoteOff(int(msg.note))
    if msg.type == "set_tempo":
        return SetTempo(int(msg.tempo))
    if msg.type == "end_of_track":
        return TrackBoundary()
    return Other()


def decode_midi(mid: mido.MidiFile) -> Tuple[List[EventRecord], int]:
    """Return (records, ticks_per_beat) for an opened MidiFile."""
    records: List[EventRecord] = []
    for ch, track in enumerate(mid.tracks):
        ended = False
        for msg in track:
            ev = _event(msg)
            records.append(EventRecord(int(msg.time), ch, ev))
            ended = isinstance(ev, TrackBoundary)
            if ended:
                break
        if not ended:
            records.append(EventRecord(0, ch, TrackBoundary()))
    tpb = resolve_ticks_per_beat(int(mid.ticks_per_beat))
    logger.debug("decoded %d records from %d tracks (ticks_per_beat=%d)", len(records), len(mid.tracks), tpb)
    return records, tpb


def load(path: str) -> Tuple[List[EventRecord], int]:
    try:
        mid = mido.MidiFile(path)
    except (OSError, EOFError, ValueError, KeyError) as e:
        raise DecodeError(f"failed to read {path}: {e}") from e
    return decode_midi(mid)


def list_channels(records: List[EventRecord]) -> List[int]:
    """Sorted ids of every channel in the stream, with or without notes.

    These are the channels a mix rule may name as a source.
    """
    return sorted({r.channel for r in records})
