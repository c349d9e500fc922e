from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from bandleader.config import PlayerConfig
from bandleader.grouper import group
from bandleader.midi_file import list_channels
from bandleader.mixer import apply_rules
from bandleader.model import EventRecord, MixRule, PlayInterval, PlayOpSequence
from bandleader.note_tracker import track_notes
from bandleader.tempo import convert

logger = logging.getLogger(__name__)


def build_intervals(
    records: Sequence[EventRecord],
    ticks_per_beat: int,
    rules: Iterable[MixRule] = (),
    config: Optional[PlayerConfig] = None,
) -> Dict[int, List[PlayInterval]]:
    """Note tracking, tempo conversion and (when rules are given) mixing."""
    cfg = config or PlayerConfig()
    transitions = track_notes(records)
    intervals = convert(transitions, ticks_per_beat, speed=cfg.speed, quantum_ms=cfg.quantum_ms)
    rules = list(rules)
    if not rules:
        logger.info("Use default channel assignment")
        return intervals
    known = list_channels(records)
    return apply_rules(intervals, rules, unit=cfg.unit, known_channels=known)


def build_schedule(
    records: Sequence[EventRecord],
    ticks_per_beat: int,
    rules: Iterable[MixRule] = (),
    config: Optional[PlayerConfig] = None,
) -> Dict[int, List[PlayOpSequence]]:
    """Full synchronous transform: records -> per-channel batches."""
    cfg = config or PlayerConfig()
    intervals = build_intervals(records, ticks_per_beat, rules, cfg)
    return group(intervals, max_ops=cfg.max_ops, max_op_ms=cfg.max_op_ms)
