from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from bandleader.errors import ConfigError, RuleError
from bandleader.model import MixRule, PlayInterval

logger = logging.getLogger(__name__)

DEFAULT_UNIT = 40


def _parse_channel(text: str, rule: str) -> int:
    try:
        ch = int(text.strip())
    except ValueError as e:
        raise RuleError(f"Invalid rule: {rule} ({text.strip()!r} is not a channel number)") from e
    if not (0 <= ch <= 255):
        raise RuleError(f"Invalid rule: {rule} (channel {ch} out of range 0..255)")
    return ch


def parse_rule(text: str) -> MixRule:
    """Parse ``"dest=src1,src2,..."`` into a MixRule."""
    if "=" not in text:
        raise RuleError(f"Invalid rule: {text} (expected dest=src1,src2,...)")
    dest_s, srcs_s = text.split("=", 1)
    dest = _parse_channel(dest_s, text)
    sources: List[int] = []
    for part in srcs_s.split(","):
        ch = _parse_channel(part, text)
        if ch not in sources:
            sources.append(ch)
    return MixRule(destination=dest, sources=tuple(sources))


def interleave(
    sources: Dict[int, Sequence[PlayInterval]],
    destination: int,
    unit: int = DEFAULT_UNIT,
) -> List[PlayInterval]:
    """Round-robin time-slice overlapping source intervals onto one channel.

    Equivalent to scanning 1 ms slices ``[at, at+1)``: the intervals covering
    the slice form the "on" set (ordered by source channel) and the slice takes
    the note of ``on[(at // unit) % len(on)]``. Adjacent slices with the same
    note are coalesced. Instead of visiting every millisecond, the sweep only
    stops where the answer can change: interval edges and multiples of
    ``unit``.
    """
    if unit <= 0:
        raise ConfigError(f"mix unit must be positive, got {unit}")
    chans = sorted(ch for ch, ivs in sources.items() if ivs)
    if not chans:
        return []
    lists = {ch: sorted(sources[ch], key=lambda iv: iv.start_ms) for ch in chans}

    points = set()
    for ivs in lists.values():
        for iv in ivs:
            if iv.len_ms > 0:
                points.add(iv.start_ms)
                points.add(iv.end_ms)
    if not points:
        return []
    lo, hi = min(points), max(points)
    points.update(range((lo // unit + 1) * unit, hi, unit))
    edges = sorted(points)

    idx = {ch: 0 for ch in chans}
    out: List[PlayInterval] = []
    for a, b in zip(edges, edges[1:]):
        on: List[PlayInterval] = []
        for ch in chans:
            ivs = lists[ch]
            i = idx[ch]
            while i < len(ivs) and ivs[i].end_ms <= a:
                i += 1
            idx[ch] = i
            if i < len(ivs) and ivs[i].start_ms <= a:
                on.append(ivs[i])
        if not on:
            continue
        note = on[(a // unit) % len(on)].note
        last = out[-1] if out else None
        if last is not None and last.note == note and last.end_ms == a:
            out[-1] = PlayInterval(destination, last.start_ms, last.len_ms + (b - a), note)
        else:
            out.append(PlayInterval(destination, a, b - a, note))
    return out


def apply_rules(
    intervals: Dict[int, List[PlayInterval]],
    rules: Iterable[MixRule],
    unit: int = DEFAULT_UNIT,
    known_channels: Optional[Iterable[int]] = None,
) -> Dict[int, List[PlayInterval]]:
    """Apply mix rules to per-channel intervals.

    Channels used as a source are consumed; a rule's output replaces any
    channel with the destination id; everything else passes through.
    """
    rules = list(rules)
    known = set(intervals) if known_channels is None else set(known_channels) | set(intervals)
    seen_dest = set()
    for rule in rules:
        if rule.destination in seen_dest:
            raise ConfigError(f"channel {rule.destination} is the destination of more than one rule")
        seen_dest.add(rule.destination)
        for ch in rule.sources:
            if ch not in known:
                raise ConfigError(f"No such channel: {ch} (rule {rule.destination}={','.join(map(str, rule.sources))})")

    consumed = {ch for rule in rules for ch in rule.sources}
    out: Dict[int, List[PlayInterval]] = {
        ch: list(ivs) for ch, ivs in intervals.items() if ch not in consumed and ch not in seen_dest
    }
    for rule in rules:
        logger.info("Assign channels %s to %d", list(rule.sources), rule.destination)
        if len(rule.sources) == 1:
            src = intervals.get(rule.sources[0], [])
            out[rule.destination] = [
                PlayInterval(rule.destination, iv.start_ms, iv.len_ms, iv.note) for iv in src
            ]
        else:
            out[rule.destination] = interleave(
                {ch: intervals.get(ch, []) for ch in rule.sources}, rule.destination, unit
            )
    return out
