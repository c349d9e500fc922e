from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from bandleader.errors import ConfigError
from bandleader.model import MAX_OP_MS, MAX_OPS, PlayInterval, PlayOp, PlayOpSequence

logger = logging.getLogger(__name__)


def split_interval(iv: PlayInterval, max_op_ms: int) -> Iterator[Tuple[int, PlayOp]]:
    """Yield (start_ms, op) pieces of ``iv``, each at most ``max_op_ms`` long."""
    at = iv.start_ms
    remaining = iv.len_ms
    while remaining > 0:
        d = min(remaining, max_op_ms)
        yield at, PlayOp(iv.note, d)
        at += d
        remaining -= d


def group_channel(
    channel: int,
    intervals: Iterable[PlayInterval],
    max_ops: int = MAX_OPS,
    max_op_ms: int = MAX_OP_MS,
) -> List[PlayOpSequence]:
    """Pack one channel's intervals into hardware batches.

    Short gaps (up to ``max_op_ms``) are filled with one silence op; longer
    gaps start a new batch. A batch is closed as soon as it holds ``max_ops``
    ops.
    """
    if max_ops <= 0 or max_op_ms <= 0:
        raise ConfigError(f"invalid hardware limits max_ops={max_ops} max_op_ms={max_op_ms}")
    out: List[PlayOpSequence] = []
    acc: Optional[PlayOpSequence] = None

    def append(op: PlayOp) -> None:
        nonlocal acc
        acc.ops.append(op)
        if len(acc.ops) == max_ops:
            out.append(acc)
            acc = None

    for iv in sorted(intervals, key=lambda x: x.start_ms):
        for op_start, op in split_interval(iv, max_op_ms):
            if acc is not None:
                gap = op_start - acc.end_ms
                if gap > max_op_ms:
                    out.append(acc)
                    acc = None
                elif gap > 0:
                    append(PlayOp(None, gap))
                elif gap < 0:
                    logger.warning("channel %d: op at %dms overlaps batch ending at %dms", channel, op_start, acc.end_ms)
            if acc is None:
                acc = PlayOpSequence(channel, op_start, [])
            append(op)
    if acc is not None and acc.ops:
        out.append(acc)
    return out


def group(
    intervals: Dict[int, List[PlayInterval]],
    max_ops: int = MAX_OPS,
    max_op_ms: int = MAX_OP_MS,
) -> Dict[int, List[PlayOpSequence]]:
    schedule = {ch: group_channel(ch, ivs, max_ops, max_op_ms) for ch, ivs in sorted(intervals.items())}
    for ch, seqs in schedule.items():
        logger.debug("channel %d: %d batches", ch, len(seqs))
    return schedule


def ordered(schedule: Dict[int, List[PlayOpSequence]]) -> List[PlayOpSequence]:
    """All batches of all channels by (start_ms, channel)."""
    return sorted((s for seqs in schedule.values() for s in seqs), key=lambda s: (s.start_ms, s.channel))


def sequences_to_intervals(sequences: Iterable[PlayOpSequence]) -> Dict[int, List[PlayInterval]]:
    """Expand batches back into one interval per sounding op."""
    out: Dict[int, List[PlayInterval]] = {}
    for seq in sequences:
        at = seq.start_ms
        for op in seq.ops:
            if not op.is_silence:
                out.setdefault(seq.channel, []).append(PlayInterval(seq.channel, at, op.duration_ms, op.note))
            at += op.duration_ms
    for ivs in out.values():
        ivs.sort(key=lambda iv: iv.start_ms)
    return out
