"""Tick-time to wall-clock conversion.

Positions are computed with integer arithmetic, multiplying before dividing:

    ms = ticks * us_per_beat * 100 / speed / 1000 / ticks_per_beat

The exact position at the last tempo boundary is kept as an accumulated
``ticks * us_per_beat`` product, so redundant tempo boundaries never change
the result. Only emitted positions are quantized (rounded down to
``quantum_ms``).
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Tuple

from bandleader.errors import ConfigError
from bandleader.model import DEFAULT_TEMPO, START, STOP, TEMPO, PlayInterval, RawTransition

logger = logging.getLogger(__name__)


def build_tempo_curve(transitions: Iterable[RawTransition]) -> Dict[int, int]:
    """Union of tempo changes across all channels, ordered by tick.

    A later change at the same tick overrides an earlier one.
    """
    curve: Dict[int, int] = {}
    for tr in transitions:
        if tr.kind == TEMPO and tr.value is not None:
            curve[tr.tick] = int(tr.value)
    return dict(sorted(curve.items()))


def quantize(ms: int, quantum_ms: int) -> int:
    if quantum_ms <= 1:
        return ms
    return ms - ms % quantum_ms


class TempoConverter:
    """Walks tick positions forward against a piecewise-constant tempo."""

    def __init__(self, ticks_per_beat: int, speed: int = 100, quantum_ms: int = 10) -> None:
        if ticks_per_beat <= 0:
            raise ConfigError(f"ticks_per_beat must be positive, got {ticks_per_beat}")
        if speed <= 0:
            raise ConfigError(f"speed must be positive, got {speed}")
        self.ticks_per_beat = int(ticks_per_beat)
        self.speed = int(speed)
        self.quantum_ms = int(quantum_ms)
        self.current_tempo = DEFAULT_TEMPO
        self.last_tempo_tick = 0
        # sum of ticks * us_per_beat up to last_tempo_tick
        self._base = 0

    def _product(self, tick: int) -> int:
        return self._base + max(0, tick - self.last_tempo_tick) * self.current_tempo

    def exact_ms(self, tick: int) -> int:
        return self._product(tick) * 100 // self.speed // 1000 // self.ticks_per_beat

    def position(self, tick: int) -> int:
        """Quantized wall-clock ms of ``tick`` (must not precede the last tempo change)."""
        return quantize(self.exact_ms(tick), self.quantum_ms)

    def set_tempo(self, tick: int, us_per_beat: int) -> None:
        if us_per_beat <= 0:
            logger.warning("ignoring non-positive tempo %d at tick %d", us_per_beat, tick)
            return
        if tick > self.last_tempo_tick:
            self._base = self._product(tick)
            self.last_tempo_tick = tick
        self.current_tempo = int(us_per_beat)

    def convert(self, transitions: Iterable[RawTransition]) -> Dict[int, List[PlayInterval]]:
        """Replay ordered transitions into per-channel intervals.

        Tempo follows the curve built from the TempoChange transitions.
        """
        out: Dict[int, List[PlayInterval]] = {}
        # channel -> (open_ms, note)
        pending: Dict[int, Tuple[int, int]] = {}
        wall_ms = 0

        def close(ch: int, at_ms: int) -> None:
            opened = pending.pop(ch, None)
            if opened is None:
                return
            start, note = opened
            length = at_ms - start
            if length <= 0:
                logger.debug("drop zero-length note %d on channel %d at %dms", note, ch, start)
                return
            out.setdefault(ch, []).append(PlayInterval(ch, start, length, note))

        transitions = list(transitions)
        curve = list(build_tempo_curve(transitions).items())
        next_change = 0

        def catch_up(tick: int) -> None:
            nonlocal next_change
            while next_change < len(curve) and curve[next_change][0] <= tick:
                self.set_tempo(*curve[next_change])
                next_change += 1

        for tr in transitions:
            if tr.kind == TEMPO:
                continue
            catch_up(tr.tick)
            wall_ms = self.position(tr.tick)
            if tr.kind == START:
                # a Start while another note is open closes it first
                close(tr.channel, wall_ms)
                pending[tr.channel] = (wall_ms, int(tr.value or 0))
            elif tr.kind == STOP:
                close(tr.channel, wall_ms)
        if transitions:
            last_tick = max(tr.tick for tr in transitions)
            catch_up(last_tick)
            wall_ms = self.position(last_tick)
        for ch in sorted(pending):
            close(ch, wall_ms)
        for ivs in out.values():
            ivs.sort(key=lambda iv: iv.start_ms)
        return out


def convert(
    transitions: Iterable[RawTransition],
    ticks_per_beat: int,
    speed: int = 100,
    quantum_ms: int = 10,
) -> Dict[int, List[PlayInterval]]:
    return TempoConverter(ticks_per_beat, speed=speed, quantum_ms=quantum_ms).convert(transitions)

