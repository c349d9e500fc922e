from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from bandleader.devices import Device
from bandleader.errors import DeviceError, PlaybackError
from bandleader.model import MixRule, PlayOpSequence

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]


def indicator_color(p: int) -> RGB:
    """Map a number onto one of 7 saturated colours (bits of p % 7 + 1)."""
    v = p % 7 + 1
    return ((v & 1) * 255, ((v >> 1) & 1) * 255, ((v >> 2) & 1) * 255)


def channel_color(channel: int, rules: Iterable[MixRule] = ()) -> RGB:
    for rule in rules:
        if rule.destination == channel:
            return indicator_color(sum(rule.sources))
    return indicator_color(channel)


@dataclass
class DevicePlan:
    device: Device
    channel: int
    sequences: List[PlayOpSequence] = field(default_factory=list)
    color: Optional[RGB] = None


def assign_channels(
    devices: List[Device],
    schedule: Dict[int, List[PlayOpSequence]],
    assignment: Optional[Dict[int, int]] = None,
    rules: Iterable[MixRule] = (),
) -> List[DevicePlan]:
    """Give every device one channel: device i plays channel i unless ``assignment`` maps it."""
    rules = list(rules)
    plans: List[DevicePlan] = []
    for i, dev in enumerate(devices):
        ch = assignment.get(i, i) if assignment else i
        seqs = sorted(schedule.get(ch, []), key=lambda s: s.start_ms)
        plans.append(DevicePlan(dev, ch, seqs, channel_color(ch, rules)))
    used = {p.channel for p in plans}
    for ch in sorted(set(schedule) - used):
        logger.warning("channel %d has no device; skipped", ch)
    return plans


class PlaybackScheduler:
    """Plays per-device batch schedules in sync.

    Every device task and the coordinator meet at a start barrier after the
    warm-up delay; batches are then issued at ``start + start_ms``. Device
    tasks meet again at an end barrier whether or not they failed, so one
    broken device never leaves the others waiting.
    """

    def __init__(self, plans: List[DevicePlan], warmup_s: float = 3.0, shutdown_s: float = 3.0) -> None:
        if not plans:
            raise DeviceError("no device found")
        self.plans = plans
        self.warmup_s = float(warmup_s)
        self.shutdown_s = float(shutdown_s)
        self.start_time: Optional[float] = None
        self._start_barrier: Optional[asyncio.Barrier] = None
        self._end_barrier: Optional[asyncio.Barrier] = None

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        self._start_barrier = asyncio.Barrier(len(self.plans) + 1)
        self._end_barrier = asyncio.Barrier(len(self.plans))
        tasks = [asyncio.create_task(self._device_task(p)) for p in self.plans]
        try:
            logger.info("Start playing in %g seconds...", self.warmup_s)
            await asyncio.sleep(self.warmup_s)
            self.start_time = loop.time()
            logger.info("Started")
            await self._start_barrier.wait()
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        logger.info("Shutting down in %g seconds...", self.shutdown_s)
        await asyncio.sleep(self.shutdown_s)
        for plan, res in zip(self.plans, results):
            if isinstance(res, BaseException):
                raise PlaybackError(f"error on device {plan.device.name}: {res}", device=plan.device.name) from res

    async def _device_task(self, plan: DevicePlan) -> None:
        loop = asyncio.get_running_loop()
        dev = plan.device
        failure: Optional[BaseException] = None
        if plan.color is not None:
            try:
                await dev.set_indicator(*plan.color)
            except Exception as e:
                failure = e
        await self._start_barrier.wait()
        if failure is None:
            try:
                for seq in plan.sequences:
                    delay = self.start_time + seq.start_ms / 1000.0 - loop.time()
                    if delay > 0:
                        await asyncio.sleep(delay)
                    logger.debug("%s: at %dms play %d ops (%dms)", dev.name, seq.start_ms, len(seq.ops), seq.total_len_ms)
                    await dev.submit(seq)
            except Exception as e:
                failure = e
        if failure is not None:
            logger.error("%s: %s", dev.name, failure)
        if await self._end_barrier.wait() == 0:
            logger.info("All devices finished")
        if failure is not None:
            raise failure
