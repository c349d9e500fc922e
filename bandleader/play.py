from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional, Sequence

from bandleader import midi_file
from bandleader.config import PlayerConfig, load_config
from bandleader.devices import Device, open_devices
from bandleader.errors import PlayerError
from bandleader.mixer import parse_rule
from bandleader.model import MixRule, PlayOpSequence
from bandleader.pipeline import build_schedule
from bandleader.scheduler import PlaybackScheduler, assign_channels

logger = logging.getLogger("bandleader.play")


async def play(
    devices: List[Device],
    schedule: Dict[int, List[PlayOpSequence]],
    rules: Sequence[MixRule] = (),
    config: Optional[PlayerConfig] = None,
    assignment: Optional[Dict[int, int]] = None,
) -> None:
    """Connect every device, play the schedule in sync, then close the devices."""
    cfg = config or PlayerConfig()
    connected: List[Device] = []
    try:
        for i, dev in enumerate(devices):
            await dev.connect()
            connected.append(dev)
            logger.info("Device %d connected (%s)", i, dev.name)
        plans = assign_channels(devices, schedule, assignment, rules)
        await PlaybackScheduler(plans, warmup_s=cfg.warmup_s, shutdown_s=cfg.shutdown_s).run()
    finally:
        for dev in connected:
            await dev.close()
    logger.info("Done")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Play a MIDI file on one or more monophonic devices in sync")
    ap.add_argument("file", help="MIDI file name")
    ap.add_argument("-l", "--list", action="store_true", help="List available channels and exit")
    ap.add_argument("-r", "--rule", action="append", default=[], help="Mix rule dest=src1,src2,... (repeatable)")
    ap.add_argument("-s", "--speed", type=int, help="Playback speed in percent (default 100)")
    ap.add_argument("-u", "--unit", type=int, help="Time-slice size in ms used when mixing (default 40)")
    ap.add_argument("-d", "--device", action="append", default=[], help="Device: virtual, midi:<port>[#ch] or ws://host:port (default: all MIDI outputs)")
    ap.add_argument("--config", help="JSON file with hardware limits and timing")
    ap.add_argument("--warmup", type=float, help="Seconds between setup and start (default 3)")
    ap.add_argument("--shutdown", type=float, help="Seconds to wait after the last batch (default 3)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args(argv)

    _setup_logging(args.verbose)
    try:
        cfg = load_config(args.config).replace(
            speed=args.speed,
            unit=args.unit,
            warmup_s=args.warmup,
            shutdown_s=args.shutdown,
        )
        rules = [parse_rule(r) for r in args.rule]

        records, tpb = midi_file.load(args.file)
        if args.list:
            print(f"Available channels: {midi_file.list_channels(records)}")
            return 0

        logger.info("Parsing file %s...", args.file)
        schedule = build_schedule(records, tpb, rules, cfg)
        devices = open_devices(args.device, velocity=cfg.velocity)
        asyncio.run(play(devices, schedule, rules, cfg))
    except PlayerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
