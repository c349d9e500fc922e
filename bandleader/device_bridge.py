"""Websockets bridge exposing one local device to remote players.

Protocol (JSON text frames): the server greets with ``hello``; clients send
``{"type": "play"|"light"|"ping", "id": n, "payload": {...}}`` and receive an
``ack``/``pong`` or ``error`` carrying the same id. ``play`` is acknowledged
only after the batch has finished playing.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import time
from typing import Any, Dict

import websockets

from bandleader.devices import Device, MidoDevice, VirtualDevice
from bandleader.errors import DeviceError
from bandleader.model import PlayOpSequence

logger = logging.getLogger(__name__)


def _msg(kind: str, req_id: Any = None, payload: Dict[str, Any] | None = None) -> str:
    obj: Dict[str, Any] = {"type": kind, "ts": time.time()}
    if req_id is not None:
        obj["id"] = req_id
    if payload is not None:
        obj["payload"] = payload
    return json.dumps(obj)


def make_handler(device: Device):
    # one batch at a time on the device, whatever the number of clients
    lock = asyncio.Lock()

    async def handler(ws, *maybe_path):
        logger.info("[ws] client connected: %s", getattr(ws, "remote_address", None))
        await ws.send(_msg("hello", payload={"protocol": 1, "device": device.name}))
        async for message in ws:
            try:
                obj = json.loads(message)
            except ValueError:
                continue
            t = obj.get("type")
            req_id = obj.get("id")
            payload = obj.get("payload") or {}
            if t == "ping":
                await ws.send(_msg("pong", req_id))
            elif t == "light":
                try:
                    async with lock:
                        await device.set_indicator(int(payload.get("r", 0)), int(payload.get("g", 0)), int(payload.get("b", 0)))
                except DeviceError as e:
                    await ws.send(_msg("error", req_id, {"ok": False, "error": str(e)}))
                else:
                    await ws.send(_msg("ack", req_id, {"ok": True}))
            elif t == "play":
                try:
                    seq = PlayOpSequence.from_dict(payload)
                except (KeyError, TypeError, ValueError) as e:
                    await ws.send(_msg("error", req_id, {"ok": False, "error": f"invalid_batch: {e}"}))
                    continue
                try:
                    async with lock:
                        await device.submit(seq)
                except DeviceError as e:
                    logger.error("[ws] play failed: %s", e)
                    await ws.send(_msg("error", req_id, {"ok": False, "error": str(e)}))
                else:
                    await ws.send(_msg("ack", req_id, {"ok": True, "ms": seq.total_len_ms}))
            else:
                await ws.send(_msg("error", req_id, {"ok": False, "error": "unknown_type"}))

    return handler


async def start_bridge(device: Device, host: str = "127.0.0.1", port: int = 8765):
    """Connect ``device`` and start serving; returns the websockets server."""
    await device.connect()
    server = await websockets.serve(make_handler(device), host, port)
    logger.info("[ws] bridge for %s listening on ws://%s:%d", device.name, host, port)
    return server


async def serve_bridge(device: Device, host: str, port: int) -> None:
    server = await start_bridge(device, host, port)
    stop = asyncio.get_running_loop().create_future()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, stop.cancel)
        except NotImplementedError:
            pass
    try:
        await stop
    except asyncio.CancelledError:
        pass
    finally:
        server.close()
        await server.wait_closed()
        await device.close()
        logger.info("[ws] shutting down")


def main() -> None:
    ap = argparse.ArgumentParser(description="Expose a local MIDI port as a remote playback device over websockets")
    ap.add_argument("--port", help="Substring to match MIDI output port")
    ap.add_argument("--channel", type=int, default=0, help="MIDI channel to play on (0-15)")
    ap.add_argument("--velocity", type=int, default=100)
    ap.add_argument("--virtual", action="store_true", help="Use an in-memory device instead of MIDI")
    ap.add_argument("--ws-host", default="127.0.0.1")
    ap.add_argument("--ws-port", type=int, default=8765)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    device: Device = VirtualDevice() if args.virtual else MidoDevice(args.port, midi_channel=args.channel, velocity=args.velocity)
    asyncio.run(serve_bridge(device, args.ws_host, args.ws_port))


if __name__ == "__main__":
    main()
