from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import mido
import websockets

from bandleader.errors import DeviceError
from bandleader.model import PlayOpSequence

logger = logging.getLogger(__name__)


class Device:
    """Output device interface driven by the playback scheduler.

    ``submit`` returns once the batch has finished playing on the device.
    """

    name: str = "device"

    async def connect(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def set_indicator(self, r: int, g: int, b: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def submit(self, sequence: PlayOpSequence) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class VirtualDevice(Device):
    """In-memory device for tests and dry runs.

    Records (loop time, sequence) per submission and sleeps for the batch
    length scaled by ``time_scale``. ``fail_on=n`` raises on the n-th (0-based)
    submission.
    """

    def __init__(self, name: str = "virtual", time_scale: float = 1.0, fail_on: Optional[int] = None) -> None:
        self.name = name
        self.time_scale = float(time_scale)
        self.fail_on = fail_on
        self.connected = False
        self.closed = False
        self.indicator: Optional[Tuple[int, int, int]] = None
        self.submitted: List[Tuple[float, PlayOpSequence]] = []

    async def connect(self) -> None:
        self.connected = True

    async def set_indicator(self, r: int, g: int, b: int) -> None:
        self.indicator = (r, g, b)

    async def submit(self, sequence: PlayOpSequence) -> None:
        if self.fail_on is not None and len(self.submitted) == self.fail_on:
            raise DeviceError(f"{self.name}: simulated transmission failure")
        self.submitted.append((asyncio.get_running_loop().time(), sequence))
        await asyncio.sleep(sequence.total_len_ms * self.time_scale / 1000.0)

    async def close(self) -> None:
        self.closed = True


def open_midi_output(name_filter: Optional[str] = None, exact: bool = False):
    """Open the first mido output port whose name contains ``name_filter``.

    With ``exact=True`` the port must be named ``name_filter`` exactly.
    """
    try:
        names = mido.get_output_names()
    except Exception as e:
        raise DeviceError(f"MIDI backend unavailable: {e}") from e
    for name in names:
        if not name_filter or (name == name_filter if exact else name_filter in name):
            try:
                return mido.open_output(name)
            except Exception as e:
                raise DeviceError(f"failed to open MIDI port {name!r}: {e}") from e
    raise DeviceError(f"no MIDI output matching {name_filter!r}" if name_filter else "no device found")


class MidoDevice(Device):
    """Plays batches as note_on/note_off on a mido output port."""

    def __init__(
        self,
        port_name: Optional[str] = None,
        midi_channel: int = 0,
        velocity: int = 100,
        port=None,
        exact: bool = False,
    ) -> None:
        self.port_name = port_name
        self.exact = exact
        self.name = f"midi:{port_name or '*'}#{midi_channel}"
        self.midi_channel = max(0, min(15, int(midi_channel)))
        self.velocity = max(1, min(127, int(velocity)))
        self.out = port
        self.indicator: Optional[Tuple[int, int, int]] = None

    async def connect(self) -> None:
        if self.out is None:
            self.out = open_midi_output(self.port_name, exact=self.exact)

    async def set_indicator(self, r: int, g: int, b: int) -> None:
        # MIDI has no light; keep the colour for status output
        self.indicator = (r, g, b)
        logger.debug("%s indicator rgb=(%d,%d,%d)", self.name, r, g, b)

    def _send(self, kind: str, **kw: Any) -> None:
        try:
            self.out.send(mido.Message(kind, channel=self.midi_channel, **kw))
        except Exception as e:
            raise DeviceError(f"{self.name}: send failed: {e}") from e

    async def submit(self, sequence: PlayOpSequence) -> None:
        if self.out is None:
            raise DeviceError(f"{self.name}: not connected")
        for op in sequence.ops:
            if op.is_silence:
                await asyncio.sleep(op.duration_ms / 1000.0)
                continue
            pitch = max(0, min(127, int(op.note)))
            self._send("note_on", note=pitch, velocity=self.velocity)
            try:
                await asyncio.sleep(op.duration_ms / 1000.0)
            finally:
                self._send("note_off", note=pitch, velocity=0)

    async def close(self) -> None:
        if self.out is None:
            return
        try:
            # Sustain off, All Sound Off, All Notes Off
            for control in (64, 120, 123):
                self.out.send(mido.Message("control_change", control=control, value=0, channel=self.midi_channel))
            self.out.close()
        except Exception as e:
            logger.warning("%s: close failed: %s", self.name, e)
        self.out = None


class WsDevice(Device):
    """Remote device reached through a websockets device bridge."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.name = url
        self.ws = None
        self._next_id = 1

    async def connect(self) -> None:
        try:
            self.ws = await websockets.connect(self.url)
            hello = json.loads(await asyncio.wait_for(self.ws.recv(), timeout=5.0))
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException, ValueError) as e:
            raise DeviceError(f"{self.url}: connect failed: {e}") from e
        if hello.get("type") != "hello":
            raise DeviceError(f"{self.url}: unexpected greeting {hello!r}")
        logger.debug("%s: connected (%s)", self.url, hello.get("payload"))

    async def _request(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.ws is None:
            raise DeviceError(f"{self.url}: not connected")
        req_id = self._next_id
        self._next_id += 1
        try:
            await self.ws.send(json.dumps({"type": kind, "id": req_id, "payload": payload}))
            while True:
                obj = json.loads(await self.ws.recv())
                if obj.get("id") != req_id:
                    continue
                if obj.get("type") == "ack":
                    return obj.get("payload") or {}
                raise DeviceError(f"{self.url}: {kind} rejected: {(obj.get('payload') or {}).get('error')}")
        except (OSError, websockets.exceptions.WebSocketException, ValueError) as e:
            raise DeviceError(f"{self.url}: {kind} failed: {e}") from e

    async def set_indicator(self, r: int, g: int, b: int) -> None:
        await self._request("light", {"r": r, "g": g, "b": b})

    async def submit(self, sequence: PlayOpSequence) -> None:
        await self._request("play", sequence.to_dict())

    async def close(self) -> None:
        if self.ws is not None:
            await self.ws.close()
            self.ws = None


def discover_midi_devices(name_filter: Optional[str] = None, velocity: int = 100) -> List[Device]:
    """One MidoDevice per output port matching ``name_filter``."""
    try:
        names = mido.get_output_names()
    except Exception as e:
        raise DeviceError(f"MIDI backend unavailable: {e}") from e
    devices: List[Device] = [
        MidoDevice(name, velocity=velocity, exact=True) for name in names if not name_filter or name_filter in name
    ]
    if not devices:
        raise DeviceError("no device found")
    return devices


def parse_device_spec(spec: str, velocity: int = 100) -> Device:
    """``virtual``, ``midi:<port substring>[#<channel>]`` or ``ws://host:port``."""
    if spec == "virtual" or spec.startswith("virtual:"):
        return VirtualDevice(name=spec)
    if spec.startswith("ws://") or spec.startswith("wss://"):
        return WsDevice(spec)
    if spec.startswith("midi:"):
        rest = spec[len("midi:"):]
        port, _, ch = rest.partition("#")
        try:
            midi_channel = int(ch) if ch else 0
        except ValueError as e:
            raise DeviceError(f"invalid device spec {spec!r}: bad MIDI channel") from e
        return MidoDevice(port or None, midi_channel=midi_channel, velocity=velocity)
    raise DeviceError(f"invalid device spec {spec!r}")


def open_devices(specs: Sequence[str], velocity: int = 100) -> List[Device]:
    if not specs:
        return discover_midi_devices(velocity=velocity)
    return [parse_device_spec(s, velocity=velocity) for s in specs]
