import enum
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from .ProtocolLoader import ChannelSpec, SensorProtocolSpec


# ===== MESSAGE VARIANTS =====

@dataclass(frozen=True)
class ChannelSample:
    """
    One channel's block of a telemetry message. Absent fields hold their zero
    default; `provided` names the fields the producer actually sent so the
    reducer can tell "absent" from "zero".
    """
    current: float = 0.0
    max: float = 0.0
    punches: int = 0
    detected: bool = False
    provided: FrozenSet[str] = frozenset()

    def has(self, name: str) -> bool:
        return name in self.provided


@dataclass(frozen=True)
class RealtimeTelemetry:
    """Periodic snapshot of both channels plus session-wide counters."""
    channels: Tuple[ChannelSample, ChannelSample] = field(
        default_factory=lambda: (ChannelSample(), ChannelSample())
    )
    total_punches: int = 0
    training_time_ms: int = 0
    session_id: str = ""
    learning_complete: bool = False
    punch_threshold: float = 0.0
    provided: FrozenSet[str] = frozenset()

    def has(self, name: str) -> bool:
        return name in self.provided


@dataclass(frozen=True)
class PunchEvent:
    """A discrete strike reported by the firmware. Optional fields are None when absent."""
    channel: int = 1
    force: float = 0.0
    zone: Optional[str] = None
    combined_force: Optional[float] = None
    bpm: Optional[int] = None
    punch_number: Optional[int] = None
    timestamp_ms: Optional[int] = None


@dataclass(frozen=True)
class StatusMessage:
    """Accepted and logged, never folded into state."""
    payload: Dict[str, Any]


class DecodeErrorKind(enum.Enum):
    NOT_AN_OBJECT = "not_an_object"
    MALFORMED_SYNTAX = "malformed_syntax"
    UNKNOWN_TYPE = "unknown_type"


@dataclass(frozen=True)
class DecodeFailure:
    """A line that could not be turned into a message. Never raised, only returned."""
    kind: DecodeErrorKind
    line: str
    detail: str = ""
    payload: Optional[Dict[str, Any]] = None  # set for UNKNOWN_TYPE


DecodedMessage = Union[RealtimeTelemetry, PunchEvent, StatusMessage]
DecodeResult = Union[DecodedMessage, DecodeFailure]


# ========== Field coercion ==========
# Lenient on purpose: a wrong-typed field is treated as absent, never fatal.

def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None

def _non_negative(value: Any) -> Optional[float]:
    n = _number(value)
    return None if n is None else max(0.0, n)

def _count(value: Any) -> Optional[int]:
    n = _non_negative(value)
    return None if n is None else int(n)

def _flag(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    n = _number(value)  # some firmware sends 0/1
    return None if n is None else n != 0

def _text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


# ============
# Main class
# ============
class MessageDecoder:
    """
    Turns one line from the sensor into a typed message or a DecodeFailure.

    The firmware's JSON schema changed across releases without a version
    field, so classification accepts either a known "type" tag or a known
    message shape:
      - type in the realtime tags, or both channel blocks present -> RealtimeTelemetry
      - type in the punch tags, or an "event" field naming a strike -> PunchEvent
      - type in the status tags -> StatusMessage
      - anything else -> DecodeFailure(UNKNOWN_TYPE)
    """

    def __init__(self, protocol: SensorProtocolSpec) -> None:
        self._protocol = protocol

    def decode(self, line: str) -> DecodeResult:
        text = line.strip()

        # Cheap rejection of noise and half-lines before paying for a parse
        if not (text.startswith("{") and text.endswith("}")):
            return DecodeFailure(DecodeErrorKind.NOT_AN_OBJECT, line)

        try:
            payload = json.loads(text)
        except (ValueError, RecursionError) as e:  # ValueError covers JSONDecodeError and oversized ints
            return DecodeFailure(DecodeErrorKind.MALFORMED_SYNTAX, line, detail=str(e))

        if not isinstance(payload, dict):
            return DecodeFailure(DecodeErrorKind.NOT_AN_OBJECT, line)

        match self._classify(payload):
            case "realtime":
                return self._decode_realtime(payload)
            case "punch_event":
                return self._decode_punch(payload)
            case "status":
                return StatusMessage(payload=payload)
            case _:
                return DecodeFailure(
                    DecodeErrorKind.UNKNOWN_TYPE,
                    line,
                    detail=f"type={payload.get('type')!r}",
                    payload=payload,
                )

    # ---------- Classification ----------

    def _classify(self, payload: Dict[str, Any]) -> Optional[str]:
        tag = payload.get("type")
        if isinstance(tag, str):
            if tag in self._protocol.realtime_tags:
                return "realtime"
            if tag in self._protocol.punch_tags:
                return "punch_event"
            if tag in self._protocol.status_tags:
                return "status"

        if self._looks_like_telemetry(payload):
            return "realtime"
        event = payload.get("event")
        if isinstance(event, str) and event in self._protocol.event_markers:
            return "punch_event"
        return None

    def _looks_like_telemetry(self, payload: Dict[str, Any]) -> bool:
        suffix = self._protocol.flattened.current
        nested = all(isinstance(payload.get(c.key), dict) for c in self._protocol.channels)
        flattened = all(
            _number(payload.get(c.key + suffix)) is not None for c in self._protocol.channels
        )
        return nested or flattened

    # ---------- Variant builders ----------

    def _decode_channel(self, payload: Dict[str, Any], channel: ChannelSpec) -> ChannelSample:
        block = payload.get(channel.key)
        if isinstance(block, dict):
            raw = {name: block.get(name) for name in ("current", "max", "punches", "detected")}
        else:
            suffixes = self._protocol.flattened
            raw = {
                "current": payload.get(channel.key + suffixes.current),
                "max": payload.get(channel.key + suffixes.max),
                "punches": payload.get(channel.key + suffixes.punches),
                "detected": payload.get(channel.key + suffixes.detected),
            }

        values = {
            "current": _non_negative(raw["current"]),
            "max": _non_negative(raw["max"]),
            "punches": _count(raw["punches"]),
            "detected": _flag(raw["detected"]),
        }
        provided = frozenset(k for k, v in values.items() if v is not None)
        return ChannelSample(
            current=values["current"] or 0.0,
            max=values["max"] or 0.0,
            punches=values["punches"] or 0,
            detected=values["detected"] or False,
            provided=provided,
        )

    def _decode_realtime(self, payload: Dict[str, Any]) -> RealtimeTelemetry:
        threshold = _number(payload.get("punch_threshold"))
        if threshold is not None and threshold <= 0:
            threshold = None  # a zero threshold would count every sample as a strike

        values = {
            "total_punches": _count(payload.get("total_punches")),
            "training_time": _count(payload.get("training_time")),
            "session_id": _text(payload.get("session_id")),
            "learning_complete": _flag(payload.get("learning_complete")),
            "punch_threshold": threshold,
        }
        first, second = self._protocol.channels
        return RealtimeTelemetry(
            channels=(self._decode_channel(payload, first), self._decode_channel(payload, second)),
            total_punches=values["total_punches"] or 0,
            training_time_ms=values["training_time"] or 0,
            session_id=values["session_id"] or "",
            learning_complete=values["learning_complete"] or False,
            punch_threshold=values["punch_threshold"] or 0.0,
            provided=frozenset(k for k, v in values.items() if v is not None),
        )

    def _decode_punch(self, payload: Dict[str, Any]) -> PunchEvent:
        zone = _text(payload.get("zone"))
        return PunchEvent(
            channel=self._resolve_channel(payload.get("sensor"), zone),
            force=_non_negative(payload.get("force")) or 0.0,
            zone=zone,
            combined_force=_non_negative(payload.get("combined_force")),
            bpm=_count(payload.get("bpm")),
            punch_number=_count(payload.get("punch_number")),
            timestamp_ms=_count(payload.get("timestamp")),
        )

    def _resolve_channel(self, sensor: Any, zone: Optional[str]) -> int:
        """
        Channel number from the "sensor" field (1, 2, "2" or "sensor2"),
        else from a known zone label, else the first channel.
        """
        numbers = {c.number for c in self._protocol.channels}

        n = _number(sensor)
        if n is None and isinstance(sensor, str):
            for c in self._protocol.channels:
                if sensor == c.key:
                    return c.number
            if sensor.strip().isdecimal():
                n = int(sensor)
        if n is not None and int(n) in numbers:
            return int(n)

        if zone is not None:
            for c in self._protocol.channels:
                if zone.lower() == c.zone.lower():
                    return c.number
        return self._protocol.channels[0].number
