import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Literal, Tuple, Union

import yaml


MIN_CONNECT_TIMEOUT_S = 15.0  # real-world SPP pairing regularly takes >10 s

DetectionMode = Literal["edge", "level"]
CommandCase = Literal["upper", "lower"]


# ===== DATACLASSES =====

@dataclass(frozen=True)
class ChannelSpec:
    """One sensing channel: its wire key (e.g. "sensor1") and zone label."""
    number: int
    key: str
    zone: str


@dataclass(frozen=True)
class FlattenedFields:
    """Suffixes used by the flattened telemetry variant ("sensor1_current", ...)."""
    current: str = "_current"
    max: str = "_max"
    punches: str = "_punches"
    detected: str = "_detected"


@dataclass(frozen=True)
class SensorProtocolSpec:
    """Container for the entire parsed protocol file."""
    channels: Tuple[ChannelSpec, ChannelSpec]
    realtime_tags: FrozenSet[str]
    punch_tags: FrozenSet[str]
    status_tags: FrozenSet[str]
    event_markers: FrozenSet[str]
    flattened: FlattenedFields
    detection_mode: DetectionMode
    default_threshold: float
    derived_force_scale: float
    session_id_prefix: str
    connect_timeout_s: float
    command_case: CommandCase
    command_terminator: str
    discovery_patterns: Tuple[str, ...]

    @property
    def zones(self) -> Dict[int, str]:
        """Channel number -> zone label."""
        return {c.number: c.zone for c in self.channels}

    def channel(self, number: int) -> ChannelSpec:
        for c in self.channels:
            if c.number == number:
                return c
        raise KeyError(f"No channel {number} in protocol (have {[c.number for c in self.channels]}).")


# ========== Helpers ==========

def _require_mapping(node: Any, where: str) -> Dict[str, Any]:
    if not isinstance(node, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(node).__name__}.")
    return node

def _tag_set(node: Any, where: str) -> FrozenSet[str]:
    """Parses a list of string tags; a single string is accepted as a one-item list."""
    if isinstance(node, str):
        node = [node]
    if not isinstance(node, list) or not node:
        raise ValueError(f"{where}: expected a non-empty list of tags.")
    if not all(isinstance(t, str) and t for t in node):
        raise ValueError(f"{where}: every tag must be a non-empty string.")
    return frozenset(node)

def _positive_float(node: Any, where: str) -> float:
    if isinstance(node, bool) or not isinstance(node, (int, float)):
        raise ValueError(f"{where}: must be numeric, got {node!r}.")
    value = float(node)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{where}: must be > 0, got {node!r}.")
    return value


# ---------- Parsers ----------

def _parse_channels(doc: Dict[str, Any]) -> Tuple[ChannelSpec, ChannelSpec]:
    raw = _require_mapping(doc.get("CHANNELS"), "CHANNELS")
    channels = []
    for number, node in raw.items():
        where = f"CHANNELS.{number}"
        try:
            number = int(number)
        except (TypeError, ValueError):
            raise ValueError(f"{where}: channel numbers must be integers.")
        node = _require_mapping(node, where)
        key = node.get("key")
        if not isinstance(key, str) or not key:
            raise ValueError(f"{where}: missing 'key'.")
        zone = str(node.get("zone", f"zone {number}"))
        channels.append(ChannelSpec(number=number, key=key, zone=zone))

    if len(channels) != 2:
        raise ValueError(f"CHANNELS: the sensor has exactly two channels, found {len(channels)}.")
    if channels[0].key == channels[1].key:
        raise ValueError("CHANNELS: channel keys must differ.")
    channels.sort(key=lambda c: c.number)
    return channels[0], channels[1]

def _parse_message_types(doc: Dict[str, Any]) -> Tuple[FrozenSet[str], FrozenSet[str], FrozenSet[str]]:
    raw = _require_mapping(doc.get("MESSAGE_TYPES"), "MESSAGE_TYPES")
    realtime = _tag_set(raw.get("realtime"), "MESSAGE_TYPES.realtime")
    punch = _tag_set(raw.get("punch_event"), "MESSAGE_TYPES.punch_event")
    status = _tag_set(raw.get("status"), "MESSAGE_TYPES.status")

    overlap = (realtime & punch) | (realtime & status) | (punch & status)
    if overlap:
        raise ValueError(f"MESSAGE_TYPES: tags used by more than one message type: {sorted(overlap)}")
    return realtime, punch, status

def _parse_flattened(doc: Dict[str, Any]) -> FlattenedFields:
    raw = doc.get("FLATTENED_FIELDS")
    if raw is None:
        return FlattenedFields()
    raw = _require_mapping(raw, "FLATTENED_FIELDS")
    defaults = FlattenedFields()
    return FlattenedFields(
        current=str(raw.get("current", defaults.current)),
        max=str(raw.get("max", defaults.max)),
        punches=str(raw.get("punches", defaults.punches)),
        detected=str(raw.get("detected", defaults.detected)),
    )

def _parse_detection(doc: Dict[str, Any]) -> Tuple[DetectionMode, float]:
    raw = _require_mapping(doc.get("DETECTION") or {}, "DETECTION")
    mode = raw.get("mode", "edge")
    if mode not in ("edge", "level"):
        raise ValueError(f"DETECTION.mode: unknown mode '{mode}'. Expected 'edge' or 'level'.")
    threshold = _positive_float(raw.get("default_threshold", 0.8), "DETECTION.default_threshold")
    return mode, threshold

def _parse_connection(doc: Dict[str, Any]) -> float:
    raw = _require_mapping(doc.get("CONNECTION") or {}, "CONNECTION")
    timeout = _positive_float(raw.get("connect_timeout_s", 20.0), "CONNECTION.connect_timeout_s")
    if timeout < MIN_CONNECT_TIMEOUT_S:
        raise ValueError(
            f"CONNECTION.connect_timeout_s: {timeout} is below the {MIN_CONNECT_TIMEOUT_S} s minimum."
        )
    return timeout

def _parse_commands(doc: Dict[str, Any]) -> Tuple[CommandCase, str]:
    raw = _require_mapping(doc.get("COMMANDS") or {}, "COMMANDS")
    case = raw.get("case", "upper")
    if case not in ("upper", "lower"):
        raise ValueError(f"COMMANDS.case: unknown case '{case}'. Expected 'upper' or 'lower'.")
    terminator = raw.get("terminator", "\n")
    if not isinstance(terminator, str) or not terminator:
        raise ValueError("COMMANDS.terminator: must be a non-empty string.")
    return case, terminator

def _parse_discovery(doc: Dict[str, Any]) -> Tuple[str, ...]:
    raw = _require_mapping(doc.get("DISCOVERY") or {}, "DISCOVERY")
    patterns = raw.get("name_patterns") or []
    if not isinstance(patterns, list):
        raise ValueError("DISCOVERY.name_patterns: must be a list.")
    return tuple(str(p).lower() for p in patterns)


# ---------- Public loader ----------

def load_protocol(path_or_str: Union[str, Path]) -> SensorProtocolSpec:
    """
    Load a YAML protocol (file path or YAML string) into typed dataclasses.
    Raises ValueError on invalid shapes or values.
    """
    if isinstance(path_or_str, Path):
        text = path_or_str.read_text(encoding="utf-8")
    elif "\n" not in path_or_str and Path(path_or_str).is_file():
        text = Path(path_or_str).read_text(encoding="utf-8")
    else:
        text = path_or_str

    doc = yaml.safe_load(text) or {}
    if not isinstance(doc, dict):
        raise ValueError("Protocol root must be a YAML mapping (dictionary).")

    channels = _parse_channels(doc)
    realtime, punch, status = _parse_message_types(doc)
    mode, threshold = _parse_detection(doc)
    case, terminator = _parse_commands(doc)
    session = _require_mapping(doc.get("SESSION") or {}, "SESSION")

    return SensorProtocolSpec(
        channels=channels,
        realtime_tags=realtime,
        punch_tags=punch,
        status_tags=status,
        event_markers=_tag_set(doc.get("EVENT_MARKERS", ["punch"]), "EVENT_MARKERS"),
        flattened=_parse_flattened(doc),
        detection_mode=mode,
        default_threshold=threshold,
        derived_force_scale=_positive_float(doc.get("DERIVED_FORCE_SCALE", 1.1), "DERIVED_FORCE_SCALE"),
        session_id_prefix=str(session.get("id_prefix", "session_")),
        connect_timeout_s=_parse_connection(doc),
        command_case=case,
        command_terminator=terminator,
        discovery_patterns=_parse_discovery(doc),
    )
