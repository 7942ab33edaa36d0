"""
Provides the single shared protocol description for the boxing sensor.

Loads the YAML-defined SensorProtocolSpec once. Use get_protocol() to access
it; call reset_protocol() only for testing or after editing the file.
"""

from pathlib import Path
from typing import Optional

from .ProtocolLoader import SensorProtocolSpec, load_protocol

PROTOCOL_PATH = Path(__file__).with_name("sensor_protocol.yaml")

_PROTOCOL: Optional[SensorProtocolSpec] = None

def get_protocol() -> SensorProtocolSpec:
    """Return the app-wide `SensorProtocolSpec` (created on first call)."""
    global _PROTOCOL
    if _PROTOCOL is None:
        _PROTOCOL = load_protocol(PROTOCOL_PATH)
    return _PROTOCOL

def reset_protocol():
    """Drop the cached instance so tests can reload it."""
    global _PROTOCOL
    _PROTOCOL = None
