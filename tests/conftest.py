import sys
from typing import List, Optional

import pytest
from PyQt6.QtCore import QCoreApplication

from boxing_board.ProtocolManager import get_protocol, reset_protocol
from boxing_board.SensorTransport import SensorTransport


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def qapp():
    """One QCoreApplication for the whole run; signals between same-thread objects are direct."""
    app = QCoreApplication.instance() or QCoreApplication(sys.argv)
    yield app


@pytest.fixture
def protocol():
    reset_protocol()
    yield get_protocol()
    reset_protocol()


class FakeTransport(SensorTransport):
    """Transport that records calls and lets the test drive its signals synchronously."""

    def __init__(self) -> None:
        super().__init__()
        self.opened_ids: List[str] = []
        self.close_calls = 0
        self.writes: List[bytes] = []
        self.fail_writes: Optional[Exception] = None

    def open(self, device_id: str) -> None:
        self.opened_ids.append(device_id)

    def close(self) -> None:
        self.close_calls += 1

    def write(self, payload: bytes) -> None:
        if self.fail_writes is not None:
            raise self.fail_writes
        self.writes.append(payload)

    # Test drivers
    def accept(self) -> None:
        self.opened.emit()

    def refuse(self, reason: str = "refused") -> None:
        self.openFailed.emit(reason)

    def drop(self, reason: str = "link dropped") -> None:
        self.connectionLost.emit(reason)

    def push(self, text: str) -> None:
        self.chunkReceived.emit(text)

    def push_bytes(self, data: bytes) -> None:
        self._emit_bytes(data)


@pytest.fixture
def transport(qapp):
    return FakeTransport()
