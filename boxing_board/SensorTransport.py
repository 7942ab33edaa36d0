import codecs
from typing import Optional

from PyQt6.QtCore import QObject, pyqtSignal


class SensorTransport(QObject):
    """
    Byte source and command sink for one sensor link (BLE, RFCOMM serial, ...).

    Implementations do their I/O wherever they like (usually a worker
    QThread) and report back only through the signals below, so the
    SessionController never touches a socket or an event loop.

    Signals:
        opened: the link is up and data may flow
        openFailed(str): the link could not be opened
        connectionLost(str): an open link dropped without being asked to
        chunkReceived(str): decoded text, split at arbitrary points
    """

    opened = pyqtSignal()
    openFailed = pyqtSignal(str)
    connectionLost = pyqtSignal(str)
    chunkReceived = pyqtSignal(str)

    def __init__(self, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def open(self, device_id: str) -> None:
        """Start opening a link to `device_id`; must return without blocking."""
        raise NotImplementedError

    def close(self) -> None:
        """Tear the link down. Safe to call when nothing is open."""
        raise NotImplementedError

    def write(self, payload: bytes) -> None:
        """Queue `payload` for the device. Fire-and-forget."""
        raise NotImplementedError

    # ---------- Helpers for subclasses ----------

    def _emit_bytes(self, data: bytes) -> None:
        """Decode raw bytes (multi-byte characters may straddle two reads) and emit them."""
        text = self._decoder.decode(data)
        if text:
            self.chunkReceived.emit(text)

    def _reset_decoder(self) -> None:
        self._decoder.reset()
