import logging
from typing import Optional, Set

import serial
from PyQt6.QtCore import QObject, QThread

from ..SensorTransport import SensorTransport

log = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200


class _SerialReader(QThread):
    """
    Background thread for one serial connection: opens the port, then
    forwards whatever arrives until stopped or the port goes away.
    """

    def __init__(self, transport: "SerialSensorTransport", port: str) -> None:
        super().__init__()
        self.transport = transport
        self.port = port
        self.running = False
        self.stop_requested = False
        self.serial: Optional[serial.Serial] = None

    def run(self) -> None:
        try:
            self.serial = self.transport._make_serial(self.port)
        except (serial.SerialException, OSError, ValueError) as e:
            log.warning("[Serial] Could not open %s: %s", self.port, e)
            if not self.stop_requested:
                self.transport.openFailed.emit(str(e))
            return

        if self.stop_requested:
            self._disconnect()
            return

        self.running = True
        log.info("[Serial] Opened %s", self.port)
        self.transport.opened.emit()

        try:
            self._read_loop()
        except (serial.SerialException, OSError) as e:
            if self.running:
                log.warning("[Serial] Link on %s dropped: %s", self.port, e)
                self.transport.connectionLost.emit(str(e))
        finally:
            self._disconnect()

    def _read_loop(self) -> None:
        while self.running and not self.stop_requested:
            # Blocks for at most the port's read timeout
            data = self.serial.read(self.serial.in_waiting or 1)
            if data:
                self.transport._emit_bytes(data)

    def _disconnect(self) -> None:
        if self.serial and self.serial.is_open:
            self.serial.close()

    def stop(self, wait_ms: int) -> bool:
        """Ask the thread to finish. False if it is still stuck opening the port."""
        self.stop_requested = True
        self.running = False
        return self.wait(wait_ms)


class SerialSensorTransport(SensorTransport):
    """
    Bluetooth-classic (RFCOMM) or USB serial link to the sensor.

    The device id is the port name: "/dev/rfcomm0", "/dev/ttyUSB0", "COM5", ...
    Pair and bind the sensor with the OS first; this class only opens the port.
    """

    def __init__(
        self,
        *,
        baudrate: int = DEFAULT_BAUDRATE,
        read_timeout_s: float = 0.2,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._baudrate = baudrate
        self._read_timeout_s = read_timeout_s
        self._reader: Optional[_SerialReader] = None
        self._retired: Set[_SerialReader] = set()  # stopped readers still blocked in open

    @property
    def port(self) -> Optional[str]:
        return self._reader.port if self._reader else None

    def _make_serial(self, port: str) -> serial.Serial:
        return serial.Serial(port, self._baudrate, timeout=self._read_timeout_s)

    def open(self, device_id: str) -> None:
        self.close()
        self._reset_decoder()
        self._reader = _SerialReader(self, device_id)
        self._reader.start()

    def close(self) -> None:
        reader = self._reader
        self._reader = None
        if reader is None:
            return
        # One read timeout is the longest a healthy read loop takes to notice
        if not reader.stop(int(self._read_timeout_s * 1000) + 100):
            log.info("[Serial] %s is still opening; it will be closed when the open returns", reader.port)
            self._retired.add(reader)
            reader.finished.connect(lambda: self._retired.discard(reader))
            if reader.isFinished():
                self._retired.discard(reader)
        log.info("[Serial] Closed %s", reader.port)

    def write(self, payload: bytes) -> None:
        reader = self._reader
        if reader is None or reader.serial is None or not reader.serial.is_open:
            raise RuntimeError("serial port is not open")
        reader.serial.write(payload)
        reader.serial.flush()
