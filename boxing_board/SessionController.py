import enum
import logging
import threading
import time
import uuid
from collections import Counter
from typing import Dict, Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal, pyqtSlot

from .LineFramer import LineFramer
from .MessageDecoder import (
    DecodeErrorKind,
    DecodeFailure,
    MessageDecoder,
    PunchEvent,
    RealtimeTelemetry,
    StatusMessage,
)
from .ProtocolLoader import SensorProtocolSpec
from .ProtocolManager import get_protocol
from .SensorCommand import SensorCommand
from .SensorTransport import SensorTransport
from .SessionLog import SessionLog, append_punch
from .TelemetryState import (
    TelemetrySnapshot,
    apply_telemetry,
    detected_strikes,
    telemetry_warnings,
)

log = logging.getLogger(__name__)


# --- Enums & error codes ---

class ConnectionState(enum.Enum):
    IDLE = "Idle"
    CONNECTING = "Connecting..."
    STREAMING = "Streaming"
    ERROR = "Error"
    DISCONNECTED = "Disconnected"


ERR_OPEN_FAILED = 1
ERR_CONNECT_TIMEOUT = 2
ERR_CONNECTION_LOST = 3
ERR_WRITE_FAILED = 4


# ============
# Main class
# ============
class SessionController(QObject):
    """
    Owns one sensor session: the connection state machine, the per-connection
    LineFramer, the live TelemetrySnapshot and the SessionLog.

    Responsibilities:
    - Drives a SensorTransport through Idle -> Connecting -> Streaming -> (Error | Disconnected).
    - Pushes every inbound chunk through framer -> decoder -> reducer, one chunk at a time.
    - Exposes the current state through read-only properties and Qt signals.
    - Forwards RESET / CALIBRATE to the sensor, fire-and-forget.

    A malformed line is counted and logged; it never changes the connection state.
    """

    # Signals
    connectionStateChanged = pyqtSignal(object)  # ConnectionState
    snapshotChanged = pyqtSignal(object)         # TelemetrySnapshot
    sessionLogChanged = pyqtSignal(object)       # SessionLog
    strikeObserved = pyqtSignal(int, float)      # (channel, force)
    statusReceived = pyqtSignal(object)          # dict payload
    protocolWarning = pyqtSignal(str)
    errorOccurred = pyqtSignal(str, int)         # (message, code)

    def __init__(
        self,
        transport: SensorTransport,
        protocol: Optional[SensorProtocolSpec] = None,
        *,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        protocol = protocol or get_protocol()

        self._transport = transport                      # the link to the sensor (BLE, RFCOMM, fake)
        self._protocol = protocol                        # wire protocol + policy constants
        self._decoder = MessageDecoder(protocol)         # stateless, safe to share across sessions
        self._channel_numbers = tuple(c.number for c in protocol.channels)

        # State
        self._state = ConnectionState.IDLE               # where the state machine currently is
        self._device_id: Optional[str] = None            # the device targeted by the last connect request
        self._framer = LineFramer()                      # partial-line buffer, replaced for every new stream
        self._snapshot = TelemetrySnapshot.fresh(self._new_session_id(), protocol.default_threshold)
        self._log = SessionLog.empty()
        self._decode_failures: Counter = Counter()       # DecodeErrorKind -> count for this stream
        self._training_started = time.monotonic()        # local fallback clock for training time

        # One writer at a time: chunks, transport callbacks and user commands all take this lock
        self._lock = threading.RLock()

        self._connect_timer = QTimer(self)
        self._connect_timer.setSingleShot(True)
        self._connect_timer.setInterval(int(protocol.connect_timeout_s * 1000))
        self._connect_timer.timeout.connect(self._on_connect_timeout)

        transport.opened.connect(self._on_transport_opened)
        transport.openFailed.connect(self._on_transport_failed)
        transport.connectionLost.connect(self._on_transport_lost)
        transport.chunkReceived.connect(self.feed)

    # ---------- Read-only view ----------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def snapshot(self) -> TelemetrySnapshot:
        return self._snapshot

    @property
    def session_log(self) -> SessionLog:
        return self._log

    @property
    def decode_failures(self) -> Dict[DecodeErrorKind, int]:
        return dict(self._decode_failures)

    @property
    def protocol(self) -> SensorProtocolSpec:
        return self._protocol

    # ---------- Public API (slots) ----------

    @pyqtSlot(str)
    def connectTo(self, device_id: str) -> None:
        """Begin (or switch to) a connection to `device_id`."""
        with self._lock:
            if self._state in (ConnectionState.STREAMING, ConnectionState.CONNECTING):
                log.info("[Session] Switching from %s to %s", self._device_id, device_id)
                self._transport.close()

            self._device_id = device_id
            self._set_state(ConnectionState.CONNECTING)
            self._connect_timer.start()
            log.info("[Session] Connecting to %s", device_id)

        self._transport.open(device_id)

    @pyqtSlot()
    def disconnect(self) -> None:
        """User-initiated disconnect. Snapshot and log are kept until the next stream."""
        with self._lock:
            self._connect_timer.stop()
            self._transport.close()
            self._framer.clear()
            self._set_state(ConnectionState.DISCONNECTED)
            log.info("[Session] Disconnected from %s", self._device_id)

    @pyqtSlot(result=bool)
    def reset(self) -> bool:
        """
        Start a fresh training session: empty log, zeroed counters, new session id.
        Only allowed while streaming or disconnected. While streaming, RESET is
        also sent to the sensor.
        """
        with self._lock:
            if self._state not in (ConnectionState.STREAMING, ConnectionState.DISCONNECTED):
                log.warning("[Session] Reset ignored while %s", self._state.name)
                return False

            self._log = SessionLog.empty()
            self._snapshot = self._snapshot.zeroed(self._new_session_id())
            self._training_started = time.monotonic()
            log.info("[Session] Training session reset (%s)", self._snapshot.session_id)

            self.sessionLogChanged.emit(self._log)
            self.snapshotChanged.emit(self._snapshot)

            if self._state is ConnectionState.STREAMING:
                self.sendCommand(SensorCommand.RESET)
            return True

    @pyqtSlot(result=bool)
    def calibrate(self) -> bool:
        """Ask the sensor to re-learn its resting baseline. Needs a live stream."""
        with self._lock:
            if self._state is not ConnectionState.STREAMING:
                log.warning("[Session] Calibrate ignored while %s", self._state.name)
                return False
            self.sendCommand(SensorCommand.CALIBRATE)
            return True

    def sendCommand(self, command: SensorCommand | str) -> None:
        """
        Send a control token, newline-terminated. No reply is awaited; the
        firmware's acknowledgement (if any) is not assumed to be JSON.
        """
        if isinstance(command, SensorCommand):
            payload = command.to_wire(
                case=self._protocol.command_case,
                terminator=self._protocol.command_terminator,
            )
        else:
            payload = (command + self._protocol.command_terminator).encode("utf-8")

        if self._state is not ConnectionState.STREAMING:
            log.warning("[Session] Not streaming, dropping command %r", payload)
            return
        try:
            self._transport.write(payload)
        except (OSError, RuntimeError) as e:
            self._emit_error(f"Command write failed: {e}", ERR_WRITE_FAILED)

    # ---------- Inbound data ----------

    @pyqtSlot(str)
    def feed(self, chunk: str) -> None:
        """Process one chunk from the transport to completion."""
        with self._lock:
            if self._state is not ConnectionState.STREAMING:
                log.debug("[Session] Dropping %d chars received while %s", len(chunk), self._state.name)
                return
            for line in self._framer.feed(chunk):
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        match self._decoder.decode(line):
            case RealtimeTelemetry() as message:
                self._apply_telemetry(message)
            case PunchEvent() as event:
                self._append_punch(event)
            case StatusMessage(payload=payload):
                log.info("[Session] Sensor status: %s", payload)
                self.statusReceived.emit(payload)
            case DecodeFailure() as failure:
                self._record_failure(failure)

    def _apply_telemetry(self, message: RealtimeTelemetry) -> None:
        previous = self._snapshot
        elapsed_ms = int((time.monotonic() - self._training_started) * 1000)
        updated = apply_telemetry(
            previous,
            message,
            detection_mode=self._protocol.detection_mode,
            local_elapsed_ms=elapsed_ms,
        )
        self._snapshot = updated

        for warning in telemetry_warnings(previous, message, updated, self._channel_numbers):
            log.warning("[Protocol] %s", warning)
            self.protocolWarning.emit(warning)

        self.snapshotChanged.emit(updated)
        for channel, force in detected_strikes(updated, self._channel_numbers):
            log.debug("[Session] Strike on channel %d, force %.2f", channel, force)
            self.strikeObserved.emit(channel, force)

    def _append_punch(self, event: PunchEvent) -> None:
        self._log = append_punch(
            self._log,
            event,
            zones=self._protocol.zones,
            derived_force_scale=self._protocol.derived_force_scale,
            received_at_ms=int(time.time() * 1000),
        )
        record = self._log.records[-1]
        log.info(
            "[Session] Punch #%d %s force=%.2f",
            record.sequence_number, record.zone, record.force,
        )
        self.sessionLogChanged.emit(self._log)

    def _record_failure(self, failure: DecodeFailure) -> None:
        self._decode_failures[failure.kind] += 1
        if failure.kind is DecodeErrorKind.UNKNOWN_TYPE:
            log.warning("[Decoder] Unknown message %s: %s", failure.detail, failure.payload)
        else:
            log.debug("[Decoder] %s: %r %s", failure.kind.value, failure.line, failure.detail)

    # ---------- Transport reactions ----------

    def _on_transport_opened(self) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTING:
                log.debug("[Session] Ignoring late 'opened' while %s", self._state.name)
                return
            self._connect_timer.stop()

            self._framer = LineFramer()
            self._snapshot = TelemetrySnapshot.fresh(self._new_session_id(), self._protocol.default_threshold)
            self._log = SessionLog.empty()
            self._decode_failures.clear()
            self._training_started = time.monotonic()

            self._set_state(ConnectionState.STREAMING)
            self.snapshotChanged.emit(self._snapshot)
            self.sessionLogChanged.emit(self._log)
            log.info("[Session] Streaming from %s (%s)", self._device_id, self._snapshot.session_id)

    def _on_transport_failed(self, reason: str) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTING:
                return
            self._connect_timer.stop()
            self._set_state(ConnectionState.ERROR)
            self._emit_error(f"Could not connect to {self._device_id}: {reason}", ERR_OPEN_FAILED)

    def _on_connect_timeout(self) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTING:
                return
            self._transport.close()
            self._set_state(ConnectionState.ERROR)
            self._emit_error(
                f"Timed out after {self._protocol.connect_timeout_s:.0f} s connecting to {self._device_id}",
                ERR_CONNECT_TIMEOUT,
            )

    def _on_transport_lost(self, reason: str) -> None:
        with self._lock:
            if self._state is not ConnectionState.STREAMING:
                return
            self._transport.close()
            self._framer.clear()
            self._set_state(ConnectionState.ERROR)
            self._emit_error(f"Connection to {self._device_id} lost: {reason}", ERR_CONNECTION_LOST)

    # ---------- State helpers ----------

    def _set_state(self, new_state: ConnectionState) -> None:
        self._state = new_state
        self.connectionStateChanged.emit(new_state)

    def _emit_error(self, message: str, code: int = 0) -> None:
        log.warning("[Session] %s", message)
        self.errorOccurred.emit(message, code)

    def _new_session_id(self) -> str:
        return f"{self._protocol.session_id_prefix}{uuid.uuid4().hex[:12]}"
