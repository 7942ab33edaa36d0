"""Connection lifecycle and end-to-end stream handling of the session controller."""

import pytest

from boxing_board.MessageDecoder import DecodeErrorKind
from boxing_board.SessionController import (
    ERR_CONNECT_TIMEOUT,
    ERR_CONNECTION_LOST,
    ERR_OPEN_FAILED,
    ERR_WRITE_FAILED,
    ConnectionState,
    SessionController,
)

REALTIME = (
    '{"type":"realtime","sensor1":{"current":0.2,"max":0.2,"punches":0,"detected":false},'
    '"sensor2":{"current":0.1,"max":0.1,"punches":0,"detected":false},"total_punches":0}\n'
)
PUNCH = '{"type":"punch_event","sensor":1,"zone":"upper","force":2.3,"punch_number":1}\n'


class Recorder:
    """Collects every controller signal emission, in order."""

    def __init__(self, controller: SessionController) -> None:
        self.states = []
        self.snapshots = []
        self.logs = []
        self.strikes = []
        self.statuses = []
        self.warnings = []
        self.errors = []
        controller.connectionStateChanged.connect(self.states.append)
        controller.snapshotChanged.connect(self.snapshots.append)
        controller.sessionLogChanged.connect(self.logs.append)
        controller.strikeObserved.connect(lambda ch, force: self.strikes.append((ch, force)))
        controller.statusReceived.connect(self.statuses.append)
        controller.protocolWarning.connect(self.warnings.append)
        controller.errorOccurred.connect(lambda msg, code: self.errors.append((msg, code)))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def controller(transport, protocol):
    return SessionController(transport, protocol)


@pytest.fixture
def events(controller):
    return Recorder(controller)


@pytest.fixture
def streaming(controller, transport):
    controller.connectTo("BoxingSensor_01")
    transport.accept()
    return controller


# =============================================================================
# CONNECTING
# =============================================================================

class TestConnect:

    def test_initial_state(self, controller):
        assert controller.state is ConnectionState.IDLE
        assert controller.device_id is None
        assert controller.session_log.total_count == 0
        assert controller.snapshot.session_id.startswith("session_")

    def test_connect_then_open_streams(self, controller, transport, events):
        controller.connectTo("AA:BB")
        assert controller.state is ConnectionState.CONNECTING
        assert controller.device_id == "AA:BB"
        assert transport.opened_ids == ["AA:BB"]
        assert controller._connect_timer.isActive()

        transport.accept()
        assert controller.state is ConnectionState.STREAMING
        assert not controller._connect_timer.isActive()
        assert events.states == [ConnectionState.CONNECTING, ConnectionState.STREAMING]

    def test_watchdog_uses_configured_timeout(self, controller, protocol):
        assert controller._connect_timer.interval() == int(protocol.connect_timeout_s * 1000)
        assert controller._connect_timer.isSingleShot()

    def test_open_failure_is_error(self, controller, transport, events):
        controller.connectTo("AA:BB")
        transport.refuse("not found")
        assert controller.state is ConnectionState.ERROR
        assert events.errors[-1][1] == ERR_OPEN_FAILED
        assert "not found" in events.errors[-1][0]

    def test_connect_timeout_is_error(self, controller, transport, events):
        controller.connectTo("AA:BB")
        controller._on_connect_timeout()
        assert controller.state is ConnectionState.ERROR
        assert transport.close_calls == 1
        assert events.errors[-1][1] == ERR_CONNECT_TIMEOUT

    def test_timeout_after_streaming_is_ignored(self, streaming, events):
        streaming._on_connect_timeout()
        assert streaming.state is ConnectionState.STREAMING
        assert events.errors == []

    def test_late_open_after_disconnect_is_ignored(self, controller, transport):
        controller.connectTo("AA:BB")
        controller.disconnect()
        transport.accept()
        assert controller.state is ConnectionState.DISCONNECTED

    def test_switching_device_closes_current_stream(self, streaming, transport):
        streaming.connectTo("CC:DD")
        assert transport.close_calls == 1
        assert transport.opened_ids == ["BoxingSensor_01", "CC:DD"]
        assert streaming.state is ConnectionState.CONNECTING
        assert streaming.device_id == "CC:DD"

    def test_new_stream_starts_clean(self, streaming, transport):
        transport.push(REALTIME + PUNCH + '{"type":"punch"')
        old_session = streaming.snapshot.session_id

        streaming.connectTo("CC:DD")
        transport.accept()
        assert streaming.session_log.total_count == 0
        assert streaming.snapshot.channels[0].current == 0.0
        assert streaming.snapshot.session_id != old_session
        assert streaming.decode_failures == {}
        assert streaming._framer.pending == ""


# =============================================================================
# STREAMING
# =============================================================================

class TestStreaming:

    @pytest.mark.parametrize("cuts", [(10, 150, 200), (1, 2, 3), (180, 181, 260)])
    def test_end_to_end_scenario(self, streaming, transport, events, cuts):
        data = REALTIME + PUNCH
        a, b, c = cuts
        for chunk in (data[:a], data[a:b], data[b:c], data[c:]):
            transport.push(chunk)

        assert streaming.snapshot.channels[0].current == 0.2
        assert streaming.snapshot.channels[1].current == 0.1
        assert streaming.session_log.total_count == 1
        assert streaming.session_log.peak_force == 2.3
        assert streaming.session_log.records[0].zone == "upper"
        assert events.strikes == []

    def test_punch_event_does_not_touch_snapshot(self, streaming, transport):
        before = streaming.snapshot
        transport.push(PUNCH)
        assert streaming.snapshot is before

    def test_malformed_lines_are_counted_not_applied(self, streaming, transport, events):
        before = streaming.snapshot
        transport.push('not json\n{incomplete\n{"type":"wat"}\n{bad}\n\n')
        assert streaming.snapshot is before
        assert streaming.session_log.total_count == 0
        assert streaming.state is ConnectionState.STREAMING
        assert streaming.decode_failures == {
            DecodeErrorKind.NOT_AN_OBJECT: 3,
            DecodeErrorKind.UNKNOWN_TYPE: 1,
            DecodeErrorKind.MALFORMED_SYNTAX: 1,
        }
        assert events.errors == []

    def test_hostile_lines_do_not_escape_the_slot(self, streaming, transport, events):
        transport.push('{"event":["punch"]}\n{"event":{}}\n{"total_punches":' + "9" * 5000 + "}\n")
        assert streaming.state is ConnectionState.STREAMING
        assert streaming.decode_failures == {
            DecodeErrorKind.UNKNOWN_TYPE: 2,
            DecodeErrorKind.MALFORMED_SYNTAX: 1,
        }
        assert events.errors == []

    def test_chunks_outside_streaming_are_dropped(self, controller, transport):
        before = controller.snapshot
        controller.connectTo("AA:BB")
        transport.push(REALTIME)
        assert controller.snapshot is before
        assert controller._framer.pending == ""

    def test_detected_channel_emits_strike(self, streaming, transport, events):
        transport.push('{"type":"realtime","sensor1":{"current":0.3},"sensor2":{"current":1.9,"detected":true}}\n')
        assert events.strikes == [(2, 1.9)]

    def test_status_is_forwarded(self, streaming, transport, events):
        transport.push('{"type":"status","battery":77}\n')
        assert events.statuses == [{"type": "status", "battery": 77}]

    def test_inconsistent_totals_warn(self, streaming, transport, events):
        transport.push('{"type":"realtime","sensor1":{"punches":1},"sensor2":{"punches":1},"total_punches":5}\n')
        assert streaming.snapshot.total_punches == 5
        assert len(events.warnings) == 1

    def test_snapshot_signal_per_telemetry(self, streaming, transport, events):
        count = len(events.snapshots)
        transport.push(REALTIME * 3)
        assert len(events.snapshots) == count + 3

    def test_split_multibyte_character(self, streaming, transport):
        data = '{"type":"punch","zone":"tête","force":1.0}\n'.encode("utf-8")
        cut = data.index("ê".encode("utf-8")) + 1
        transport.push_bytes(data[:cut])
        transport.push_bytes(data[cut:])
        assert streaming.session_log.records[0].zone == "tête"


# =============================================================================
# LINK LOSS & DISCONNECT
# =============================================================================

class TestLinkLoss:

    def test_connection_lost_keeps_data(self, streaming, transport, events):
        transport.push(REALTIME + PUNCH + '{"type":')
        snapshot, log = streaming.snapshot, streaming.session_log

        transport.drop("peer reset")
        assert streaming.state is ConnectionState.ERROR
        assert events.errors[-1][1] == ERR_CONNECTION_LOST
        assert transport.close_calls == 1
        assert streaming.snapshot is snapshot
        assert streaming.session_log is log
        assert streaming._framer.pending == ""

    def test_loss_while_connecting_is_ignored(self, controller, transport):
        controller.connectTo("AA:BB")
        transport.drop()
        assert controller.state is ConnectionState.CONNECTING

    def test_disconnect_keeps_data(self, streaming, transport):
        transport.push(PUNCH)
        streaming.disconnect()
        assert streaming.state is ConnectionState.DISCONNECTED
        assert transport.close_calls == 1
        assert streaming.session_log.total_count == 1
        assert not streaming._connect_timer.isActive()

    def test_disconnect_while_connecting_stops_watchdog(self, controller):
        controller.connectTo("AA:BB")
        controller.disconnect()
        assert not controller._connect_timer.isActive()


# =============================================================================
# RESET / CALIBRATE / COMMANDS
# =============================================================================

class TestCommands:

    def test_reset_while_streaming(self, streaming, transport):
        transport.push(REALTIME + PUNCH)
        old_session = streaming.snapshot.session_id

        assert streaming.reset() is True
        assert streaming.session_log.total_count == 0
        assert streaming.session_log.peak_force == 0.0
        assert streaming.snapshot.total_punches == 0
        assert streaming.snapshot.channels[0].current == 0.0
        assert streaming.snapshot.session_id != old_session
        assert transport.writes == [b"RESET\n"]

    def test_reset_twice_matches_reset_once(self, streaming, transport):
        transport.push(REALTIME + PUNCH)
        streaming.reset()
        once_snapshot, once_log = streaming.snapshot, streaming.session_log
        streaming.reset()

        assert streaming.session_log == once_log
        assert streaming.snapshot.channels == once_snapshot.channels
        assert streaming.snapshot.total_punches == once_snapshot.total_punches
        assert streaming.snapshot.training_elapsed_ms == once_snapshot.training_elapsed_ms
        assert streaming.snapshot.session_id != once_snapshot.session_id

    def test_reset_keeps_calibration(self, streaming, transport):
        transport.push('{"type":"realtime","learning_complete":true,"punch_threshold":1.4}\n')
        streaming.reset()
        assert streaming.snapshot.calibration_complete is True
        assert streaming.snapshot.detection_threshold == 1.4

    def test_reset_when_disconnected_sends_nothing(self, streaming, transport):
        transport.push(PUNCH)
        streaming.disconnect()
        assert streaming.reset() is True
        assert streaming.session_log.total_count == 0
        assert transport.writes == []

    @pytest.mark.parametrize("setup", ["idle", "connecting", "error"])
    def test_reset_refused_in_other_states(self, controller, transport, setup):
        if setup != "idle":
            controller.connectTo("AA:BB")
        if setup == "error":
            transport.refuse()
        assert controller.reset() is False
        assert transport.writes == []

    def test_calibrate(self, streaming, transport):
        assert streaming.calibrate() is True
        assert transport.writes == [b"CALIBRATE\n"]

    def test_calibrate_needs_stream(self, controller, transport):
        assert controller.calibrate() is False
        assert transport.writes == []

    def test_raw_command_is_terminated(self, streaming, transport):
        streaming.sendCommand("START")
        assert transport.writes == [b"START\n"]

    def test_write_failure_reports_but_keeps_streaming(self, streaming, transport, events):
        transport.fail_writes = OSError("broken pipe")
        streaming.calibrate()
        assert streaming.state is ConnectionState.STREAMING
        assert events.errors[-1][1] == ERR_WRITE_FAILED
