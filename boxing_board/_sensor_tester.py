######################################################################
# Debugging tool for a real sensor.
# Connects over BLE or RFCOMM serial, then logs state changes, strikes,
# punches and a periodic dashboard line until Ctrl+C.
#
#   python -m boxing_board._sensor_tester --scan
#   python -m boxing_board._sensor_tester --ble C2:83:79:F8:C2:86
#   python -m boxing_board._sensor_tester --serial /dev/rfcomm0
######################################################################

import argparse
import asyncio
import logging
import signal
import sys

from PyQt6.QtCore import QCoreApplication, QTimer

from boxing_board.ProtocolManager import get_protocol
from boxing_board.SessionController import ConnectionState, SessionController
from boxing_board.TelemetryState import format_elapsed, zone_percentages
from boxing_board.bluetooth.BLESensorTransport import BLESensorTransport, find_sensor_devices
from boxing_board.rfcomm.SerialSensorTransport import DEFAULT_BAUDRATE, SerialSensorTransport

log = logging.getLogger("sensor_tester")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Minimal headless tester for the boxing sensor")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--ble", metavar="ADDRESS", help="BLE address (or UUID on macOS) of the sensor")
    target.add_argument("--serial", metavar="PORT", help="serial port bound to the sensor, e.g. /dev/rfcomm0")
    target.add_argument("--scan", action="store_true", help="list nearby sensors and exit")
    parser.add_argument("--baudrate", type=int, default=DEFAULT_BAUDRATE)
    parser.add_argument("--scan-timeout", type=float, default=5.0)
    parser.add_argument("--calibrate", action="store_true", help="send CALIBRATE once streaming")
    parser.add_argument("-v", "--verbose", action="store_true", help="log malformed lines too")
    return parser.parse_args(argv)


def scan(timeout: float) -> int:
    protocol = get_protocol()
    devices = asyncio.run(find_sensor_devices(timeout, protocol.discovery_patterns))
    if not devices:
        print("No sensors found.")
        return 1
    for d in devices:
        print(f"{d.address}  {d.name}")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.scan:
        return scan(args.scan_timeout)

    app = QCoreApplication(sys.argv)
    protocol = get_protocol()

    if args.ble:
        transport = BLESensorTransport()
        device_id = args.ble
    else:
        transport = SerialSensorTransport(baudrate=args.baudrate)
        device_id = args.serial

    session = SessionController(transport, protocol)
    zones = [c.zone for c in protocol.channels]

    def on_connection_state(state: ConnectionState) -> None:
        log.info("[connectionStateChanged] %s", state.value)
        if state is ConnectionState.STREAMING and args.calibrate:
            session.calibrate()
        if state is ConnectionState.ERROR:
            app.exit(1)

    def on_punch_log(punches) -> None:
        if not len(punches):
            return
        last = punches.records[-1]
        log.info(
            "[punch] #%d %s force=%.2f derived=%.2f (peak %.2f, avg %.2f)",
            last.sequence_number, last.zone, last.force, last.derived_force,
            punches.peak_force, punches.average_force(),
        )

    def print_dashboard() -> None:
        snap = session.snapshot
        if session.state is not ConnectionState.STREAMING:
            return
        shares = zone_percentages(snap, zones)
        log.info(
            "[dashboard] %s  total=%d  %s  calibrated=%s  failures=%s",
            format_elapsed(snap.training_elapsed_ms),
            snap.total_punches,
            "  ".join(f"{zone}={pct}%" for zone, pct in shares.items()),
            snap.calibration_complete,
            {k.value: v for k, v in session.decode_failures.items()},
        )

    session.connectionStateChanged.connect(on_connection_state)
    session.strikeObserved.connect(lambda ch, force: log.info("[strike] channel %d force %.2f", ch, force))
    session.sessionLogChanged.connect(on_punch_log)
    session.statusReceived.connect(lambda payload: log.info("[status] %s", payload))
    session.errorOccurred.connect(lambda msg, code: log.error("[error %d] %s", code, msg))

    dashboard = QTimer()
    dashboard.timeout.connect(print_dashboard)
    dashboard.start(1000)

    # Let Ctrl+C through the Qt event loop
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    wakeup = QTimer()
    wakeup.timeout.connect(lambda: None)
    wakeup.start(200)

    def shutdown() -> None:
        session.disconnect()
        if isinstance(transport, BLESensorTransport):
            transport.stop()

    app.aboutToQuit.connect(shutdown)
    session.connectTo(device_id)
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
