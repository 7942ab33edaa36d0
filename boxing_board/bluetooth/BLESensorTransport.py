import asyncio
import concurrent.futures
import logging
import sys
import threading
from typing import Coroutine, Iterable, List, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError
from PyQt6.QtCore import QObject, QThread

from ..SensorTransport import SensorTransport
from .BLEDeviceClient import NORDIC_UART, BLEDeviceClient, Timeouts, UartCharacteristics

if sys.platform.startswith("win"):  # Windows WinRT needs STA when using Bleak in a non-main thread
    from bleak.backends.winrt.util import allow_sta as _allow_sta
else:
    _allow_sta = None

log = logging.getLogger(__name__)

DEFAULT_NAME_PATTERNS = ("boxingsensor", "boxing", "esp32")


# ---------- Discovery ----------

def is_sensor_name(name: Optional[str], patterns: Iterable[str] = DEFAULT_NAME_PATTERNS) -> bool:
    """Case-insensitive substring match of an advertised name against `patterns`."""
    if not name:
        return False
    lowered = name.lower()
    return any(p.lower() in lowered for p in patterns)


async def find_sensor_devices(
    timeout: float = 5.0,
    patterns: Iterable[str] = DEFAULT_NAME_PATTERNS,
) -> List[BLEDevice]:
    """Scan for `timeout` seconds and return the advertisers that look like boxing sensors."""
    patterns = tuple(patterns)
    devices = await BleakScanner.discover(timeout=timeout)
    found = [d for d in devices if is_sensor_name(d.name, patterns)]
    log.info("[BLE] Scan found %d device(s), %d sensor(s)", len(devices), len(found))
    return found


# ---------- Worker thread ----------

class _LoopThread(QThread):
    """Runs a private asyncio event loop for bleak until the loop is stopped."""

    def __init__(self) -> None:
        super().__init__()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.ready = threading.Event()

    def run(self) -> None:
        if _allow_sta is not None:
            try:
                _allow_sta()
            except OSError as e:
                log.warning("[BLE] allow_sta() failed: %s", e)

        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        loop.call_soon(self.ready.set)
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self.loop = None


# ============
# Main class
# ============
class BLESensorTransport(SensorTransport):
    """
    BLE link to the sensor over the Nordic UART service.

    All bleak calls run on a private event loop in a worker QThread; results
    come back only through the SensorTransport signals. Every open()/close()
    starts a new generation, and an attempt that finishes after being
    superseded is closed silently instead of reporting.

    Reconnection is left to the caller: a dropped link is reported once and
    the transport goes quiet until the next open().
    """

    def __init__(
        self,
        *,
        timeouts: Timeouts = Timeouts(),
        uart: UartCharacteristics = NORDIC_UART,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._timeouts = timeouts
        self._uart = uart

        self._worker: Optional[_LoopThread] = None
        self._generation = 0                         # bumped by every open() and close()
        self._link: Optional[BLEDeviceClient] = None  # the open link, owned by the loop thread
        self._pending: Optional[asyncio.Task] = None  # the in-flight open attempt

    # ---------- SensorTransport API ----------

    def open(self, device_id: str) -> None:
        if self._ensure_worker() is None:
            self.openFailed.emit("BLE worker loop did not start")
            return
        self._generation += 1
        self._submit(self._open_link(device_id, self._generation))

    def close(self) -> None:
        self._generation += 1
        self._submit(self._drop_link())

    def write(self, payload: bytes) -> None:
        if self._submit(self._send(payload)) is None:
            raise RuntimeError("BLE worker loop is not running")

    def stop(self) -> None:
        """Close the link and end the worker thread (app shutdown)."""
        worker = self._worker
        if worker is None:
            return
        self._generation += 1
        future = self._submit(self._drop_link())
        if future is not None:
            try:
                future.result(timeout=self._timeouts.connect)
            except (concurrent.futures.TimeoutError, RuntimeError) as e:
                log.warning("[BLE] Shutdown did not complete cleanly: %s", e)
        if worker.loop is not None:
            worker.loop.call_soon_threadsafe(worker.loop.stop)
        worker.wait()
        self._worker = None

    # ---------- Loop plumbing ----------

    def _ensure_worker(self) -> Optional[asyncio.AbstractEventLoop]:
        if self._worker is None:
            self._worker = _LoopThread()
            self._worker.start()
        if not self._worker.ready.wait(timeout=5.0):
            return None
        return self._worker.loop

    def _submit(self, coro: Coroutine) -> Optional[concurrent.futures.Future]:
        loop = self._worker.loop if self._worker else None
        if loop is None or loop.is_closed():
            coro.close()
            return None
        return asyncio.run_coroutine_threadsafe(coro, loop)

    # ---------- Coroutines (loop thread) ----------

    async def _open_link(self, address: str, generation: int) -> None:
        await self._drop_link()
        log.info("[BLE] Connecting to %s", address)

        link = BLEDeviceClient(
            address,
            uart=self._uart,
            timeouts=self._timeouts,
            on_disconnect=lambda: self._link_lost(link),
        )
        self._reset_decoder()
        self._pending = asyncio.current_task()
        try:
            await link.open(self._emit_bytes)
        except (asyncio.TimeoutError, BleakError, OSError, RuntimeError) as e:
            if generation == self._generation:
                reason = str(e) or type(e).__name__
                log.warning("[BLE] Connection attempt to %s failed: %s", address, reason)
                self.openFailed.emit(reason)
            return
        finally:
            self._pending = None

        if generation != self._generation:
            await link.close()
            return

        self._link = link
        log.info("[BLE] Connected to %s", address)
        self.opened.emit()

    async def _drop_link(self) -> None:
        pending = self._pending
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass

        link, self._link = self._link, None
        if link is not None:
            await link.close()
            log.info("[BLE] Closed link to %s", link.address)

    async def _send(self, payload: bytes) -> None:
        link = self._link
        if link is None:
            log.warning("[BLE] Not connected, dropping write %r", payload)
            return
        try:
            await link.send(payload)
        except (BleakError, RuntimeError, OSError) as e:
            log.warning("[BLE] Write to %s failed: %s", link.address, e)

    def _link_lost(self, link: BLEDeviceClient) -> None:
        # A link we already let go of (close, switch) is not a loss
        if link is not self._link:
            return
        self._link = None
        log.warning("[BLE] Link to %s dropped", link.address)
        self.connectionLost.emit(f"BLE link to {link.address} dropped")
