import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from bleak import BleakClient
from bleak.exc import BleakError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UartCharacteristics:
    """GATT characteristics of the Nordic UART service the ESP32 firmware exposes."""
    rx: str = "6E400002-B5A3-F393-E0A9-E50E24DCCA9E"  # central writes commands here
    tx: str = "6E400003-B5A3-F393-E0A9-E50E24DCCA9E"  # sensor notifies JSON lines here


NORDIC_UART = UartCharacteristics()


@dataclass
class Timeouts:
    """Seconds allowed for each step of opening the link."""
    connect: float = 20.0
    subscribe: float = 5.0


class BLEDeviceClient:
    """
    One BLE link to a boxing sensor, driven from the BLE worker's event loop.

    `open()` connects and subscribes in one go; a failure at either step
    leaves nothing half-open. `on_disconnect` fires (in the loop thread)
    whenever bleak reports the link gone, requested or not.
    """

    def __init__(
        self,
        address: str,
        *,
        uart: UartCharacteristics = NORDIC_UART,
        timeouts: Timeouts = Timeouts(),
        on_disconnect: Optional[Callable[[], None]] = None,
    ) -> None:
        self.address = address
        self.uart = uart
        self.timeouts = timeouts
        self._on_disconnect = on_disconnect
        self._bleak: Optional[BleakClient] = None
        self._subscribed = False

    @property
    def is_connected(self) -> bool:
        return self._bleak is not None and self._bleak.is_connected

    async def __aenter__(self) -> "BLEDeviceClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def open(self, on_data: Callable[[bytes], None]) -> None:
        """Connect, then subscribe `on_data` to the TX characteristic. Raises on failure."""
        self._bleak = BleakClient(self.address, disconnected_callback=self._link_dropped)
        try:
            await asyncio.wait_for(self._bleak.connect(), timeout=self.timeouts.connect)
            await asyncio.wait_for(
                self._bleak.start_notify(self.uart.tx, lambda _char, data: on_data(bytes(data))),
                timeout=self.timeouts.subscribe,
            )
        except BaseException:
            await self.close()
            raise
        self._subscribed = True

    async def send(self, payload: bytes) -> None:
        """Write-without-response to the RX characteristic."""
        await self._require_link().write_gatt_char(self.uart.rx, payload, response=False)

    async def close(self) -> None:
        """Unsubscribe and drop the link. Safe to call twice."""
        bleak, self._bleak = self._bleak, None
        subscribed, self._subscribed = self._subscribed, False
        if bleak is None or not bleak.is_connected:
            return

        if subscribed:
            try:
                await bleak.stop_notify(self.uart.tx)
            except (BleakError, OSError) as e:
                log.debug("[BLE] stop_notify on %s failed: %s", self.address, e)
        try:
            await bleak.disconnect()
        except (BleakError, OSError) as e:
            log.debug("[BLE] disconnect from %s failed: %s", self.address, e)

    def _require_link(self) -> BleakClient:
        if not self.is_connected:
            raise RuntimeError(f"{self.address} is not connected")
        return self._bleak

    def _link_dropped(self, _client: BleakClient) -> None:
        if self._on_disconnect is not None:
            self._on_disconnect()
