import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pypwbridge.client import PowerwallClient
from pypwbridge.derived import (ThresholdConfig, DerivedState, battery_level, charging_state, is_low_battery,
                                is_grid_connected, is_feeding_to_grid, is_pulling_from_grid, meter_power,
                                power_to_lux, derive)
from pypwbridge.scheduler import (PollingScheduler, Publisher, DEFAULT_POLL_INTERVAL, MIN_POLL_INTERVAL,
                                  MAX_POLL_INTERVAL)

log = logging.getLogger(__name__)

# Observable quantities
BATTERY_LEVEL = 'battery_level'
CHARGING = 'charging'
LOW_BATTERY = 'low_battery'
GRID_CONNECTED = 'grid_connected'
FEEDING_TO_GRID = 'feeding_to_grid'
PULLING_FROM_GRID = 'pulling_from_grid'
POWER_LOAD = 'power_load'
POWER_SOLAR = 'power_solar'
POWER_SITE = 'power_site'

BATTERY_QUANTITIES = (BATTERY_LEVEL, CHARGING, LOW_BATTERY)
GRID_POWER_QUANTITIES = (FEEDING_TO_GRID, PULLING_FROM_GRID)
METER_QUANTITIES = {POWER_LOAD: 'load', POWER_SOLAR: 'solar', POWER_SITE: 'site'}


class PowerwallBridge:
    """
    Derived-state surface a home-automation host polls or subscribes to.

    One PollingScheduler per enabled quantity pushes fresh values to publish(name, value).
    read(name) answers an on-demand request and falls back to the last known
    value when the gateway cannot be reached. destroy() must be called when the
    host removes the device so no timer outlives it.
    """

    def __init__(self, client: PowerwallClient, thresholds: Optional[ThresholdConfig] = None,
                 poll_interval: float = DEFAULT_POLL_INTERVAL, publish: Optional[Publisher] = None,
                 enable_grid_status: bool = True, enable_grid_power_sensors: bool = True,
                 enable_power_meters: bool = True, meter_as_lux: bool = False, run_immediately: bool = False,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.client = client
        self.thresholds = thresholds or ThresholdConfig()
        self.poll_interval = self._bounded_interval(poll_interval)
        self.publish = publish
        self.meter_as_lux = meter_as_lux

        readers: Dict[str, Callable[[], Awaitable[Any]]] = {
            BATTERY_LEVEL: self._battery_level,
            CHARGING: self._charging,
            LOW_BATTERY: self._low_battery,
        }
        if enable_grid_status:
            readers[GRID_CONNECTED] = self._grid_connected
        if enable_grid_power_sensors:
            readers[FEEDING_TO_GRID] = self._feeding_to_grid
            readers[PULLING_FROM_GRID] = self._pulling_from_grid
        if enable_power_meters:
            for name, meter in METER_QUANTITIES.items():
                readers[name] = self._meter_reader(meter)

        self.schedulers: Dict[str, PollingScheduler] = {
            name: PollingScheduler(name, self.poll_interval, reader, self._publish,
                                   run_immediately=run_immediately, sleep=sleep)
            for name, reader in readers.items()
        }
        self._destroyed = False

    @staticmethod
    def _bounded_interval(interval: float) -> float:
        if interval < MIN_POLL_INTERVAL or interval > MAX_POLL_INTERVAL:
            bounded = min(MAX_POLL_INTERVAL, max(MIN_POLL_INTERVAL, interval))
            log.warning('Polling interval %ss out of range - using %ss' % (interval, bounded))
            return bounded
        return interval

    # Readers

    async def _battery_level(self) -> int:
        return battery_level(await self.client.battery_status())

    async def _charging(self) -> int:
        return int(charging_state(await self.client.power_sample(), self.thresholds))

    async def _low_battery(self) -> bool:
        return is_low_battery(await self.client.battery_status(), self.thresholds)

    async def _grid_connected(self) -> bool:
        return is_grid_connected(await self.client.grid())

    async def _feeding_to_grid(self) -> bool:
        sample = await self.client.power_sample()
        feeding = is_feeding_to_grid(sample, self.thresholds)
        log.debug('Grid Feeding Sensor -> %.1fW %s (threshold: %sW)' % (
            sample.site_power, 'DETECTED' if feeding else 'NOT DETECTED', self.thresholds.grid_sensor_threshold))
        return feeding

    async def _pulling_from_grid(self) -> bool:
        sample = await self.client.power_sample()
        pulling = is_pulling_from_grid(sample, self.thresholds)
        log.debug('Grid Pulling Sensor -> %.1fW %s (threshold: %sW)' % (
            sample.site_power, 'DETECTED' if pulling else 'NOT DETECTED', self.thresholds.grid_sensor_threshold))
        return pulling

    def _meter_reader(self, meter: str) -> Callable[[], Awaitable[float]]:
        async def reader() -> float:
            watts = meter_power(await self.client.power_sample(), meter)
            if self.meter_as_lux:
                return power_to_lux(watts)
            return watts
        return reader

    def _publish(self, name: str, value: Any) -> None:
        if self.publish is not None:
            self.publish(name, value)

    # Host facing surface

    @property
    def names(self) -> List[str]:
        return list(self.schedulers)

    def _scheduler(self, name: str) -> PollingScheduler:
        try:
            return self.schedulers[name]
        except KeyError:
            raise KeyError(f"Unknown or disabled quantity: {name}") from None

    async def read(self, name: str) -> Any:
        """Current value of a quantity, or the last known value if it cannot be fetched."""
        return await self._scheduler(name).tick(publish=False)

    def value(self, name: str) -> Any:
        """Last known value without touching the gateway."""
        return self._scheduler(name).last_value

    async def snapshot(self) -> DerivedState:
        """All derived states from one consistent set of samples."""
        sample, status, grid = await asyncio.gather(
            self.client.power_sample(), self.client.battery_status(), self.client.grid())
        return derive(sample, status, grid, self.thresholds)

    def start(self) -> None:
        if self._destroyed:
            raise RuntimeError("Bridge has been destroyed")
        self.client.start()
        for scheduler in self.schedulers.values():
            scheduler.start()
        log.info('Polling %d quantities every %ss' % (len(self.schedulers), self.poll_interval))

    async def destroy(self) -> None:
        """Halt every timer, then clear cached and session state in the client."""
        if self._destroyed:
            return
        self._destroyed = True
        await asyncio.gather(*(scheduler.aclose() for scheduler in self.schedulers.values()))
        await self.client.destroy()
        log.debug('Bridge destroyed')
