"""
Derived sensor states computed from raw gateway samples.

Everything here is pure: no I/O, no clocks, no memory of earlier samples. The
same sample and thresholds always produce the same state.

Sign conventions of /api/meters/aggregates:
    site     positive = importing from grid, negative = exporting
    battery  positive = discharging, negative = charging
    solar    positive when generating
    load     positive when consuming

A single dead-zone [-threshold, threshold] keeps near-zero noise from toggling
the grid sensors. There is no hysteresis band, so a reading sitting exactly on
a boundary can flap between polls.
"""
import logging
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

log = logging.getLogger(__name__)

GRID_CONNECTED = 'SystemGridConnected'
DEFAULT_BATTERY_LEVEL = 50  # reported when the gateway omits the percentage
LUX_MIN = 0.0001
LUX_MAX = 100000
METERS = ('site', 'solar', 'battery', 'load')


class ChargingState(IntEnum):
    NOT_CHARGING = 0
    CHARGING = 1
    NOT_CHARGEABLE = 2


class ThresholdConfig(BaseModel):
    """Thresholds supplied once at startup."""
    model_config = ConfigDict(frozen=True)

    grid_sensor_threshold: float = Field(default=50, ge=0)  # watts
    low_battery_percent: float = Field(default=20, ge=0, le=100)
    charging_noise_floor: float = Field(default=50, ge=0)  # watts


def _as_number(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        log.debug(f"ERROR unable to parse power value '{value}' - using 0")
        return 0.0


class MeterReading(BaseModel):
    """One meter of the aggregates payload; voltage, frequency and currents pass through untouched."""
    model_config = ConfigDict(frozen=True, extra='allow')

    instant_power: float = 0.0

    @field_validator('instant_power', mode='before')
    @classmethod
    def _coerce_power(cls, value: Any) -> float:
        return _as_number(value)


class PowerSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    site: MeterReading = Field(default_factory=MeterReading)
    solar: MeterReading = Field(default_factory=MeterReading)
    battery: MeterReading = Field(default_factory=MeterReading)
    load: MeterReading = Field(default_factory=MeterReading)

    @classmethod
    def from_aggregates(cls, payload: Any) -> "PowerSample":
        payload = payload if isinstance(payload, dict) else {}
        meters = {}
        for name in METERS:
            value = payload.get(name)
            meters[name] = MeterReading.model_validate(value if isinstance(value, dict) else {})
        return cls(**meters)

    @classmethod
    def from_power(cls, site: float = 0, solar: float = 0, battery: float = 0, load: float = 0) -> "PowerSample":
        return cls.from_aggregates({
            'site': {'instant_power': site},
            'solar': {'instant_power': solar},
            'battery': {'instant_power': battery},
            'load': {'instant_power': load},
        })

    @property
    def site_power(self) -> float:
        return self.site.instant_power

    @property
    def solar_power(self) -> float:
        return self.solar.instant_power

    @property
    def battery_power(self) -> float:
        return self.battery.instant_power

    @property
    def load_power(self) -> float:
        return self.load.instant_power


class SystemStatus(BaseModel):
    """Payload of /api/system_status/soe."""
    model_config = ConfigDict(frozen=True, extra='allow')

    percentage: Optional[float] = None

    @field_validator('percentage', mode='before')
    @classmethod
    def _coerce_percentage(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_payload(cls, payload: Any) -> "SystemStatus":
        return cls.model_validate(payload if isinstance(payload, dict) else {})


class GridStatus(BaseModel):
    """Payload of /api/system_status/grid_status."""
    model_config = ConfigDict(frozen=True, extra='allow')

    grid_status: str = ''

    @field_validator('grid_status', mode='before')
    @classmethod
    def _coerce_status(cls, value: Any) -> str:
        return value if isinstance(value, str) else ''

    @classmethod
    def from_payload(cls, payload: Any) -> "GridStatus":
        return cls.model_validate(payload if isinstance(payload, dict) else {})


class DerivedState(BaseModel):
    model_config = ConfigDict(frozen=True)

    battery_level: int
    charging: bool
    low_battery: bool
    grid_connected: bool
    feeding_to_grid: bool
    pulling_from_grid: bool


def is_charging(sample: PowerSample, config: ThresholdConfig) -> bool:
    # Discharging beyond the noise floor is the only not-charging case
    return not sample.battery_power > config.charging_noise_floor


def charging_state(sample: PowerSample, config: ThresholdConfig) -> ChargingState:
    if is_charging(sample, config):
        return ChargingState.CHARGING
    return ChargingState.NOT_CHARGING


def battery_percentage(status: SystemStatus) -> float:
    if status.percentage is None:
        return DEFAULT_BATTERY_LEVEL
    return status.percentage


def battery_level(status: SystemStatus) -> int:
    return int(round(battery_percentage(status)))


def is_low_battery(status: SystemStatus, config: ThresholdConfig) -> bool:
    return battery_percentage(status) <= config.low_battery_percent


def is_grid_connected(grid: GridStatus) -> bool:
    return grid.grid_status == GRID_CONNECTED


def is_feeding_to_grid(sample: PowerSample, config: ThresholdConfig) -> bool:
    return sample.site_power < -config.grid_sensor_threshold


def is_pulling_from_grid(sample: PowerSample, config: ThresholdConfig) -> bool:
    return sample.site_power > config.grid_sensor_threshold


def meter_power(sample: PowerSample, meter: str) -> float:
    if meter not in METERS:
        raise ValueError(f"Invalid value for parameter 'meter': {meter}")
    return getattr(sample, meter).instant_power


def power_to_lux(watts: float) -> float:
    """Map watts onto the light-sensor range (0.0001 - 100000 lux), 1 lux = 10 W."""
    return max(LUX_MIN, min(LUX_MAX, abs(watts) / 10))


def derive(sample: PowerSample, status: SystemStatus, grid: GridStatus, config: ThresholdConfig) -> DerivedState:
    return DerivedState(
        battery_level=battery_level(status),
        charging=is_charging(sample, config),
        low_battery=is_low_battery(status, config),
        grid_connected=is_grid_connected(grid),
        feeding_to_grid=is_feeding_to_grid(sample, config),
        pulling_from_grid=is_pulling_from_grid(sample, config),
    )
