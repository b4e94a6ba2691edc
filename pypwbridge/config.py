"""
Configuration for pyPWBridge

All settings come from environment variables (a .env file is honored by the
command line tool) and are read once at startup.

Environment Variables:

    Connection:
        PW_HOST                       - Gateway IP address or hostname (required)
        PW_PORT                       - HTTPS port (default: 443)
        PW_USERNAME                   - Login user (default: "customer")
        PW_PASSWORD                   - Customer password (required)
        PW_TIMEOUT                    - Hard timeout per request in seconds (default: 10)
        PW_CACHE_EXPIRE               - Response cache TTL in seconds (default: 5)
        PW_POOL_MAXSIZE               - Connection pool size (default: 10)

    Polling and thresholds:
        PW_POLL_INTERVAL              - Seconds between polls, 5-300 (default: 15)
        PW_GRID_THRESHOLD             - Grid sensor dead-zone in watts (default: 50)
        PW_LOW_BATTERY                - Low battery percentage (default: 20)
        PW_CHARGING_NOISE_FLOOR       - Battery discharge noise floor in watts (default: 50)

    Quantities:
        PW_ENABLE_GRID_STATUS         - Grid connected sensor (default: yes)
        PW_ENABLE_GRID_POWER_SENSORS  - Feeding/pulling sensors (default: yes)
        PW_ENABLE_POWER_METERS        - Load/solar/site meters (default: yes)
        PW_METER_AS_LUX               - Report meters as lux (W/10) instead of watts (default: no)

    Logging:
        PW_DEBUG                      - Enable debug logging (default: no)

Usage:

    from pypwbridge.config import BridgeSettings

    settings = BridgeSettings()
    client = settings.create_client()
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from pypwbridge.bridge import PowerwallBridge
from pypwbridge.client import PowerwallClient, DEFAULT_CACHE_EXPIRE
from pypwbridge.derived import ThresholdConfig
from pypwbridge.scheduler import DEFAULT_POLL_INTERVAL, MIN_POLL_INTERVAL, MAX_POLL_INTERVAL
from pypwbridge.transport import DEFAULT_TIMEOUT


class BridgeSettings(BaseSettings):
    """Bridge settings loaded from PW_* environment variables."""

    # Connection
    host: Optional[str] = Field(default=None, alias="PW_HOST")
    port: str = Field(default="443", alias="PW_PORT")
    username: str = Field(default="customer", alias="PW_USERNAME")
    password: Optional[str] = Field(default=None, alias="PW_PASSWORD")
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0, alias="PW_TIMEOUT")
    cache_expire: float = Field(default=DEFAULT_CACHE_EXPIRE, ge=0, alias="PW_CACHE_EXPIRE")
    pool_maxsize: int = Field(default=10, ge=0, alias="PW_POOL_MAXSIZE")

    # Polling and thresholds
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, ge=MIN_POLL_INTERVAL, le=MAX_POLL_INTERVAL,
                                 alias="PW_POLL_INTERVAL")
    grid_sensor_threshold: float = Field(default=50, ge=0, alias="PW_GRID_THRESHOLD")
    low_battery_percent: float = Field(default=20, ge=0, le=100, alias="PW_LOW_BATTERY")
    charging_noise_floor: float = Field(default=50, ge=0, alias="PW_CHARGING_NOISE_FLOOR")

    # Quantities
    enable_grid_status: bool = Field(default=True, alias="PW_ENABLE_GRID_STATUS")
    enable_grid_power_sensors: bool = Field(default=True, alias="PW_ENABLE_GRID_POWER_SENSORS")
    enable_power_meters: bool = Field(default=True, alias="PW_ENABLE_POWER_METERS")
    meter_as_lux: bool = Field(default=False, alias="PW_METER_AS_LUX")

    debug: bool = Field(default=False, alias="PW_DEBUG")

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "populate_by_name": True,
    }

    @property
    def thresholds(self) -> ThresholdConfig:
        return ThresholdConfig(
            grid_sensor_threshold=self.grid_sensor_threshold,
            low_battery_percent=self.low_battery_percent,
            charging_noise_floor=self.charging_noise_floor,
        )

    def create_client(self, **kwargs) -> PowerwallClient:
        """PowerwallClient for these settings; keyword arguments are passed through (e.g. transport)."""
        return PowerwallClient(
            host=self.host or "",
            password=self.password or "",
            username=self.username,
            port=self.port,
            timeout=self.timeout,
            cache_expire=self.cache_expire,
            poolmaxsize=self.pool_maxsize,
            **kwargs
        )

    def create_bridge(self, client: Optional[PowerwallClient] = None, **kwargs) -> PowerwallBridge:
        return PowerwallBridge(
            client or self.create_client(),
            thresholds=self.thresholds,
            poll_interval=self.poll_interval,
            enable_grid_status=self.enable_grid_status,
            enable_grid_power_sensors=self.enable_grid_power_sensors,
            enable_power_meters=self.enable_power_meters,
            meter_as_lux=self.meter_as_lux,
            **kwargs
        )
