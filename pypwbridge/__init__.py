# pyPWBridge Module
# -*- coding: utf-8 -*-
"""
 Python module to bridge a Tesla Energy Gateway (Powerwall) to a home-automation host

 For more information see README and DESIGN notes in the project root

 Features
    * Works with the local HTTPS API of Tesla Energy Gateways (self-signed certificate)
    * Cookie session login with single-flight, rate limited re-authentication
    * Proactive re-login every 11 hours so session expiry is pre-empted
    * Retries once on 401 (session expired) and once on 429 (honors retry-after)
    * Will cache responses for 5s to limit number of calls to Powerwall Gateway
    * Turns power samples into stable boolean sensor states using thresholds
    * Independent, cancellable polling loop per observable quantity

 Classes
    PowerwallClient(host, password, username, port, timeout, cache_expire, poolmaxsize)
    PowerwallBridge(client, thresholds, poll_interval, publish, enable_grid_status,
        enable_grid_power_sensors, enable_power_meters)
    PollingScheduler(name, interval, fetch, publish)
    BridgeSettings()          # PW_* environment configuration

 Client Functions (async)
    get(endpoint, cache_ttl)  # GET with optional cache, auth and retry handling
    post(endpoint, body)      # POST with auth and retry handling
    get_system_status()       # /api/system_status/soe
    get_meters_aggregates()   # /api/meters/aggregates
    get_grid_status()         # /api/system_status/grid_status
    get_site_master()         # /api/sitemaster
    test_connection()         # True if the gateway answers
    connection_report()       # Detailed connection test result
    destroy()                 # Stop timers, clear cache and session

 Requirements
    This module requires the following modules: requests, pydantic, pydantic-settings, python-dateutil
    pip install requests pydantic pydantic-settings python-dateutil
"""
import logging
import sys

version_tuple = (0, 3, 0)
version = __version__ = '%d.%d.%d' % version_tuple
__author__ = 'pypwbridge'

# noinspection PyPackageRequirements
import urllib3

from pypwbridge.exceptions import (PowerwallError, TransportError, AuthError, HttpStatusError,
                                   RateLimitError, InvalidResponseError, InvalidConfigurationParameter)
from pypwbridge.derived import (ThresholdConfig, PowerSample, SystemStatus, GridStatus, DerivedState,
                                ChargingState, derive)
from pypwbridge.client import PowerwallClient, ConnectionReport
from pypwbridge.scheduler import PollingScheduler
from pypwbridge.bridge import PowerwallBridge
from pypwbridge.config import BridgeSettings

# Certificate checks are disabled on the client's own session only; this just quiets the warning
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

log = logging.getLogger(__name__)
log.debug('%s version %s', __name__, __version__)
log.debug('Python %s on %s', sys.version, sys.platform)

__all__ = [
    'PowerwallClient', 'ConnectionReport', 'PowerwallBridge', 'PollingScheduler', 'BridgeSettings',
    'ThresholdConfig', 'PowerSample', 'SystemStatus', 'GridStatus', 'DerivedState', 'ChargingState', 'derive',
    'PowerwallError', 'TransportError', 'AuthError', 'HttpStatusError', 'RateLimitError',
    'InvalidResponseError', 'InvalidConfigurationParameter', 'set_debug', 'version',
]


def set_debug(toggle=True, color=True):
    """Enable verbose logging"""
    if toggle:
        if color:
            logging.basicConfig(format='\x1b[31;1m%(levelname)s:%(message)s\x1b[0m', level=logging.DEBUG)
        else:
            logging.basicConfig(format='%(levelname)s:%(message)s', level=logging.DEBUG)
        log.setLevel(logging.DEBUG)
        log.debug("%s [%s]\n" % (__name__, __version__))
    else:
        log.setLevel(logging.NOTSET)
