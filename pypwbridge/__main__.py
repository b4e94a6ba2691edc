# pyPWBridge Module - Command Line Tool
# -*- coding: utf-8 -*-
"""
 Python module to bridge a Tesla Energy Gateway (Powerwall) to a home-automation host

 Command Line Tool:
    python -m pypwbridge <test|validate|poll|version>

 Settings are read from PW_* environment variables (and a .env file);
 -host, -password and -threshold override them.
"""

import argparse
import asyncio
import json
import sys

import dotenv
from pydantic import ValidationError

# Modules
from pypwbridge import version, set_debug
from pypwbridge.config import BridgeSettings
from pypwbridge.derived import is_feeding_to_grid, is_pulling_from_grid, power_to_lux
from pypwbridge.exceptions import PowerwallError

# Global Variables
count = 0  # ticks per quantity for poll, 0 = run until interrupted

# Setup parser and groups
p = argparse.ArgumentParser(prog="pyPWBridge", description=f"pyPWBridge Module v{version}")
subparsers = p.add_subparsers(dest="command", title='commands (run <command> -h to see usage information)',
                              required=True)


def add_connection_args(parser):
    parser.add_argument("-host", type=str, default=None, help="IP address of Powerwall Gateway")
    parser.add_argument("-password", type=str, default=None, help="Password for Powerwall Gateway")


test_args = subparsers.add_parser("test", help='Test login and data endpoints of the Powerwall Gateway')
add_connection_args(test_args)
test_args.add_argument("-json", action="store_true", default=False, help="Print the report as JSON")

validate_args = subparsers.add_parser("validate", help='Validate grid feeding/pulling sensors against live data')
add_connection_args(validate_args)
validate_args.add_argument("-threshold", type=float, default=None, help="Grid sensor threshold in watts [Default=50]")

poll_args = subparsers.add_parser("poll", help='Poll all sensors and print published values')
add_connection_args(poll_args)
poll_args.add_argument("-count", type=int, default=count,
                       help="Stop after this many polls per sensor [Default=run until interrupted]")

version_args = subparsers.add_parser("version", help='Print version information')

# Add a global debug flag
p.add_argument("-debug", action="store_true", default=False, help="Enable debug output")


def load_settings(args) -> BridgeSettings:
    overrides = {}
    if getattr(args, 'host', None):
        overrides['host'] = args.host
    if getattr(args, 'password', None):
        overrides['password'] = args.password
    if getattr(args, 'threshold', None) is not None:
        overrides['grid_sensor_threshold'] = args.threshold
    return BridgeSettings(**overrides)


async def run_test(settings: BridgeSettings, as_json: bool) -> int:
    async with settings.create_client() as client:
        report = await client.connection_report()
    if as_json:
        print(json.dumps(report.model_dump(), indent=4))
    else:
        print(report.message)
        if report.battery_level is not None:
            print(f"   Battery Level: {report.battery_level}%")
        if report.grid_status is not None:
            print(f"   Grid Status: {report.grid_status}")
        if report.power_flow is not None:
            for meter, watts in report.power_flow.items():
                print(f"   {meter.capitalize():8s} {watts:>8d} W")
        for error in report.errors:
            print(f"   ERROR: {error}")
    return 0 if report.success else 1


async def run_validate(settings: BridgeSettings) -> int:
    thresholds = settings.thresholds
    async with settings.create_client() as client:
        sample = await client.power_sample()
    site = sample.site_power
    print(f"Site Power: {site:.1f} W (positive = importing, negative = exporting)")
    print(f"Threshold:  {thresholds.grid_sensor_threshold:.0f} W")
    feeding = is_feeding_to_grid(sample, thresholds)
    pulling = is_pulling_from_grid(sample, thresholds)
    print(f"   Feeding to Grid:   {'DETECTED' if feeding else 'NOT DETECTED'}")
    print(f"   Pulling from Grid: {'DETECTED' if pulling else 'NOT DETECTED'}")
    if not feeding and not pulling:
        print("   Site power is inside the dead-zone - neither sensor triggers")
    for meter in ('load', 'solar', 'battery'):
        watts = getattr(sample, meter).instant_power
        print(f"   {meter.capitalize():8s} {watts:>10.1f} W ({power_to_lux(watts):.1f} lux)")
    return 0


async def run_poll(settings: BridgeSettings, limit: int) -> int:
    def publish(name, value):
        print(f"{name:20s} {value}")

    bridge = settings.create_bridge(publish=publish, run_immediately=True)
    bridge.start()
    try:
        while limit <= 0 or min(s.ticks + s.failures for s in bridge.schedulers.values()) < limit:
            await asyncio.sleep(1)
    finally:
        await bridge.destroy()
    return 0


def main() -> int:
    if len(sys.argv) == 1:
        p.print_help(sys.stderr)
        return 1

    # parse args
    args = p.parse_args()
    command = args.command
    dotenv.load_dotenv()

    if command == 'version':
        print("pyPWBridge [%s]" % version)
        return 0

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        print(f"ERROR: Invalid configuration: {exc}")
        return 1

    # Set Debug Mode
    if args.debug or settings.debug:
        set_debug(True)

    print("pyPWBridge [%s] - %s\n" % (version, command.capitalize()))
    try:
        if command == 'test':
            return asyncio.run(run_test(settings, args.json))
        elif command == 'validate':
            return asyncio.run(run_validate(settings))
        elif command == 'poll':
            return asyncio.run(run_poll(settings, args.count))
    except PowerwallError as exc:
        print(f"ERROR: {exc}")
        return 1
    except KeyboardInterrupt:
        print("Stopped.")
        return 0
    return 1


if __name__ == '__main__':
    sys.exit(main())
