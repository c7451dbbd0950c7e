#!/usr/bin/env python3
"""
SoilProbe - Main Entry Point

Runs the polling engine against a USB soil probe (or the built-in simulator)
and logs every reading.

Usage:
    soilprobe                          # Default settings, real serial ports
    soilprobe --config probe.yaml      # Use custom config file
    soilprobe --simulate               # Run against the virtual probe
    soilprobe --list-devices           # Show serial ports and exit
    soilprobe --dry-run                # Print config and exit
"""

import argparse
import asyncio
import signal
import sys

from soilprobe import __version__
from soilprobe.common.config import EngineConfig, load_config_file
from soilprobe.common.exceptions import ConfigError
from soilprobe.common.logging_setup import configure_service_loggers, get_service_logger
from soilprobe.engine import SensorEngine
from soilprobe.services.device.connection_manager import make_device_filter
from soilprobe.services.device.models import SensorReading
from soilprobe.services.device.transport import PySerialTransport, SerialTransport
from soilprobe.simulator import SimulatedTransport

logger = get_service_logger("main")


def print_startup_banner(config: EngineConfig, simulate: bool) -> None:
    serial_cfg = config.serial
    print()
    print("=" * 60)
    print("  SOILPROBE - MODBUS RTU SENSOR ENGINE")
    print("=" * 60)
    print()
    print(f"  Transport: {'simulated probe' if simulate else 'pyserial'}")
    print(
        f"  Line:      {serial_cfg.baudrate} baud, "
        f"{serial_cfg.data_bits}{serial_cfg.parity}{serial_cfg.stop_bits}"
    )
    print(f"  Poll:      every {config.polling.interval_s:g}s, "
          f"timeout {config.polling.response_timeout_ms}ms")
    if config.discovery.serial_port:
        print(f"  Port:      {config.discovery.serial_port}")
    else:
        vendors = ", ".join(f"{v:04X}" for v in config.discovery.vendor_ids)
        print(f"  Vendors:   {vendors}"
              f"{' + CDC' if config.discovery.accept_cdc_class else ''}")
    print()
    print("=" * 60)
    print()


def list_devices(transport: SerialTransport, config: EngineConfig) -> None:
    matches = make_device_filter(config.discovery)
    devices = transport.list_candidate_devices()
    if not devices:
        print("No serial devices found")
        return
    for device in devices:
        marker = "*" if matches(device) else " "
        print(f" {marker} {device}  {device.description}")
    print()
    print("(* = would be selected by discovery)")


def _log_reading(reading: SensorReading) -> None:
    logger.info(
        f"T={reading.temperature_c:.1f}C H={reading.humidity_pct:.1f}% "
        f"pH={reading.ph:.2f} N={reading.nitrogen_ppm} "
        f"P={reading.phosphorus_ppm} K={reading.potassium_ppm}",
        extra={"reading": reading.to_dict()},
    )


async def run_engine(engine: SensorEngine) -> None:
    """Run until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            pass

    engine.add_reading_listener(_log_reading)

    try:
        await engine.set_foreground(True)
        await stop_event.wait()
    finally:
        await engine.shutdown()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="SoilProbe - Modbus RTU soil sensor polling engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    soilprobe --simulate -v          # Virtual probe, plain-text debug logs
    soilprobe -c probe.yaml          # Real hardware, custom config
    soilprobe --list-devices         # Which port would be picked?
        """,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to YAML configuration file (default: built-in settings)",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use the virtual probe instead of real serial ports",
    )
    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List serial devices and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration and exit without starting",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging in plain text",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"SoilProbe v{__version__}",
    )

    args = parser.parse_args()

    try:
        config = load_config_file(args.config) if args.config else EngineConfig()
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.verbose:
        config.logging.level = "DEBUG"
        config.logging.json_format = False
    configure_service_loggers(config.logging.level, config.logging.json_format)

    transport: SerialTransport
    if args.simulate:
        transport = SimulatedTransport(latency_s=0.05)
    else:
        transport = PySerialTransport()

    if args.list_devices:
        list_devices(transport, config)
        sys.exit(0)

    print_startup_banner(config, args.simulate)

    if args.dry_run:
        print("Dry run mode - configuration valid")
        sys.exit(0)

    print("Press Ctrl+C to stop")
    print()

    engine = SensorEngine(transport, config)
    try:
        asyncio.run(run_engine(engine))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except Exception as e:
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
