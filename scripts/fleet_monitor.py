#!/usr/bin/env python3
"""Live fleet monitor for loudness detectors.

Connects with the configured transport, then prints every alert as it
enters the feed and a device table after every offline sweep.

Usage
-----
::

    export LOUDNESS_BROKER_HOST="test.mosquitto.org"
    python scripts/fleet_monitor.py

Options::

    --transport KIND     mqtt | realtime_store | none (default: env or mqtt)
    --namespace NS       Pub/sub topic namespace (default: env or library)
    --store-url URL      Realtime store base URL
    --storage PATH       Persist the device registry to this JSON file
    --calibrate ID       Send a calibrate command to this device on start
    --history ID         Request the alert history of this device on start
    --duration SECS      Stop after this many seconds (default: run until Ctrl-C)
    --verbose / -v       Enable debug logging
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from pyloudness import AlertNotification, DeviceRecord, FleetClient, FleetConfig  # noqa: E402
from pyloudness.exceptions import LoudnessConfigError  # noqa: E402


def _format_device(device: DeviceRecord) -> str:
    seen = device.last_seen_at.isoformat(timespec="seconds") if device.last_seen_at else "never"
    state = "online " if device.online else "offline"
    return (
        f"  {state} {device.id:<16} {device.display_name:<20} "
        f"{device.location.floor}/{device.location.zone:<12} rms={device.last_rms:<5} "
        f"zcr={device.last_zcr:<6.3f} seen={seen}"
    )


def _print_devices(devices: list[DeviceRecord]) -> None:
    if not devices:
        print("[monitor] no devices yet")
        return
    print(f"[monitor] {len(devices)} device(s)")
    for device in devices:
        print(_format_device(device))


def _on_alert(notification: AlertNotification) -> None:
    at = notification.observed_at.isoformat(timespec="seconds")
    print(f"[alert] {at} {notification.message} (rms={notification.rms} zcr={notification.zcr:.3f})")


def _on_connection_changed(available: bool) -> None:
    print(f"[monitor] transport {'connected' if available else 'disconnected'}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Watch a fleet of loudness detectors.")
    parser.add_argument("--transport", choices=["mqtt", "realtime_store", "none"])
    parser.add_argument("--namespace")
    parser.add_argument("--store-url")
    parser.add_argument("--storage")
    parser.add_argument("--calibrate", metavar="ID")
    parser.add_argument("--history", metavar="ID")
    parser.add_argument("--duration", type=float, default=0.0)
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


async def _run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.transport:
        overrides["transport"] = args.transport
    if args.namespace:
        overrides["namespace"] = args.namespace
    if args.store_url:
        overrides["store_url"] = args.store_url
    if args.storage:
        overrides["storage_path"] = args.storage

    try:
        config = FleetConfig.from_env(**overrides)
    except LoudnessConfigError as exc:
        print(f"[monitor] invalid configuration: {exc}", file=sys.stderr)
        return 2

    async with FleetClient(
        config,
        on_alert=_on_alert,
        on_connection_changed=_on_connection_changed,
    ) as client:
        print(f"[monitor] transport={config.transport} namespace={config.namespace}")
        _print_devices(client.devices)

        if args.calibrate:
            ok = await client.calibrate(args.calibrate)
            print(f"[monitor] calibrate {args.calibrate}: {'sent' if ok else 'not sent'}")
        if args.history:
            ok = await client.request_alert_history(args.history)
            print(f"[monitor] alert history {args.history}: {'requested' if ok else 'not sent'}")

        loop = asyncio.get_running_loop()
        started = loop.time()
        while args.duration <= 0 or loop.time() - started < args.duration:
            await asyncio.sleep(config.sweep_interval)
            demoted = await client.sweep()
            for device_id in demoted:
                print(f"[monitor] {device_id} went offline")
            _print_devices(client.devices)

    return 0


def _main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(_run(args))
    return 0


if __name__ == "__main__":
    raise SystemExit(_main())
