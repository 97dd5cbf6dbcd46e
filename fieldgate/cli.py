#!/usr/bin/env python3
"""
fieldgate - gateway core command line

Usage:
    # Register map presets
    fieldgate presets [--category relay]
    fieldgate preset waveshare-relay-8ch
    fieldgate preset 4

    # Register map import/export
    fieldgate export-map --equipment "Relay board"
    fieldgate import-map mappings.json

    # Coil control
    fieldgate read-coils --equipment 1
    fieldgate write-coil --equipment 1 --address 3 --value on
    fieldgate write-all --equipment 1 --value off
    fieldgate switch --equipment 1 --address 2 --value on --delay 5 --duration 60

    # Calibration and point reads
    fieldgate calibrate --equipment 2 --offset 0.5 --scale 1.02
    fieldgate read-point --equipment 2 --mapping Temperature
    fieldgate poll --equipment 2

    # Discovery
    fieldgate scan-slaves --host 192.168.1.50 --start 1 --end 20
    fieldgate scan-network --target 192.168.1.10-40

    # Run with health endpoints until interrupted
    fieldgate serve

Output is JSON on stdout; logs go to stderr.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from fieldgate.common.config import GatewayConfig, load_config_file
from fieldgate.common.exceptions import FieldGateError
from fieldgate.common.logging_setup import configure_all, get_service_logger
from fieldgate.services.device.service import DeviceService

logger = get_service_logger("cli")

ON_VALUES = {"1", "on", "true", "yes"}
OFF_VALUES = {"0", "off", "false", "no"}


def parse_switch(value: str) -> bool:
    text = value.strip().lower()
    if text in ON_VALUES:
        return True
    if text in OFF_VALUES:
        return False
    raise argparse.ArgumentTypeError(f"expected on/off, got {value!r}")


def _equipment_ref(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def _read_payload(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fieldgate",
        description="Modbus gateway core: coil control, calibration and discovery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--log-level", help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    presets = subparsers.add_parser("presets", help="List device templates")
    presets.add_argument("--category", help="Only templates of this category")

    preset = subparsers.add_parser("preset", help="Expand a preset into a register map")
    preset.add_argument("key", help="Template key or relay channel count")

    export = subparsers.add_parser("export-map", help="Export a register map as JSON")
    source = export.add_mutually_exclusive_group(required=True)
    source.add_argument("--equipment", help="Equipment id or name")
    source.add_argument("--preset", help="Template key or relay channel count")

    import_map = subparsers.add_parser("import-map", help="Validate a register map JSON file")
    import_map.add_argument("file", help="JSON file, or - for stdin")

    read_coils = subparsers.add_parser("read-coils", help="Read all controllable coils")
    read_coils.add_argument("--equipment", required=True, help="Equipment id or name")

    write_coil = subparsers.add_parser("write-coil", help="Switch one coil")
    write_coil.add_argument("--equipment", required=True, help="Equipment id or name")
    write_coil.add_argument("--address", type=int, required=True, help="Coil address")
    write_coil.add_argument("--value", type=parse_switch, required=True, help="on/off")

    write_all = subparsers.add_parser("write-all", help="Switch every coil")
    write_all.add_argument("--equipment", required=True, help="Equipment id or name")
    write_all.add_argument("--value", type=parse_switch, required=True, help="on/off")

    switch = subparsers.add_parser("switch", help="Switch one coil, optionally delayed or timed")
    switch.add_argument("--equipment", required=True, help="Equipment id or name")
    switch.add_argument("--address", type=int, required=True, help="Coil address")
    switch.add_argument("--value", type=parse_switch, required=True, help="on/off")
    switch.add_argument("--delay", type=float, help="Seconds to wait before switching")
    switch.add_argument("--duration", type=float, help="Switch off again after this many seconds")

    calibrate = subparsers.add_parser("calibrate", help="Set equipment calibration")
    calibrate.add_argument("--equipment", required=True, help="Equipment id or name")
    calibrate.add_argument("--offset", default=None, help="Offset added after scaling")
    calibrate.add_argument("--scale", default=None, help="Multiplier")

    read_point = subparsers.add_parser("read-point", help="Read one mapped point")
    read_point.add_argument("--equipment", required=True, help="Equipment id or name")
    read_point.add_argument("--mapping", required=True, help="Mapping name or label")

    poll = subparsers.add_parser("poll", help="Poll every mapping of one equipment")
    poll.add_argument("--equipment", required=True, help="Equipment id or name")

    scan_slaves = subparsers.add_parser("scan-slaves", help="Probe unit ids behind a gateway")
    scan_slaves.add_argument("--host", required=True, help="Gateway IPv4 address")
    scan_slaves.add_argument("--port", type=int, default=502)
    scan_slaves.add_argument("--start", type=int, default=1, help="First slave id")
    scan_slaves.add_argument("--end", type=int, default=247, help="Last slave id")
    scan_slaves.add_argument("--timeout-ms", type=int, help="Per-probe timeout")
    scan_slaves.add_argument("--concurrency", type=int, help="Parallel connections")
    scan_slaves.add_argument("--create", action="store_true", help="Create equipment for found slaves")
    scan_slaves.add_argument("--name-prefix", default="Modbus Device")

    scan_network = subparsers.add_parser("scan-network", help="Sweep for Modbus TCP devices")
    scan_network.add_argument("--subnet", help="CIDR, e.g. 192.168.1.0/24")
    scan_network.add_argument("--target", help="Single IP or last-octet range, e.g. 192.168.1.10-40")
    scan_network.add_argument("--ports", help="Comma-separated ports (default 502,503)")
    scan_network.add_argument("--timeout-ms", type=int, help="Per-probe timeout")

    subparsers.add_parser("serve", help="Run with health endpoints until interrupted")

    return parser


async def run_command(args: argparse.Namespace, service: DeviceService) -> Any:
    """Execute one parsed command. Returns a JSON-serializable result."""
    command = args.command

    if command == "presets":
        return {"success": True, "presets": service.list_presets(args.category)}

    if command == "preset":
        key = int(args.key) if args.key.isdigit() else args.key
        mappings = service.expand_preset(key)
        return {"success": True, "mappings": [m.to_dict() for m in mappings]}

    if command == "export-map":
        if args.equipment:
            equipment = await service.store.get(_equipment_ref(args.equipment))
            mappings = equipment.register_mappings
        else:
            key = int(args.preset) if args.preset.isdigit() else args.preset
            mappings = service.expand_preset(key)
        return service.export_register_map(mappings)

    if command == "import-map":
        mappings = service.import_register_map(_read_payload(args.file))
        return {
            "success": True,
            "count": len(mappings),
            "mappings": [m.to_dict() for m in mappings],
        }

    if command == "read-coils":
        snapshot = await service.read_coils(_equipment_ref(args.equipment))
        return {"success": True, **snapshot.to_dict()}

    if command == "write-coil":
        snapshot = await service.write_coil(_equipment_ref(args.equipment), args.address, args.value)
        return {"success": True, **snapshot.to_dict()}

    if command == "write-all":
        snapshot = await service.write_all_coils(_equipment_ref(args.equipment), args.value)
        return {"success": True, **snapshot.to_dict()}

    if command == "switch":
        result = await service.schedule_coil(
            _equipment_ref(args.equipment),
            args.address,
            args.value,
            delay_s=args.delay,
            duration_s=args.duration,
        )
        # Timers die with the process; block until they have fired
        await service.timers.wait()
        return {"success": True, **result}

    if command == "calibrate":
        calibration = await service.apply_calibration(
            _equipment_ref(args.equipment), args.offset, args.scale
        )
        return {"success": True, **calibration}

    if command == "read-point":
        reading = await service.read_point(_equipment_ref(args.equipment), args.mapping)
        return {"success": True, **reading}

    if command == "poll":
        return await service.poll_equipment(_equipment_ref(args.equipment))

    if command == "scan-slaves":
        config: dict[str, Any] = {
            "host": args.host,
            "port": args.port,
            "startSlaveId": args.start,
            "endSlaveId": args.end,
        }
        if args.timeout_ms is not None:
            config["timeoutMs"] = args.timeout_ms
        if args.concurrency is not None:
            config["concurrency"] = args.concurrency

        result = await service.scan_slave_ids(config)
        output = {"success": True, **result.to_dict()}
        if args.create and result.discovered:
            provisioned = await service.create_equipment_from_slaves(
                args.host, args.port, result.discovered, args.name_prefix
            )
            output["provisioned"] = provisioned.to_dict()
        return output

    if command == "scan-network":
        ports = [int(p) for p in args.ports.split(",") if p.strip()] if args.ports else None
        result = await service.scan_network(
            subnet=args.subnet,
            target=args.target,
            ports=ports,
            timeout_ms=args.timeout_ms,
        )
        return {"success": True, **result.to_dict()}

    if command == "serve":
        await service.serve()
        return {"success": True}

    raise ValueError(f"Unknown command: {command}")


async def _main(args: argparse.Namespace, config: GatewayConfig) -> Any:
    service = DeviceService(config)
    if args.command == "serve":
        return await run_command(args, service)

    try:
        return await run_command(args, service)
    finally:
        await service.connection_pool.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config_file(args.config)
        configure_all(args.log_level or config.logging.level, config.logging.format == "json")
        result = asyncio.run(_main(args, config))
    except FieldGateError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps({"success": False, "error": e.message, "recoverable": e.recoverable}))
        return 1
    except (OSError, ValueError) as e:
        print(json.dumps({"success": False, "error": str(e)}))
        return 1

    print(json.dumps(result, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
