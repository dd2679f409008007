#!/usr/bin/env python3
"""
Hardware Detection - Command Line Interface

Inventory of passthrough-capable GPUs and their stable device paths.
"""

import argparse
import json
import sys

from common.cli_args import (
    EXIT_OK, EXIT_FAILURE, add_common_arguments, init_from_args, host_from_args,
)
from common.exceptions import GpuSetupError
from utils.process import CommandRunner

from .device_paths import DevicePathResolver, canonical_pci_address
from .gpu_scanner import GPUScanner, Vendor


def _scanner(args, settings) -> GPUScanner:
    return GPUScanner(host_from_args(args), CommandRunner(timeout=settings.probe_timeout))


def cmd_scan(args, settings) -> int:
    """Scan and display GPUs."""
    scanner = _scanner(args, settings)
    scanner.scan()

    if args.json:
        print(scanner.to_json())
    else:
        scanner.print_summary()
    return EXIT_OK


def cmd_select(args, settings) -> int:
    """Pick the GPU a vendor workflow would configure."""
    scanner = _scanner(args, settings)
    scanner.scan()
    device = scanner.select(Vendor(args.vendor), args.pci)

    if args.json:
        print(json.dumps(device.to_dict(), indent=2))
        return EXIT_OK

    print(f"✅ Selected {device.vendor.value.upper()} GPU {device.pci_address}")
    print(f"   {device.display_name}")
    if not device.resolved:
        print("⚠️  DRM nodes could not be resolved through /dev/dri/by-path")
        return EXIT_FAILURE
    print(f"   card: {device.card_path}  render: {device.render_path}")
    return EXIT_OK


def cmd_resolve(args, settings) -> int:
    """Resolve a PCI address to its DRM nodes."""
    resolver = DevicePathResolver(host_from_args(args))
    address = canonical_pci_address(args.pci_address)
    paths = resolver.resolve(address)

    if args.json:
        print(json.dumps({
            "pci_address": address,
            "ok": paths.ok,
            "card_path": paths.card_path,
            "render_path": paths.render_path,
            "card_link": paths.card_link,
            "render_link": paths.render_link,
        }, indent=2))
    elif paths.ok:
        print(f"{address}")
        print(f"  card:   {paths.card_path}  ({paths.card_link})")
        print(f"  render: {paths.render_path}  ({paths.render_link})")
    else:
        print(f"❌ No /dev/dri/by-path entries for {address}", file=sys.stderr)

    return EXIT_OK if paths.ok else EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpu-detect",
        description="GPU inventory for container passthrough",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gpu-detect scan                 # List AMD/NVIDIA GPUs
  gpu-detect scan --json          # Machine-readable inventory
  gpu-detect select amd           # GPU an AMD workflow would use
  gpu-detect resolve 0000:c3:00.0 # DRM nodes for a PCI address
        """
    )
    add_common_arguments(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # scan command
    scan_parser = subparsers.add_parser("scan", help="Scan GPUs")
    scan_parser.add_argument("--json", action="store_true", help="Output JSON")
    scan_parser.set_defaults(func=cmd_scan)

    # select command
    select_parser = subparsers.add_parser("select", help="Select the GPU to configure")
    select_parser.add_argument("vendor", choices=[Vendor.AMD.value, Vendor.NVIDIA.value])
    select_parser.add_argument("--pci", help="Explicit PCI address")
    select_parser.add_argument("--json", action="store_true", help="Output JSON")
    select_parser.set_defaults(func=cmd_select)

    # resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Resolve DRM nodes")
    resolve_parser.add_argument("pci_address", help="PCI address, e.g. 0000:c3:00.0")
    resolve_parser.add_argument("--json", action="store_true", help="Output JSON")
    resolve_parser.set_defaults(func=cmd_resolve)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        # Default to scan
        args.func = cmd_scan
        args.json = False

    try:
        settings = init_from_args(args)
        return args.func(args, settings)
    except GpuSetupError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
