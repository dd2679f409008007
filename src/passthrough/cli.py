#!/usr/bin/env python3
"""
Passthrough - Command Line Interface

Synthesize container passthrough rules and write them into container configs.
"""

import argparse
import json
import sys

from common.cli_args import (
    EXIT_OK, EXIT_FAILURE, add_common_arguments, init_from_args, host_from_args,
)
from common.decorators import require_root
from common.exceptions import ConfigError, GpuSetupError
from hardware_detect.gpu_scanner import GPUScanner, Vendor
from utils.process import CommandRunner

from .container import ContainerCLI, ContainerConfigWriter
from .synthesizer import PassthroughSynthesizer, missing_device_classes
from .udev import install_udev_rules

VENDOR_CHOICES = [Vendor.AMD.value, Vendor.NVIDIA.value]


def _synthesize(args, settings):
    host = host_from_args(args)
    scanner = GPUScanner(host, CommandRunner(timeout=settings.probe_timeout))
    scanner.scan()
    device = scanner.select(Vendor(args.vendor), args.pci)
    config = PassthroughSynthesizer(settings, host).synthesize(device)

    missing = missing_device_classes(config, device.vendor)
    if missing:
        raise ConfigError(
            f"Rule set for {device.pci_address} lacks device classes: "
            f"{', '.join(map(str, missing))}",
            code="INCOMPLETE_RULES",
            details={"missing_majors": missing},
            recoverable=False,
        )
    return host, config


def cmd_show(args, settings) -> int:
    """Print the passthrough block for the selected GPU."""
    _, config = _synthesize(args, settings)
    if args.json:
        print(json.dumps(config.to_dict(), indent=2))
    else:
        print(config.render(), end="")
    return EXIT_OK


@require_root
def cmd_apply(args, settings) -> int:
    """Write the passthrough block into a container config."""
    host, config = _synthesize(args, settings)
    writer = ContainerConfigWriter(settings.container_config_dir, host)

    if args.dry_run:
        print(f"Would write to {writer.config_path(args.container_id)}:")
        print(config.render(), end="")
        return EXIT_OK

    changed = writer.apply(args.container_id, config)
    if not changed:
        print(f"✅ Container {args.container_id} already configured")
        return EXIT_OK

    print(f"✅ Passthrough block written for container {args.container_id}")
    pct = ContainerCLI(CommandRunner(timeout=settings.probe_timeout))
    if pct.is_running(args.container_id):
        print("⚠️  Restart the container for the new devices to appear")
    return EXIT_OK


@require_root
def cmd_remove(args, settings) -> int:
    """Remove the managed block from a container config."""
    writer = ContainerConfigWriter(settings.container_config_dir, host_from_args(args))
    if writer.remove(args.container_id):
        print(f"✅ Passthrough block removed from container {args.container_id}")
    else:
        print(f"Container {args.container_id} has no passthrough block")
    return EXIT_OK


def cmd_list(args, settings) -> int:
    """List containers with GPU passthrough."""
    writer = ContainerConfigWriter(settings.container_config_dir, host_from_args(args))
    containers = writer.gpu_containers()
    if not containers:
        print("No GPU-enabled containers found")
        return EXIT_FAILURE
    for cid in containers:
        print(cid)
    return EXIT_OK


@require_root
def cmd_udev(args, settings) -> int:
    """Install udev rules for GPU device permissions."""
    vendors = [Vendor(v) for v in args.vendor] if args.vendor else [Vendor.AMD, Vendor.NVIDIA]
    changed = install_udev_rules(
        vendors,
        host=host_from_args(args),
        runner=CommandRunner(timeout=settings.probe_timeout),
        rules_path=settings.udev_rules_path,
    )
    state = "installed" if changed else "already up to date"
    print(f"✅ udev rules {state}: {settings.udev_rules_path}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpu-passthrough",
        description="Container GPU passthrough configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gpu-passthrough show amd              # Print the block for the AMD GPU
  gpu-passthrough apply 101 nvidia      # Configure container 101
  gpu-passthrough apply 101 amd -n      # Show what would be written
  gpu-passthrough list                  # GPU-enabled containers
  gpu-passthrough udev                  # Install device permission rules
        """
    )
    add_common_arguments(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    subparsers.required = True

    show_parser = subparsers.add_parser("show", help="Print passthrough block")
    show_parser.add_argument("vendor", choices=VENDOR_CHOICES)
    show_parser.add_argument("--pci", help="Explicit PCI address")
    show_parser.add_argument("--json", action="store_true", help="Output JSON")
    show_parser.set_defaults(func=cmd_show)

    apply_parser = subparsers.add_parser("apply", help="Write block to container config")
    apply_parser.add_argument("container_id")
    apply_parser.add_argument("vendor", choices=VENDOR_CHOICES)
    apply_parser.add_argument("--pci", help="Explicit PCI address")
    apply_parser.add_argument("-n", "--dry-run", action="store_true",
                              help="Show what would be done")
    apply_parser.set_defaults(func=cmd_apply)

    remove_parser = subparsers.add_parser("remove", help="Remove block from container config")
    remove_parser.add_argument("container_id")
    remove_parser.set_defaults(func=cmd_remove)

    list_parser = subparsers.add_parser("list", help="List GPU-enabled containers")
    list_parser.set_defaults(func=cmd_list)

    udev_parser = subparsers.add_parser("udev", help="Install udev permission rules")
    udev_parser.add_argument("--vendor", action="append", choices=VENDOR_CHOICES,
                             help="Limit rules to a vendor (repeatable)")
    udev_parser.set_defaults(func=cmd_udev)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        settings = init_from_args(args)
        return args.func(args, settings)
    except GpuSetupError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
