#!/usr/bin/env python3
"""
Boot Parameters - Command Line Interface

Exit codes: 0 done, 3 done but a reboot is needed, 1 failure.
"""

import argparse
import sys

from common.cli_args import (
    EXIT_OK, EXIT_FAILURE, EXIT_REBOOT_REQUIRED,
    add_common_arguments, init_from_args, host_from_args,
)
from common.decorators import require_root
from common.exceptions import GpuSetupError, InvalidConfigError

from .manager import GTT_KEYS, ApplyResult, BootParameterManager, gtt_parameters


def _manager(args) -> BootParameterManager:
    return BootParameterManager(host=host_from_args(args))


def _parse_assignments(items):
    desired = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not key or not sep:
            raise InvalidConfigError("parameter", item, "expected KEY=VALUE")
        desired[key] = value
    return desired


def _report(result: ApplyResult) -> int:
    if result.changed:
        print("✅ Boot configuration updated")
    else:
        print("✅ Boot configuration already current")

    if result.reboot_required:
        print("⚠️  Reboot required for the new parameters to take effect")
        return EXIT_REBOOT_REQUIRED
    return EXIT_OK


def cmd_show(args, settings) -> int:
    """Show persisted and running parameters."""
    manager = _manager(args)
    print(f"Backend:   {manager.backend.name} ({manager.backend.marker})")
    print(f"Persisted: {manager.current()}")
    print(f"Running:   {manager.running()}")
    return EXIT_OK


@require_root
def cmd_set(args, settings) -> int:
    """Set KEY=VALUE parameters."""
    return _report(_manager(args).apply(_parse_assignments(args.params)))


@require_root
def cmd_remove(args, settings) -> int:
    """Remove parameters by key."""
    return _report(_manager(args).remove(args.keys))


@require_root
def cmd_gtt(args, settings) -> int:
    """Reserve system memory for an integrated GPU."""
    params = gtt_parameters(args.vram_gb)
    print(f"iGPU memory: {args.vram_gb}GB ({' '.join(f'{k}={v}' for k, v in params.items())})")
    return _report(_manager(args).apply(params))


def cmd_status(args, settings) -> int:
    """Check whether persisted parameters are active."""
    keys = args.keys or list(GTT_KEYS)
    manager = _manager(args)
    persisted = manager.current()
    running = manager.running()

    for key in keys:
        print(f"{key}: persisted={persisted.get(key)} running={running.get(key)}")

    if manager.pending_reboot(keys):
        print("⚠️  Reboot required")
        return EXIT_REBOOT_REQUIRED
    print("✅ Running kernel matches boot configuration")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpu-bootparams",
        description="Kernel boot parameter management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gpu-bootparams show                         # Persisted vs running
  gpu-bootparams gtt 96                       # 96GB iGPU memory
  gpu-bootparams set amdgpu.gttsize=98304     # Set any parameter
  gpu-bootparams remove amdgpu.gttsize        # Remove a parameter
  gpu-bootparams status                       # Exit 3 if reboot pending
        """
    )
    add_common_arguments(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    subparsers.required = True

    show_parser = subparsers.add_parser("show", help="Show parameters")
    show_parser.set_defaults(func=cmd_show)

    set_parser = subparsers.add_parser("set", help="Set parameters")
    set_parser.add_argument("params", nargs="+", metavar="KEY=VALUE")
    set_parser.set_defaults(func=cmd_set)

    remove_parser = subparsers.add_parser("remove", help="Remove parameters")
    remove_parser.add_argument("keys", nargs="+", metavar="KEY")
    remove_parser.set_defaults(func=cmd_remove)

    gtt_parser = subparsers.add_parser("gtt", help="Set iGPU memory allocation")
    gtt_parser.add_argument("vram_gb", type=int, help="Memory in GB (1-96)")
    gtt_parser.set_defaults(func=cmd_gtt)

    status_parser = subparsers.add_parser("status", help="Check for pending reboot")
    status_parser.add_argument("keys", nargs="*", metavar="KEY",
                               help="Keys to compare (default: iGPU memory keys)")
    status_parser.set_defaults(func=cmd_status)

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
