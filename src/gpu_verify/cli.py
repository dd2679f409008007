#!/usr/bin/env python3
"""
GPU Verification - Command Line Interface

Exit codes: 0 all required checks passed, 3 reboot required, 1 failure.
"""

import argparse
import sys
import time

from common.cli_args import EXIT_FAILURE, add_common_arguments, init_from_args, host_from_args
from common.exceptions import GpuSetupError
from boot_config.manager import GTT_KEYS
from hardware_detect.gpu_scanner import Vendor
from utils.process import CommandRunner

from .pipeline import verify
from .probes import VerificationContext


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpu-verify",
        description="Staged GPU driver and passthrough verification",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gpu-verify amd                      # Verify the AMD GPU on the host
  gpu-verify nvidia --container 101   # Also verify inside container 101
  gpu-verify amd --gtt                # Also check iGPU memory parameters
  gpu-verify amd --json               # Machine-readable report
        """
    )
    add_common_arguments(parser)
    parser.add_argument("vendor", choices=[Vendor.AMD.value, Vendor.NVIDIA.value])
    parser.add_argument("--pci", help="Explicit PCI address")
    parser.add_argument("--container", metavar="ID", help="Also verify inside this container")
    parser.add_argument("--boot-key", action="append", default=[], metavar="KEY",
                        help="Kernel parameter that must be active (repeatable)")
    parser.add_argument("--gtt", action="store_true",
                        help="Check the iGPU memory (GTT) kernel parameters")
    parser.add_argument("--timeout", type=float, metavar="SECONDS",
                        help="Overall deadline for the run")
    parser.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = init_from_args(args)
        boot_keys = list(args.boot_key)
        if args.gtt:
            boot_keys.extend(k for k in GTT_KEYS if k not in boot_keys)

        ctx = VerificationContext(
            vendor=Vendor(args.vendor),
            host=host_from_args(args),
            runner=CommandRunner(timeout=settings.probe_timeout),
            settings=settings,
            pci_address=args.pci,
            container_id=args.container,
            boot_keys=boot_keys,
        )
        deadline = time.monotonic() + args.timeout if args.timeout else None
        report = verify(ctx, deadline)
    except GpuSetupError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_FAILURE

    if args.json:
        print(report.to_json())
    else:
        report.print_summary()
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
