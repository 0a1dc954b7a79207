# src/devsplit/cli.py
"""
Command-line interface for the devsplit package
"""

import argparse
import json
import logging
import sys

import psutil
import torch

from . import __version__
from .catalog import identifier_of, short_name_of
from .config import PartitionConfig
from .device_info import GraphDeviceInfo
from .device_manager import DeviceManager
from .enums import CONCRETE_DEVICES, DeviceKind
from .exceptions import DevSplitError
from .ir import Graph
from .kernels import TorchKernelRegistry
from .partitioner import DevicePartitioner, TransferIdCounter

logger = logging.getLogger(__name__)

_KIND_NAMES = {
    "cpu": DeviceKind.GENERAL_PURPOSE,
    "gpu": DeviceKind.ACCELERATOR,
    "tpu": DeviceKind.TENSOR_PROCESSOR,
}


def format_bytes(bytes_value):
    """Format bytes to human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_value < 1024.0:
            return f"{bytes_value:.2f} {unit}"
        bytes_value /= 1024.0
    return f"{bytes_value:.2f} PB"


def print_system_info():
    """Print the host devices and the device catalog."""
    print(f"devsplit v{__version__} - System Information")
    print("=" * 50)

    print("\nCPU Information:")
    print(f"  Physical cores: {psutil.cpu_count(logical=False)}")
    print(f"  Logical cores: {psutil.cpu_count(logical=True)}")

    print("\nPyTorch Information:")
    print(f"  Version: {torch.__version__}")
    print(f"  CUDA available: {torch.cuda.is_available()}")

    device_manager = DeviceManager()
    print("\nDetected Devices:")
    for device in device_manager.devices:
        memory = format_bytes(device.total_memory) if device.total_memory else "unknown"
        print(f"  {identifier_of(device.kind)} ({device.device_name}, "
              f"{device.device_type}:{device.device_id}) - memory: {memory}")
    print(f"\n  Default primary device: {identifier_of(device_manager.primary_device)}")

    print("\n" + "=" * 50)
    print("Device Catalog:")
    for kind in CONCRETE_DEVICES + (DeviceKind.ALL_DEVICES,):
        print(f"  {short_name_of(kind):<4} {identifier_of(kind)}")


def summarize(subgraphs, transfers):
    """Print one line per device graph plus the transfers between them."""
    for kind, subgraph in subgraphs.items():
        print(f"{subgraph.name} [{identifier_of(kind)}]: {len(subgraph)} ops")
        for op in subgraph:
            operands = ", ".join(v.name for v in op.operands)
            print(f"    {op.name} = {op.op_type}({operands})")
    if transfers:
        print("\nTransfers:")
        for t in transfers:
            print(f"  #{t.transfer_id}: {t.value.name} "
                  f"{short_name_of(t.src_device)} -> {short_name_of(t.dest_device)}")


def partition_command(args):
    """Load, optionally place, and partition a graph from a JSON file."""
    graph = Graph.load_from_file(args.graph)

    config = PartitionConfig(verbose=args.verbose)
    if args.verbose:
        logging.getLogger("devsplit").setLevel(logging.INFO)
    if args.primary == "auto":
        config.auto_detect_primary = True
    elif args.primary:
        config.primary_device = _KIND_NAMES[args.primary]

    registry = TorchKernelRegistry() if args.registry == "torch" else None
    device_info = GraphDeviceInfo.for_graph(
        graph, remove_config_ops=True, kernel_registry=registry, config=config
    )
    if args.place:
        placed = device_info.place_graph(graph)
        logger.info(f"Placed {placed} operation(s)")

    partitioner = DevicePartitioner(graph, device_info, TransferIdCounter(args.first_transfer_id))
    subgraphs = partitioner.partition()
    summarize(subgraphs, partitioner.transfers)

    if args.output:
        data = {
            "graphs": {identifier_of(k): g.to_dict() for k, g in subgraphs.items()},
            "next_transfer_id": partitioner.transfer_ids.peek(),
        }
        with open(args.output, "w") as f:
            json.dump(data, f, indent=2)
        print(f"\nWrote {len(subgraphs)} graph(s) to {args.output}")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="devsplit: split dataflow graphs across devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  devsplit info                                  # Show host devices
  devsplit partition model.json --place          # Place and partition a graph
  devsplit partition model.json -o parts.json    # Write per-device graphs
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'devsplit v{__version__}'
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("info", help="Show host devices and the device catalog")

    part = subparsers.add_parser("partition", help="Partition a graph stored as JSON")
    part.add_argument("graph", help="Path to the graph JSON file")
    part.add_argument("--primary", choices=sorted(_KIND_NAMES) + ["auto"],
                      help="Primary device when the graph has no configuration op")
    part.add_argument("--place", action="store_true",
                      help="Place operations that have no device attribute")
    part.add_argument("--registry", choices=["torch", "any"], default="any",
                      help="Kernel availability used for placement")
    part.add_argument("--first-transfer-id", type=int, default=1, metavar="ID",
                      help="First transfer id to allocate")
    part.add_argument("-o", "--output", metavar="FILE",
                      help="Write the per-device graphs as JSON")
    part.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    if args.command == "partition":
        logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
        try:
            partition_command(args)
        except DevSplitError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
    else:
        # Default to system info
        print_system_info()
    return 0


if __name__ == "__main__":
    sys.exit(main())
