"""
devsplit: per-device graph partitioning
Places the operations of a dataflow graph on CPU, GPU and TPU devices and
splits the graph into one graph per device with explicit transfers.
"""

from .enums import DeviceKind, CONCRETE_DEVICES
from .exceptions import DevSplitError, UnknownDeviceError, PlacementError, PartitionError
from .config import DeviceInfo, PartitionConfig
from .catalog import kind_of, identifier_of, short_name_of
from .ir import Graph, Operation, Value, TensorShape, DEVICE_ATTR, SHAPE_ARRAY_ATTR
from .kernels import KernelRegistry, StaticKernelRegistry, TorchKernelRegistry
from .device_manager import DeviceManager
from .device_info import GraphDeviceInfo
from .partitioner import DevicePartitioner, TransferIdCounter, TransferRecord, partition_graph

__version__ = "0.1.0"
__all__ = [
    "DeviceKind",
    "CONCRETE_DEVICES",
    "DevSplitError",
    "UnknownDeviceError",
    "PlacementError",
    "PartitionError",
    "DeviceInfo",
    "PartitionConfig",
    "kind_of",
    "identifier_of",
    "short_name_of",
    "Graph",
    "Operation",
    "Value",
    "TensorShape",
    "DEVICE_ATTR",
    "SHAPE_ARRAY_ATTR",
    "KernelRegistry",
    "StaticKernelRegistry",
    "TorchKernelRegistry",
    "DeviceManager",
    "GraphDeviceInfo",
    "DevicePartitioner",
    "TransferIdCounter",
    "TransferRecord",
    "partition_graph",
]
