# src/devsplit/catalog.py
"""
Device catalog: canonical device identifiers and their device kinds.
"""

from .enums import DeviceKind
from .exceptions import PartitionError, UnknownDeviceError
from .ir import DEVICE_ATTR, Operation

DEFAULT_CPU_DEVICE = "/device:CPU:0"
DEFAULT_GPU_DEVICE = "/device:GPU:0"
DEFAULT_TPU_DEVICE = "TPU_SYSTEM"
# Only exists between placement and partitioning; replaced by real devices.
ALL_DEVICES = "ALL_DEVICES"

_IDENTIFIERS = {
    DeviceKind.GENERAL_PURPOSE: DEFAULT_CPU_DEVICE,
    DeviceKind.ACCELERATOR: DEFAULT_GPU_DEVICE,
    DeviceKind.TENSOR_PROCESSOR: DEFAULT_TPU_DEVICE,
    DeviceKind.ALL_DEVICES: ALL_DEVICES,
}

_KINDS = {identifier: kind for kind, identifier in _IDENTIFIERS.items()}

_SHORT_NAMES = {
    DeviceKind.GENERAL_PURPOSE: "CPU",
    DeviceKind.ACCELERATOR: "GPU",
    DeviceKind.TENSOR_PROCESSOR: "TPU",
    DeviceKind.ALL_DEVICES: "ALL",
}

_TORCH_DEVICE_TYPES = {
    DeviceKind.GENERAL_PURPOSE: "cpu",
    DeviceKind.ACCELERATOR: "cuda",
    DeviceKind.TENSOR_PROCESSOR: "xla",
}


def kind_of(identifier: str) -> DeviceKind:
    """Resolve a canonical device identifier, e.g. "/device:CPU:0"."""
    # Variants such as "CPU:0" are not accepted.
    try:
        return _KINDS[identifier]
    except (KeyError, TypeError):
        raise UnknownDeviceError(f"Unknown device: {identifier!r}") from None


def identifier_of(kind: DeviceKind) -> str:
    """Canonical identifier of ``kind``, as used in device attributes."""
    try:
        return _IDENTIFIERS[kind]
    except KeyError:
        raise UnknownDeviceError(f"Unsupported device kind: {kind}") from None


def short_name_of(kind: DeviceKind) -> str:
    """Short tag for naming per-device subgraphs."""
    try:
        return _SHORT_NAMES[kind]
    except KeyError:
        raise UnknownDeviceError(f"Unsupported device kind: {kind}") from None


def torch_device_type_of(kind: DeviceKind) -> str:
    """torch device type backing a concrete device kind."""
    try:
        return _TORCH_DEVICE_TYPES[kind]
    except KeyError:
        raise UnknownDeviceError(f"{kind} has no torch device type") from None


def device_identifier_of_operation(op: Operation) -> str:
    """The device identifier an operation was placed on."""
    identifier = op.get_attr(DEVICE_ATTR)
    if identifier is None:
        raise PartitionError(f"operation '{op.name}' has no device placement")
    return identifier


def device_kind_of_operation(op: Operation) -> DeviceKind:
    return kind_of(device_identifier_of_operation(op))
