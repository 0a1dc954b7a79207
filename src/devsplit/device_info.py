# src/devsplit/device_info.py
"""
Per-graph device bookkeeping: which device kinds are used, and operation
placement.
"""

import logging
from typing import Any, Iterator, List, Optional, Tuple

from .catalog import identifier_of, kind_of
from .config import PartitionConfig
from .device_manager import DeviceManager
from .enums import CONCRETE_DEVICES, DeviceKind
from .exceptions import PartitionError, PlacementError
from .ir import DEVICE_ATTR, Graph
from .kernels import KernelRegistry

logger = logging.getLogger(__name__)


class UsedDevices:
    """Restartable view over the used device kinds, in enumeration order.

    Iteration reads the tracker's state at the time iteration starts.
    """

    def __init__(self, used: dict):
        self._used = used

    def __iter__(self) -> Iterator[DeviceKind]:
        return iter([kind for kind in CONCRETE_DEVICES if self._used[kind]])

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __contains__(self, kind) -> bool:
        return kind in self._used and self._used[kind]


class GraphDeviceInfo:
    """Device information of one graph being generated.

    Tracks the primary device and every device kind referenced by the graph's
    operations. The primary device is always counted as used.

    ``is_tpu_infeed_enabled`` is not read by placement or partitioning; it is
    carried for the lowering that generates TPU infeed and outfeed ops.
    """

    def __init__(self, primary_device: DeviceKind,
                 is_tpu_infeed_enabled: bool = False,
                 kernel_registry: Optional[KernelRegistry] = None,
                 config: Optional[PartitionConfig] = None):
        assert primary_device.is_concrete, f"invalid primary device {primary_device}"
        self.primary_device = primary_device
        self.is_tpu_infeed_enabled = is_tpu_infeed_enabled
        self.kernel_registry = kernel_registry
        self.config = config or PartitionConfig(primary_device=primary_device)

        self._used = {kind: False for kind in CONCRETE_DEVICES}
        self._used[primary_device] = True
        self.num_used_devices = 1

    @classmethod
    def for_graph(cls, graph: Graph, remove_config_ops: bool = False,
                  kernel_registry: Optional[KernelRegistry] = None,
                  config: Optional[PartitionConfig] = None) -> "GraphDeviceInfo":
        """Build the device info for ``graph`` from its configuration op.

        A ``configureForGPU`` op makes the accelerator primary, a
        ``configureForTPU`` op the tensor processor. Without one the configured
        primary device is used, or the host's best device when
        ``auto_detect_primary`` is set. Devices already named by the graph's
        device attributes are marked used.
        """
        config = config or PartitionConfig()
        config_ops = [op for op in graph if op.op_type in config.config_op_types]
        if len(config_ops) > 1:
            raise PartitionError(
                f"graph '{graph.name}' has {len(config_ops)} device configuration ops, "
                f"expected at most one"
            )

        is_tpu_infeed_enabled = False
        if config_ops:
            config_op = config_ops[0]
            if config_op.op_type == config.tpu_config_op_type:
                primary = DeviceKind.TENSOR_PROCESSOR
                is_tpu_infeed_enabled = bool(config_op.get_attr(config.tpu_infeed_attr, False))
            else:
                primary = DeviceKind.ACCELERATOR
            if remove_config_ops:
                graph.remove_operation(config_op)
        elif config.auto_detect_primary:
            primary = DeviceManager().primary_device
        else:
            primary = config.primary_device

        logger.info(f"Graph '{graph.name}': primary device {identifier_of(primary)}"
                    + (" (TPU infeed enabled)" if is_tpu_infeed_enabled else ""))

        device_info = cls(primary, is_tpu_infeed_enabled, kernel_registry, config)
        for op in graph:
            for identifier in op.device_attrs():
                device_info.mark_used(kind_of(identifier))
        return device_info

    def mark_used(self, kind: DeviceKind) -> None:
        assert kind != DeviceKind.INVALID, "cannot mark the invalid device used"
        if kind == DeviceKind.ALL_DEVICES or self._used[kind]:
            return
        self._used[kind] = True
        self.num_used_devices += 1
        logger.info(f"Device {identifier_of(kind)} is now in use")

    def is_used(self, kind: DeviceKind) -> bool:
        return kind in self.used_devices()

    def used_devices(self) -> UsedDevices:
        """Used device kinds in enumeration order, primary included."""
        return UsedDevices(self._used)

    def _supports(self, op_type: str, kind: DeviceKind) -> bool:
        if self.kernel_registry is None:
            return True
        return self.kernel_registry.supports(op_type, kind)

    def choose_device(self, op_type: str, op_name: str = "") -> DeviceKind:
        """Pick a device for an op with no explicit device.

        Prefers the primary device, then other used devices in enumeration
        order, then the configured fallback devices.
        """
        if op_type in self.config.host_op_types:
            return DeviceKind.GENERAL_PURPOSE

        if self._supports(op_type, self.primary_device):
            return self.primary_device

        for kind in self.used_devices():
            if kind != self.primary_device and self._supports(op_type, kind):
                return kind

        for kind in self.config.fallback_devices:
            if not self.is_used(kind) and self._supports(op_type, kind):
                return kind

        raise PlacementError(op_name or op_type, op_type)

    def place_operation(self, op_type: str, op_device: str,
                        attributes: List[Tuple[str, Any]],
                        op_name: str = "") -> DeviceKind:
        """Choose a device for an op under construction.

        Appends the device attribute to ``attributes`` and marks the device
        used. An explicit ``op_device`` is respected as-is. Callers must place
        each op once; a second call adds a duplicate device attribute.
        """
        if op_device:
            chosen = kind_of(op_device)
        else:
            chosen = self.choose_device(op_type, op_name)
        self.mark_used(chosen)

        logger.info(f"Placed {op_name or op_type} on {identifier_of(chosen)}")
        attributes.append((DEVICE_ATTR, identifier_of(chosen)))
        return chosen

    def place_graph(self, graph: Graph) -> int:
        """Place every operation of ``graph`` that has no device yet.

        Returns the number of operations placed.
        """
        placed = 0
        for op in graph:
            if op.has_attr(DEVICE_ATTR):
                continue
            self.place_operation(op.op_type, "", op.attributes, op.name)
            placed += 1
        return placed

    def __repr__(self) -> str:
        used = ", ".join(identifier_of(k) for k in self.used_devices())
        return f"GraphDeviceInfo(primary={identifier_of(self.primary_device)}, used=[{used}])"
