# src/devsplit/config.py
"""
Configuration and data structures for the devsplit framework.
"""

from dataclasses import dataclass
from typing import Tuple

from .enums import DeviceKind


@dataclass
class DeviceInfo:
    """Hardware device information."""
    kind: DeviceKind
    device_id: int
    device_type: str  # torch device type: 'cpu', 'cuda' or 'xla'
    total_memory: int
    available_memory: int
    device_name: str = ""


@dataclass
class PartitionConfig:
    """Placement and partitioning configuration."""
    primary_device: DeviceKind = DeviceKind.GENERAL_PURPOSE
    auto_detect_primary: bool = False  # Pick primary from host hardware when the graph has no config op

    # Placement
    host_op_types: Tuple[str, ...] = ("RecvFromHost", "SendToHost")  # Always on the CPU
    fallback_devices: Tuple[DeviceKind, ...] = (DeviceKind.GENERAL_PURPOSE,)

    # Graph configuration ops
    gpu_config_op_type: str = "configureForGPU"
    tpu_config_op_type: str = "configureForTPU"
    tpu_infeed_attr: str = "is_infeed_enabled"

    # Inserted transfer ops
    send_op_type: str = "TensorSend"
    recv_op_type: str = "TensorRecv"

    # Debug/Verbose mode
    verbose: bool = False

    def __post_init__(self):
        if not self.primary_device.is_concrete:
            raise ValueError(f"primary_device must be a concrete device, got {self.primary_device}")
        for kind in self.fallback_devices:
            if not kind.is_concrete:
                raise ValueError(f"fallback device must be a concrete device, got {kind}")
        if self.send_op_type == self.recv_op_type:
            raise ValueError("send_op_type and recv_op_type must differ")
        self.host_op_types = tuple(self.host_op_types)
        self.fallback_devices = tuple(self.fallback_devices)

    @property
    def config_op_types(self) -> Tuple[str, str]:
        return (self.gpu_config_op_type, self.tpu_config_op_type)
