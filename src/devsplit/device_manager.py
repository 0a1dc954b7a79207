# src/devsplit/device_manager.py
"""
Host device detection for the devsplit framework.
"""

import importlib.util
import logging
from typing import List

import psutil
import torch

from .catalog import torch_device_type_of
from .config import DeviceInfo
from .enums import DeviceKind

logger = logging.getLogger(__name__)


class DeviceManager:
    """Detects the device kinds available on this host."""

    def __init__(self):
        self.devices = self._detect_devices()
        self.primary_device = self._select_primary_device()

    def _detect_devices(self) -> List[DeviceInfo]:
        """Detect all available devices."""
        devices = []

        # Check CUDA devices
        if torch.cuda.is_available():
            try:
                for i in range(torch.cuda.device_count()):
                    props = torch.cuda.get_device_properties(i)
                    free_mem, _ = torch.cuda.mem_get_info(i)
                    devices.append(DeviceInfo(
                        kind=DeviceKind.ACCELERATOR,
                        device_id=i,
                        device_type=torch_device_type_of(DeviceKind.ACCELERATOR),
                        total_memory=props.total_memory,
                        available_memory=free_mem,
                        device_name=props.name
                    ))
            except RuntimeError as e:
                # Driver present but unusable; fall back to the host only
                logger.warning(f"Skipping CUDA devices: {e}")

        # torch_xla exposes TPUs; memory is not queried here
        if importlib.util.find_spec("torch_xla") is not None:
            devices.append(DeviceInfo(
                kind=DeviceKind.TENSOR_PROCESSOR,
                device_id=0,
                device_type=torch_device_type_of(DeviceKind.TENSOR_PROCESSOR),
                total_memory=0,
                available_memory=0,
                device_name='TPU'
            ))

        # Add CPU
        vm = psutil.virtual_memory()
        devices.append(DeviceInfo(
            kind=DeviceKind.GENERAL_PURPOSE,
            device_id=0,
            device_type=torch_device_type_of(DeviceKind.GENERAL_PURPOSE),
            total_memory=vm.total,
            available_memory=vm.available,
            device_name='CPU'
        ))

        return devices

    def _select_primary_device(self) -> DeviceKind:
        """Select the primary device kind: an accelerator if there is one."""
        if self.has_device(DeviceKind.ACCELERATOR):
            return DeviceKind.ACCELERATOR
        return DeviceKind.GENERAL_PURPOSE

    def has_device(self, kind: DeviceKind) -> bool:
        return any(d.kind == kind for d in self.devices)

    def available_kinds(self) -> List[DeviceKind]:
        """Detected device kinds in enumeration order."""
        return sorted({d.kind for d in self.devices}, key=lambda k: k.value)

    def get_total_gpu_memory(self) -> int:
        """Get total GPU memory across all devices."""
        return sum(d.total_memory for d in self.devices if d.kind == DeviceKind.ACCELERATOR)
