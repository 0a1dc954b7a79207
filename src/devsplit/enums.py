# src/devsplit/enums.py
"""
Enumeration types for the devsplit framework.
"""

from enum import Enum


class DeviceKind(Enum):
    """Device an operation (and its results) is placed on.

    Declaration order is the enumeration order used when listing devices.
    """
    INVALID = 0
    GENERAL_PURPOSE = 1
    ACCELERATOR = 2
    TENSOR_PROCESSOR = 3
    # Pseudo-device: replicate on every device kind in use.
    ALL_DEVICES = 4

    @property
    def is_concrete(self) -> bool:
        """True for devices a subgraph can actually be built for."""
        return self in CONCRETE_DEVICES


CONCRETE_DEVICES = (
    DeviceKind.GENERAL_PURPOSE,
    DeviceKind.ACCELERATOR,
    DeviceKind.TENSOR_PROCESSOR,
)
