# src/devsplit/exceptions.py
"""
Exception types raised by the devsplit framework.
"""


class DevSplitError(Exception):
    """Base class for devsplit errors."""
    pass


class UnknownDeviceError(DevSplitError, ValueError):
    """A device identifier or kind that the catalog cannot resolve."""
    pass


class PlacementError(DevSplitError):
    """No usable device supports an operation."""

    def __init__(self, op_name: str, op_type: str, message: str = ""):
        self.op_name = op_name
        self.op_type = op_type
        super().__init__(
            message or f"cannot place operation '{op_name}' of type '{op_type}': "
                       f"no available device supports it"
        )


class PartitionError(DevSplitError):
    """The graph or its placement cannot be partitioned."""
    pass
