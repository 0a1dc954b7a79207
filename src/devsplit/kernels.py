# src/devsplit/kernels.py
"""
Kernel availability lookup: which op types can run on which device kinds.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Mapping, Optional

import torch

from .enums import DeviceKind

logger = logging.getLogger(__name__)


class KernelRegistry(ABC):
    """Answers whether an op type has a kernel on a device kind."""

    @abstractmethod
    def supports(self, op_type: str, kind: DeviceKind) -> bool:
        pass


class StaticKernelRegistry(KernelRegistry):
    """Kernel availability from an explicit table.

    ``universal`` lists device kinds that run every op type, e.g. the host CPU.
    """

    def __init__(self, kernels: Optional[Mapping[str, Iterable[DeviceKind]]] = None,
                 universal: Iterable[DeviceKind] = ()):
        self.kernels: Dict[str, set] = {}
        self.universal = frozenset(universal)
        for op_type, kinds in (kernels or {}).items():
            self.register(op_type, *kinds)

    def register(self, op_type: str, *kinds: DeviceKind) -> None:
        self.kernels.setdefault(op_type, set()).update(kinds)

    def supports(self, op_type: str, kind: DeviceKind) -> bool:
        if kind in self.universal:
            return True
        return kind in self.kernels.get(op_type, ())


class TorchKernelRegistry(KernelRegistry):
    """Kernel availability from the torch operator dispatcher.

    Op types are operator names such as ``aten::mm`` or ``add.Tensor``; names
    without a namespace are looked up in ``aten``.
    """

    DISPATCH_KEYS = {
        DeviceKind.GENERAL_PURPOSE: "CPU",
        DeviceKind.ACCELERATOR: "CUDA",
        DeviceKind.TENSOR_PROCESSOR: "XLA",
    }
    # Composite kernels work on every backend.
    COMPOSITE_KEYS = ("CompositeImplicitAutograd", "CompositeExplicitAutograd")

    def __init__(self, namespace: str = "aten"):
        self.namespace = namespace
        self._cache: Dict[tuple, bool] = {}

    def qualified_name(self, op_type: str) -> str:
        if "::" in op_type:
            return op_type
        return f"{self.namespace}::{op_type}"

    def _has_kernel(self, name: str, key: str) -> bool:
        try:
            return bool(torch._C._dispatch_has_kernel_for_dispatch_key(name, key))
        except RuntimeError:
            # Operator is not registered with the dispatcher
            return False

    def supports(self, op_type: str, kind: DeviceKind) -> bool:
        key = self.DISPATCH_KEYS.get(kind)
        if key is None:
            return False

        cache_key = (op_type, kind)
        if cache_key not in self._cache:
            name = self.qualified_name(op_type)
            supported = any(
                self._has_kernel(name, k) for k in (key,) + self.COMPOSITE_KEYS
            )
            logger.debug(f"Kernel lookup {name} on {key}: {supported}")
            self._cache[cache_key] = supported
        return self._cache[cache_key]
