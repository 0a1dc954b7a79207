# src/devsplit/partitioner.py
"""
Partitioning of a placed graph into one graph per used device.

Every operation is copied into the graph of its device; operations placed on
``ALL_DEVICES`` are copied into every device graph. Whenever a value is consumed
on a device other than the one that produced it, a send op is added to the
producer's graph and a receive op to the consumer's graph, both tagged with the
same transfer id. Each (value, destination device) pair is transferred at most
once.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .catalog import device_kind_of_operation, identifier_of, short_name_of
from .device_info import GraphDeviceInfo
from .enums import DeviceKind
from .exceptions import PartitionError
from .ir import DEVICE_ATTR, SHAPE_ARRAY_ATTR, Graph, Operation, Value, is_shape_array_attr

logger = logging.getLogger(__name__)


class TransferIdCounter:
    """Source of transfer ids, shared by every partitioning in a compilation."""

    def __init__(self, start: int = 1):
        self._next_id = start
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            transfer_id = self._next_id
            self._next_id += 1
            return transfer_id

    def peek(self) -> int:
        """The id the next ``allocate`` call returns."""
        with self._lock:
            return self._next_id


@dataclass(frozen=True)
class TransferRecord:
    """One value moved from one device graph to another."""
    transfer_id: int
    value: Value
    src_device: DeviceKind
    dest_device: DeviceKind


class DevicePartitioner:
    """Splits a placed graph into per-device graphs.

    For example, say ``graph`` returns a+b where a and b are constants, and a is
    placed on the GPU while the CPU is primary:

    - the GPU graph holds the constant a, fed into a send op to the CPU;
    - the CPU graph receives a, and adds it to the constant b to produce the
      result.

    The source graph is never modified.
    """

    def __init__(self, graph: Graph, device_info: GraphDeviceInfo,
                 transfer_ids: TransferIdCounter):
        self.graph = graph
        self.device_info = device_info
        self.transfer_ids = transfer_ids
        self.config = device_info.config

        # Set up logging based on config
        if self.config.verbose:
            logger.setLevel(logging.DEBUG)

        self.transfers: List[TransferRecord] = []
        self._result: Optional["OrderedDict[DeviceKind, Graph]"] = None

        # Per-run state, reset by every _run
        self._subgraphs: Dict[DeviceKind, Graph] = {}
        self._pending: List[TransferRecord] = []
        # Device each source value lives on (possibly ALL_DEVICES)
        self._homes: Dict[int, DeviceKind] = {}
        # (source value, device) -> value usable in that device's graph
        self._mapped: Dict[Tuple[int, DeviceKind], Value] = {}
        # Shape-array attribute of each value's producer
        self._shapes: Dict[int, object] = {}

    def partition(self) -> "OrderedDict[DeviceKind, Graph]":
        """Build one graph per used device, ordered by device kind.

        Runs once; later calls return the same graphs.
        """
        if self._result is None:
            self.graph.verify()
            # A failed run publishes nothing; transfer ids it took stay consumed
            self._result = self._run()
        return self._result

    def extract_for_device(self, kind: DeviceKind) -> Graph:
        """Graph extracted from the source graph, specialized on ``kind``."""
        subgraphs = self.partition()
        if kind not in subgraphs:
            raise PartitionError(
                f"device {kind} is not used by graph '{self.graph.name}'"
            )
        return subgraphs[kind]

    def _run(self) -> "OrderedDict[DeviceKind, Graph]":
        used = list(self.device_info.used_devices())
        primary = self.device_info.primary_device

        # Nothing is published until the whole graph is processed
        self._subgraphs = OrderedDict(
            (kind, Graph(f"{self.graph.name}_{short_name_of(kind)}")) for kind in used
        )
        self._homes = {}
        self._mapped = {}
        self._shapes = {}
        self._pending = []

        # Arguments are passed to the primary device graph
        primary_graph = self._subgraphs[primary]
        for arg in self.graph.arguments:
            self._homes[id(arg)] = primary
            self._mapped[(id(arg), primary)] = primary_graph.add_argument(arg.name, arg.type)

        for op in self.graph:
            self._copy_operation(op, used)

        # Results are returned from the primary device graph
        primary_graph.set_outputs([self._value_on(v, primary) for v in self.graph.outputs])

        for kind, subgraph in self._subgraphs.items():
            logger.info(f"Extracted {subgraph.name} for {identifier_of(kind)}: "
                        f"{len(subgraph)} ops")
        logger.info(f"Graph '{self.graph.name}' split across {len(used)} device(s) "
                    f"with {len(self._pending)} transfer(s)")
        self.transfers = self._pending
        return self._subgraphs

    def _copy_operation(self, op: Operation, used: List[DeviceKind]) -> None:
        kind = device_kind_of_operation(op)
        if kind == DeviceKind.ALL_DEVICES:
            destinations = used
        elif kind in used:
            destinations = [kind]
        else:
            raise PartitionError(
                f"operation '{op.name}' is placed on {identifier_of(kind)}, "
                f"which is not among the graph's used devices"
            )

        shapes = op.get_attr(SHAPE_ARRAY_ATTR)
        for result in op.results:
            self._homes[id(result)] = kind
            if is_shape_array_attr(SHAPE_ARRAY_ATTR, shapes):
                self._shapes[id(result)] = shapes

        for dest in destinations:
            operands = [self._value_on(v, dest) for v in op.operands]
            if kind == DeviceKind.ALL_DEVICES:
                # A replica is placed exactly as if assigned to ``dest``
                attributes = [
                    (k, identifier_of(dest) if k == DEVICE_ATTR else v)
                    for k, v in op.attributes
                ]
                copy = op.clone(operands, attributes)
            else:
                copy = op.clone(operands)
            self._subgraphs[dest].append(copy)
            for result, copied in zip(op.results, copy.results):
                self._mapped[(id(result), dest)] = copied

    def _value_on(self, value: Value, dest: DeviceKind) -> Value:
        """The value usable on ``dest``, transferring it there if needed."""
        mapped = self._mapped.get((id(value), dest))
        if mapped is not None:
            return mapped

        src = self._homes[id(value)]
        # Values on ALL_DEVICES exist everywhere and were mapped above
        assert src.is_concrete, f"value '{value.name}' missing on {dest}"
        return self._transfer(value, src, dest)

    def _transfer(self, value: Value, src: DeviceKind, dest: DeviceKind) -> Value:
        transfer_id = self.transfer_ids.allocate()
        attributes = [
            ("transfer_id", transfer_id),
            ("src_device", identifier_of(src)),
            ("dest_device", identifier_of(dest)),
        ]
        shapes = self._shapes.get(id(value))
        if shapes is not None:
            attributes.append((SHAPE_ARRAY_ATTR, shapes))

        send = Operation(
            f"send_{transfer_id}",
            self.config.send_op_type,
            [self._mapped[(id(value), src)]],
            attributes + [(DEVICE_ATTR, identifier_of(src))],
            num_results=0,
        )
        self._subgraphs[src].append(send)

        recv = Operation(
            f"recv_{transfer_id}",
            self.config.recv_op_type,
            [],
            attributes + [(DEVICE_ATTR, identifier_of(dest))],
            result_names=[value.name],
            result_types=[value.type],
        )
        self._subgraphs[dest].append(recv)

        received = recv.result
        self._mapped[(id(value), dest)] = received
        self._pending.append(TransferRecord(transfer_id, value, src, dest))
        logger.debug(f"Transfer {transfer_id}: {value.name} "
                     f"{identifier_of(src)} -> {identifier_of(dest)}")
        return received


def partition_graph(graph: Graph, device_info: GraphDeviceInfo,
                    transfer_ids: Optional[TransferIdCounter] = None
                    ) -> "OrderedDict[DeviceKind, Graph]":
    """Partition ``graph`` in one call; a fresh counter is used if none is given."""
    partitioner = DevicePartitioner(graph, device_info, transfer_ids or TransferIdCounter())
    return partitioner.partition()
