# tests/test_partitioner.py
"""
Unit tests for DevicePartitioner.
"""

import logging
import threading
from unittest.mock import patch

import pytest

from devsplit import (
    DEVICE_ATTR,
    SHAPE_ARRAY_ATTR,
    DeviceKind,
    DevicePartitioner,
    Graph,
    GraphDeviceInfo,
    PartitionConfig,
    PartitionError,
    TensorShape,
    TransferIdCounter,
    partition_graph,
)
from conftest import CPU, GPU, TPU, ALL, placed

GENERAL_PURPOSE = DeviceKind.GENERAL_PURPOSE
ACCELERATOR = DeviceKind.ACCELERATOR
TENSOR_PROCESSOR = DeviceKind.TENSOR_PROCESSOR


def op_types(graph):
    return [op.op_type for op in graph]


def sends(graph):
    return [op for op in graph if op.op_type == "TensorSend"]


def recvs(graph):
    return [op for op in graph if op.op_type == "TensorRecv"]


def is_transfer(op):
    return op.op_type in ("TensorSend", "TensorRecv")


class TestTransferIdCounter:
    """Test transfer id allocation."""

    def test_monotonic(self):
        counter = TransferIdCounter()
        assert [counter.allocate() for _ in range(3)] == [1, 2, 3]
        assert counter.peek() == 4

    def test_custom_start(self):
        counter = TransferIdCounter(start=10)
        assert counter.allocate() == 10

    def test_peek_takes_lock(self):
        counter = TransferIdCounter(start=5)
        with patch.object(counter, "_lock") as lock:
            assert counter.peek() == 5
        lock.__enter__.assert_called_once()

    def test_concurrent_allocation(self):
        counter = TransferIdCounter()
        ids = []
        lock = threading.Lock()

        def worker():
            local = [counter.allocate() for _ in range(200)]
            with lock:
                ids.extend(local)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(ids) == list(range(1, 801))


class TestDevicePartitioner:
    """Test splitting a placed graph into per-device graphs."""

    def test_single_device(self, transfer_ids):
        graph = Graph("f")
        x = graph.add_argument("x")
        c = graph.add_operation("Const", attributes=placed(CPU), name="c")
        add = graph.add_operation("Add", [x, c.result], attributes=placed(CPU), name="add")
        graph.set_outputs([add.result])

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()

        assert list(subgraphs) == [GENERAL_PURPOSE]
        cpu = subgraphs[GENERAL_PURPOSE]
        assert cpu.name == "f_CPU"
        assert [op.name for op in cpu] == ["c", "add"]
        assert cpu.find("add").operands == [cpu.arguments[0], cpu.find("c").result]
        assert cpu.outputs == [cpu.find("add").result]
        assert transfer_ids.peek() == 1

    def test_cross_device_edge(self, cross_device_graph, transfer_ids):
        """a on the CPU produces v; b on the GPU consumes it through one transfer."""
        info = GraphDeviceInfo.for_graph(cross_device_graph)
        subgraphs = DevicePartitioner(cross_device_graph, info, transfer_ids).partition()

        assert list(subgraphs) == [GENERAL_PURPOSE, ACCELERATOR]
        cpu = subgraphs[GENERAL_PURPOSE]
        gpu = subgraphs[ACCELERATOR]

        assert op_types(cpu) == ["Const", "TensorSend"]
        send = cpu.operations[1]
        assert send.operands == [cpu.find("a").result]
        assert send.get_attr("transfer_id") == 1
        assert send.get_attr("src_device") == CPU
        assert send.get_attr("dest_device") == GPU
        assert send.get_attr(DEVICE_ATTR) == CPU
        assert send.results == []

        assert op_types(gpu) == ["TensorRecv", "Neg"]
        recv = gpu.operations[0]
        assert recv.get_attr("transfer_id") == 1
        assert recv.get_attr(DEVICE_ATTR) == GPU
        assert gpu.find("b").operands == [recv.result]
        assert recv.result.name == "a"

        assert gpu.name == "f_GPU"
        assert gpu.arguments == [] and gpu.outputs == []

    def test_source_graph_unchanged(self, cross_device_graph, transfer_ids):
        before = cross_device_graph.to_dict()
        info = GraphDeviceInfo.for_graph(cross_device_graph)
        subgraphs = DevicePartitioner(cross_device_graph, info, transfer_ids).partition()

        assert cross_device_graph.to_dict() == before
        source_ops = set(map(id, cross_device_graph.operations))
        for subgraph in subgraphs.values():
            assert not source_ops & set(map(id, subgraph.operations))

    def test_transfer_deduplication(self, transfer_ids):
        """Two consumers on the GPU share one transfer of v."""
        graph = Graph("f")
        v = graph.add_operation("Const", attributes=placed(CPU), name="v")
        graph.add_operation("Neg", [v.result], attributes=placed(GPU), name="b")
        graph.add_operation("Abs", [v.result], attributes=placed(GPU), name="c")
        graph.add_operation("Exp", [v.result], attributes=placed(TPU), name="d")

        info = GraphDeviceInfo.for_graph(graph)
        partitioner = DevicePartitioner(graph, info, transfer_ids)
        subgraphs = partitioner.partition()

        gpu = subgraphs[ACCELERATOR]
        assert len(recvs(gpu)) == 1
        assert gpu.find("b").operands[0] is gpu.find("c").operands[0]

        # One more transfer for the TPU
        cpu = subgraphs[GENERAL_PURPOSE]
        assert [s.get_attr("transfer_id") for s in sends(cpu)] == [1, 2]
        assert recvs(subgraphs[TENSOR_PROCESSOR])[0].get_attr("transfer_id") == 2
        assert [(t.src_device, t.dest_device) for t in partitioner.transfers] == [
            (GENERAL_PURPOSE, ACCELERATOR), (GENERAL_PURPOSE, TENSOR_PROCESSOR),
        ]

    def test_all_devices_replication(self, transfer_ids):
        """An ALL_DEVICES op is copied into every device graph without transfers."""
        graph = Graph("f")
        n = graph.add_operation("Const", attributes=placed(ALL), name="n")
        graph.add_operation("Add", [n.result, n.result], attributes=placed(CPU), name="x")
        graph.add_operation("Mul", [n.result, n.result], attributes=placed(GPU), name="y")

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()

        cpu = subgraphs[GENERAL_PURPOSE]
        gpu = subgraphs[ACCELERATOR]
        assert [op.name for op in cpu] == ["n", "x"]
        assert [op.name for op in gpu] == ["n", "y"]
        assert cpu.find("x").operands[0] is cpu.find("n").result
        assert gpu.find("y").operands[0] is gpu.find("n").result
        assert cpu.find("n") is not gpu.find("n")
        # Replicas carry their own device, never the pseudo-device
        assert cpu.find("n").get_attrs(DEVICE_ATTR) == [CPU]
        assert gpu.find("n").get_attrs(DEVICE_ATTR) == [GPU]
        assert transfer_ids.peek() == 1

    def test_replica_operands_transferred_per_device(self, transfer_ids):
        """Each replica gets its operand as if it were placed on its own device."""
        graph = Graph("f")
        v = graph.add_operation("Const", attributes=placed(GPU), name="v")
        graph.add_operation("Identity", [v.result], attributes=placed(ALL), name="r")

        info = GraphDeviceInfo.for_graph(graph, config=PartitionConfig())
        info.mark_used(TENSOR_PROCESSOR)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()

        gpu = subgraphs[ACCELERATOR]
        assert gpu.find("r").operands == [gpu.find("v").result]
        assert [s.get_attr("dest_device") for s in sends(gpu)] == [CPU, TPU]
        for kind in (GENERAL_PURPOSE, TENSOR_PROCESSOR):
            subgraph = subgraphs[kind]
            assert op_types(subgraph) == ["TensorRecv", "Identity"]
            assert subgraph.find("r").operands == [subgraph.operations[0].result]

    def test_value_from_all_devices_needs_no_transfer(self, transfer_ids):
        graph = Graph("f")
        graph.add_argument("x")
        n = graph.add_operation("Const", attributes=placed(ALL), name="n")
        graph.add_operation("Add", [n.result, n.result], attributes=placed(TPU), name="y")
        graph.set_outputs([n.result])

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()
        cpu = subgraphs[GENERAL_PURPOSE]
        assert cpu.outputs == [cpu.find("n").result]
        assert transfer_ids.peek() == 1

    def test_arguments_and_outputs_on_primary(self, transfer_ids):
        """Arguments enter and results leave through the primary device graph."""
        graph = Graph("f")
        x = graph.add_argument("x", "f32")
        y = graph.add_operation("Sqrt", [x], attributes=placed(GPU), name="y")
        graph.set_outputs([y.result])

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()
        cpu = subgraphs[GENERAL_PURPOSE]
        gpu = subgraphs[ACCELERATOR]

        assert [a.name for a in cpu.arguments] == ["x"]
        assert op_types(cpu) == ["TensorSend", "TensorRecv"]
        assert cpu.operations[0].operands == [cpu.arguments[0]]
        assert cpu.outputs == [cpu.operations[1].result]

        assert op_types(gpu) == ["TensorRecv", "Sqrt", "TensorSend"]
        assert gpu.operations[0].result.type == "f32"
        assert [op.get_attr("transfer_id") for op in gpu if op.has_attr("transfer_id")] == [1, 2]

    def test_shape_array_propagated(self, transfer_ids):
        shapes = [TensorShape((8, 128))]
        graph = Graph("f")
        feed = graph.add_operation(
            "InfeedDequeueTuple",
            attributes=placed(TPU) + [(SHAPE_ARRAY_ATTR, shapes)],
            name="feed",
        )
        graph.add_operation("Print", [feed.result], attributes=placed(CPU), name="p")
        c = graph.add_operation("Const", attributes=placed(TPU), name="c")
        graph.add_operation("Print", [c.result], attributes=placed(CPU), name="q")

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()
        send_feed, send_c = sends(subgraphs[TENSOR_PROCESSOR])
        recv_feed, recv_c = recvs(subgraphs[GENERAL_PURPOSE])

        assert send_feed.get_attr(SHAPE_ARRAY_ATTR) == shapes
        assert recv_feed.get_attr(SHAPE_ARRAY_ATTR) == shapes
        assert not send_c.has_attr(SHAPE_ARRAY_ATTR)
        assert not recv_c.has_attr(SHAPE_ARRAY_ATTR)

    def test_operand_order_within_subgraphs(self, transfer_ids):
        """Every operand is defined earlier in its own graph."""
        graph = Graph("f")
        x = graph.add_argument("x")
        a = graph.add_operation("A", [x], attributes=placed(GPU), name="a")
        b = graph.add_operation("B", [a.result, x], attributes=placed(TPU), name="b")
        c = graph.add_operation("C", [b.result, a.result], attributes=placed(CPU), name="c")
        d = graph.add_operation("D", [c.result], attributes=placed(ALL), name="d")
        e = graph.add_operation("E", [d.result, b.result], attributes=placed(GPU), name="e")
        graph.set_outputs([e.result, c.result])

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()
        for subgraph in subgraphs.values():
            subgraph.verify()

    def test_partition_completeness(self, transfer_ids):
        graph = Graph("f")
        n = graph.add_operation("Const", attributes=placed(ALL), name="n")
        m = graph.add_operation("Const", attributes=placed(ALL), name="m")
        a = graph.add_operation("Add", [n.result, m.result], attributes=placed(GPU), name="a")
        graph.add_operation("Neg", [a.result], attributes=placed(TPU), name="b")
        graph.add_operation("Abs", [a.result], attributes=placed(CPU), name="c")

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()
        used = len(subgraphs)
        assert used == 3

        copies = sum(1 for g in subgraphs.values() for op in g if not is_transfer(op))
        assert copies == 3 + 2 * used

    def test_transfer_pairing(self, transfer_ids):
        graph = Graph("f")
        x = graph.add_argument("x")
        a = graph.add_operation("A", [x], attributes=placed(GPU), name="a")
        b = graph.add_operation("B", [a.result], attributes=placed(TPU), name="b")
        c = graph.add_operation("C", [a.result, b.result], attributes=placed(CPU), name="c")
        graph.set_outputs([c.result])

        info = GraphDeviceInfo.for_graph(graph)
        subgraphs = DevicePartitioner(graph, info, transfer_ids).partition()
        all_sends = [op for g in subgraphs.values() for op in sends(g)]
        all_recvs = [op for g in subgraphs.values() for op in recvs(g)]

        send_ids = sorted(op.get_attr("transfer_id") for op in all_sends)
        recv_ids = sorted(op.get_attr("transfer_id") for op in all_recvs)
        assert send_ids == recv_ids == list(range(1, len(all_sends) + 1))
        for send in all_sends:
            recv = next(r for r in all_recvs
                        if r.get_attr("transfer_id") == send.get_attr("transfer_id"))
            assert recv.get_attr("src_device") == send.get_attr("src_device")
            assert recv.get_attr("dest_device") == send.get_attr("dest_device")

    def test_shared_counter_across_graphs(self, cross_device_graph, transfer_ids):
        """Ids are never reused when several graphs share one counter."""
        other = Graph("g")
        a = other.add_operation("Const", attributes=placed(TPU), name="a")
        other.add_operation("Neg", [a.result], attributes=placed(CPU), name="b")

        first = partition_graph(cross_device_graph,
                                GraphDeviceInfo.for_graph(cross_device_graph), transfer_ids)
        second = partition_graph(other, GraphDeviceInfo.for_graph(other), transfer_ids)

        assert sends(first[GENERAL_PURPOSE])[0].get_attr("transfer_id") == 1
        assert sends(second[TENSOR_PROCESSOR])[0].get_attr("transfer_id") == 2

    def test_partition_is_cached(self, cross_device_graph, transfer_ids):
        info = GraphDeviceInfo.for_graph(cross_device_graph)
        partitioner = DevicePartitioner(cross_device_graph, info, transfer_ids)
        first = partitioner.partition()
        assert partitioner.partition() is first
        assert transfer_ids.peek() == 2

    def test_extract_for_device(self, cross_device_graph, transfer_ids):
        info = GraphDeviceInfo.for_graph(cross_device_graph)
        partitioner = DevicePartitioner(cross_device_graph, info, transfer_ids)
        assert partitioner.extract_for_device(ACCELERATOR).name == "f_GPU"
        with pytest.raises(PartitionError):
            partitioner.extract_for_device(TENSOR_PROCESSOR)

    def test_custom_transfer_op_types(self, cross_device_graph, transfer_ids):
        config = PartitionConfig(send_op_type="D2DSend", recv_op_type="D2DRecv")
        info = GraphDeviceInfo.for_graph(cross_device_graph, config=config)
        subgraphs = DevicePartitioner(cross_device_graph, info, transfer_ids).partition()
        assert op_types(subgraphs[GENERAL_PURPOSE]) == ["Const", "D2DSend"]
        assert op_types(subgraphs[ACCELERATOR]) == ["D2DRecv", "Neg"]


class TestPartitionErrors:
    """Test graphs that cannot be partitioned."""

    def test_unplaced_operation(self, unplaced_graph, transfer_ids):
        info = GraphDeviceInfo(GENERAL_PURPOSE)
        with pytest.raises(PartitionError):
            DevicePartitioner(unplaced_graph, info, transfer_ids).partition()

    def test_device_not_marked_used(self, cross_device_graph, transfer_ids):
        info = GraphDeviceInfo(GENERAL_PURPOSE)
        with pytest.raises(PartitionError):
            DevicePartitioner(cross_device_graph, info, transfer_ids).partition()

    def test_use_before_definition(self, transfer_ids):
        other = Graph("other")
        foreign = other.add_operation("Const", attributes=placed(CPU))
        graph = Graph("f")
        graph.add_operation("Neg", [foreign.result], attributes=placed(CPU))

        with pytest.raises(PartitionError):
            DevicePartitioner(graph, GraphDeviceInfo(GENERAL_PURPOSE), transfer_ids).partition()

    def test_failed_partition_publishes_nothing(self, transfer_ids):
        """A retry after marking the missing device used rebuilds every graph."""
        graph = Graph("f")
        a = graph.add_operation("Const", attributes=placed(CPU), name="a")
        graph.add_operation("Neg", [a.result], attributes=placed(GPU), name="b")
        graph.add_operation("Neg", [a.result], attributes=placed(TPU), name="c")

        info = GraphDeviceInfo(GENERAL_PURPOSE)
        info.mark_used(ACCELERATOR)
        partitioner = DevicePartitioner(graph, info, transfer_ids)
        with pytest.raises(PartitionError):
            partitioner.partition()
        assert partitioner.transfers == []

        info.mark_used(TENSOR_PROCESSOR)
        subgraphs = partitioner.partition()

        assert list(subgraphs) == [GENERAL_PURPOSE, ACCELERATOR, TENSOR_PROCESSOR]
        for subgraph in subgraphs.values():
            subgraph.verify()
        for kind, name in ((ACCELERATOR, "b"), (TENSOR_PROCESSOR, "c")):
            subgraph = subgraphs[kind]
            assert op_types(subgraph) == ["TensorRecv", "Neg"]
            assert subgraph.find(name).operands == [recvs(subgraph)[0].result]
        assert len(sends(subgraphs[GENERAL_PURPOSE])) == 2

        # The id taken by the failed run is not handed out again
        ids = [t.transfer_id for t in partitioner.transfers]
        assert ids == [2, 3]
        assert [t.dest_device for t in partitioner.transfers] == [ACCELERATOR, TENSOR_PROCESSOR]


class TestPartitionerLogging:
    """Test how the partitioner configures logging."""

    def test_verbose_leaves_package_logger_alone(self, cross_device_graph, transfer_ids):
        package_logger = logging.getLogger("devsplit")
        previous = package_logger.level
        package_logger.setLevel(logging.ERROR)
        try:
            config = PartitionConfig(verbose=True)
            info = GraphDeviceInfo.for_graph(cross_device_graph, config=config)
            DevicePartitioner(cross_device_graph, info, transfer_ids)
            assert package_logger.level == logging.ERROR
            assert logging.getLogger("devsplit.partitioner").level == logging.DEBUG
        finally:
            package_logger.setLevel(previous)

    def test_quiet_leaves_levels_alone(self, cross_device_graph, transfer_ids):
        module_logger = logging.getLogger("devsplit.partitioner")
        previous = module_logger.level
        module_logger.setLevel(logging.INFO)
        try:
            info = GraphDeviceInfo.for_graph(cross_device_graph)
            DevicePartitioner(cross_device_graph, info, transfer_ids)
            assert module_logger.level == logging.INFO
        finally:
            module_logger.setLevel(previous)
