# examples/basic_example.py
"""
Basic example of placing a small graph and splitting it across devices
"""

from devsplit import (
    DeviceKind,
    Graph,
    GraphDeviceInfo,
    DevicePartitioner,
    PartitionConfig,
    StaticKernelRegistry,
    TensorShape,
    TransferIdCounter,
)


def build_graph():
    """A loop-free training step: infeed on the TPU, loss on the CPU."""
    graph = Graph("train_step")
    graph.add_operation("configureForTPU", attributes=[("is_infeed_enabled", True)])

    x = graph.add_argument("x", "f32[8,128]")
    batch = graph.add_operation(
        "InfeedDequeueTuple",
        attributes=[("__shapes", [TensorShape((8, 128))])],
        name="batch",
    )
    # Promoted scalar used by every device
    steps = graph.add_operation("Const", attributes=[("__device", "ALL_DEVICES"), ("value", 10)],
                                name="steps")
    logits = graph.add_operation("MatMul", [batch.result, x], name="logits")
    loss = graph.add_operation("SoftmaxLoss", [logits.result, steps.result], name="loss")
    graph.set_outputs([loss.result])
    return graph


def main():
    registry = StaticKernelRegistry(
        {
            "InfeedDequeueTuple": [DeviceKind.TENSOR_PROCESSOR],
            "MatMul": [DeviceKind.TENSOR_PROCESSOR, DeviceKind.ACCELERATOR],
        },
        universal=[DeviceKind.GENERAL_PURPOSE],
    )
    graph = build_graph()
    config = PartitionConfig(verbose=True)

    device_info = GraphDeviceInfo.for_graph(graph, remove_config_ops=True,
                                            kernel_registry=registry, config=config)
    device_info.place_graph(graph)
    print(device_info)

    # One counter per compilation, shared by every graph partitioned in it
    transfer_ids = TransferIdCounter()
    partitioner = DevicePartitioner(graph, device_info, transfer_ids)

    for kind, subgraph in partitioner.partition().items():
        print(f"\n=== {subgraph.name} ===")
        for op in subgraph:
            operands = ", ".join(v.name for v in op.operands)
            print(f"  {op.name}: {op.op_type}({operands})")
        if subgraph.outputs:
            print(f"  returns {[v.name for v in subgraph.outputs]}")

    print(f"\nNext transfer id: {transfer_ids.peek()}")


if __name__ == "__main__":
    main()
