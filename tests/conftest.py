# tests/conftest.py
"""
Pytest configuration and fixtures for devsplit tests.
"""

import pytest

from devsplit import DEVICE_ATTR, Graph, TransferIdCounter

CPU = "/device:CPU:0"
GPU = "/device:GPU:0"
TPU = "TPU_SYSTEM"
ALL = "ALL_DEVICES"


def placed(device):
    """Attribute list placing an op on ``device``."""
    return [(DEVICE_ATTR, device)]


@pytest.fixture
def transfer_ids():
    """Fresh transfer id counter starting at 1."""
    return TransferIdCounter()


@pytest.fixture
def cross_device_graph():
    """a on the CPU produces v; b on the GPU consumes it."""
    graph = Graph("f")
    a = graph.add_operation("Const", attributes=placed(CPU), name="a")
    graph.add_operation("Neg", [a.result], attributes=placed(GPU), name="b")
    return graph


@pytest.fixture
def unplaced_graph():
    """x -> Const c -> Add(x, c) -> MatMul, with no device attributes."""
    graph = Graph("model")
    x = graph.add_argument("x", "f32[4]")
    c = graph.add_operation("Const", name="c")
    add = graph.add_operation("Add", [x, c.result], name="add")
    mm = graph.add_operation("MatMul", [add.result, add.result], name="mm")
    graph.set_outputs([mm.result])
    return graph


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: Integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: Unit tests"
    )
