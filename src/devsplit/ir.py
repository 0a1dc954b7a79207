# src/devsplit/ir.py
"""
Minimal dataflow graph representation used by placement and partitioning.

A ``Graph`` holds its operations in program order. Every ``Operation`` consumes
``Value`` operands and defines fresh result values; values are compared by
identity, so two values with the same name are still distinct.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .exceptions import PartitionError

# Reserved attribute keys. They never collide with regular operation attributes.
DEVICE_ATTR = "__device"
SHAPE_ARRAY_ATTR = "__shapes"


@dataclass(frozen=True)
class TensorShape:
    """Static tensor shape; -1 marks an unknown dimension."""
    dims: Tuple[int, ...] = ()

    @property
    def rank(self) -> int:
        return len(self.dims)

    def __str__(self) -> str:
        return "[" + ", ".join("?" if d < 0 else str(d) for d in self.dims) + "]"


def is_shape_array_attr(name: str, value: Any) -> bool:
    """True if ``name`` is the shape-array key and ``value`` is an array of shapes."""
    if name != SHAPE_ARRAY_ATTR:
        return False
    if not isinstance(value, (list, tuple)):
        return False
    return all(isinstance(shape, TensorShape) for shape in value)


class Value:
    """A single SSA value, defined by a graph argument or an operation result."""

    def __init__(self, name: str, type: Optional[str] = None,
                 producer: Optional["Operation"] = None):
        self.name = name
        self.type = type
        self.producer = producer

    def __repr__(self) -> str:
        return f"Value({self.name!r})"


class Operation:
    """A graph node: an op type applied to operands, annotated with attributes."""

    def __init__(self, name: str, op_type: str,
                 operands: Sequence[Value] = (),
                 attributes: Sequence[Tuple[str, Any]] = (),
                 num_results: int = 1,
                 result_names: Optional[Sequence[str]] = None,
                 result_types: Optional[Sequence[Optional[str]]] = None):
        self.name = name
        self.op_type = op_type
        self.operands: List[Value] = list(operands)
        # Ordered (key, value) pairs; a key may repeat.
        self.attributes: List[Tuple[str, Any]] = list(attributes)

        if result_names is None:
            if num_results == 1:
                result_names = [name]
            else:
                result_names = [f"{name}:{i}" for i in range(num_results)]
        if result_types is None:
            result_types = [None] * len(result_names)
        if len(result_types) != len(result_names):
            raise ValueError("result_names and result_types differ in length")
        self.results: List[Value] = [
            Value(n, t, producer=self) for n, t in zip(result_names, result_types)
        ]

    @property
    def result(self) -> Value:
        """The single result of a one-result operation."""
        if len(self.results) != 1:
            raise ValueError(f"operation '{self.name}' has {len(self.results)} results")
        return self.results[0]

    def get_attr(self, key: str, default: Any = None) -> Any:
        for k, v in self.attributes:
            if k == key:
                return v
        return default

    def get_attrs(self, key: str) -> List[Any]:
        return [v for k, v in self.attributes if k == key]

    def device_attrs(self) -> List[Any]:
        """Every device attribute, in order; placement reads the first."""
        return self.get_attrs(DEVICE_ATTR)

    def has_attr(self, key: str) -> bool:
        return any(k == key for k, _ in self.attributes)

    def add_attr(self, key: str, value: Any) -> None:
        self.attributes.append((key, value))

    def clone(self, operands: Sequence[Value],
              attributes: Optional[Sequence[Tuple[str, Any]]] = None) -> "Operation":
        """Copy this operation onto new operands, with fresh result values."""
        if len(operands) != len(self.operands):
            raise ValueError(
                f"clone of '{self.name}' expects {len(self.operands)} operands, "
                f"got {len(operands)}"
            )
        return Operation(
            self.name,
            self.op_type,
            operands,
            self.attributes if attributes is None else attributes,
            result_names=[r.name for r in self.results],
            result_types=[r.type for r in self.results],
        )

    def __repr__(self) -> str:
        operands = ", ".join(v.name for v in self.operands)
        return f"Operation({self.name!r}, {self.op_type}({operands}))"


class Graph:
    """An ordered list of operations with graph arguments and outputs."""

    def __init__(self, name: str):
        self.name = name
        self.arguments: List[Value] = []
        self.operations: List[Operation] = []
        self.outputs: List[Value] = []

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def add_argument(self, name: str, type: Optional[str] = None) -> Value:
        value = Value(name, type)
        self.arguments.append(value)
        return value

    def add_operation(self, op_type: str, operands: Sequence[Value] = (),
                      attributes: Sequence[Tuple[str, Any]] = (),
                      name: Optional[str] = None, num_results: int = 1,
                      result_types: Optional[Sequence[Optional[str]]] = None) -> Operation:
        """Create an operation and append it in program order."""
        if name is None:
            name = f"{op_type.lower()}_{len(self.operations)}"
        if result_types is not None:
            num_results = len(result_types)
        op = Operation(name, op_type, operands, attributes,
                       num_results=num_results, result_types=result_types)
        return self.append(op)

    def append(self, op: Operation) -> Operation:
        self.operations.append(op)
        return op

    def remove_operation(self, op: Operation) -> None:
        self.operations.remove(op)

    def set_outputs(self, values: Sequence[Value]) -> None:
        self.outputs = list(values)

    def find(self, name: str) -> Optional[Operation]:
        for op in self.operations:
            if op.name == name:
                return op
        return None

    def verify(self) -> None:
        """Check that every value is defined before it is used."""
        defined = set(id(v) for v in self.arguments)
        for op in self.operations:
            for operand in op.operands:
                if id(operand) not in defined:
                    raise PartitionError(
                        f"graph '{self.name}': operand '{operand.name}' of "
                        f"'{op.name}' is used before it is defined"
                    )
            defined.update(id(r) for r in op.results)
        for value in self.outputs:
            if id(value) not in defined:
                raise PartitionError(
                    f"graph '{self.name}': output '{value.name}' is never defined"
                )

    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        def encode_value(value):
            if isinstance(value, (list, tuple)) and value and \
                    all(isinstance(s, TensorShape) for s in value):
                return {"shapes": [list(s.dims) for s in value]}
            if isinstance(value, TensorShape):
                return {"shape": list(value.dims)}
            return value

        return {
            "name": self.name,
            "arguments": [
                {"name": v.name, "type": v.type} for v in self.arguments
            ],
            "operations": [
                {
                    "name": op.name,
                    "type": op.op_type,
                    "operands": [v.name for v in op.operands],
                    "results": [r.name for r in op.results],
                    "result_types": [r.type for r in op.results],
                    "attributes": [[k, encode_value(v)] for k, v in op.attributes],
                }
                for op in self.operations
            ],
            "outputs": [v.name for v in self.outputs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Graph":
        """Rebuild a graph from ``to_dict`` output.

        Raises:
            PartitionError: if ``data`` is not a well-formed graph.
        """
        try:
            return cls._decode(data)
        except KeyError as e:
            raise PartitionError(f"malformed graph: missing field {e}") from e
        except (TypeError, ValueError, AttributeError) as e:
            raise PartitionError(f"malformed graph: {e}") from e

    @classmethod
    def _decode(cls, data: Dict[str, Any]) -> "Graph":
        def decode_value(value):
            if isinstance(value, dict) and set(value) == {"shapes"}:
                return [TensorShape(tuple(dims)) for dims in value["shapes"]]
            if isinstance(value, dict) and set(value) == {"shape"}:
                return TensorShape(tuple(value["shape"]))
            return value

        graph = cls(data.get("name", "graph"))
        values: Dict[str, Value] = {}

        def lookup(name: str, user: str) -> Value:
            if name not in values:
                raise PartitionError(
                    f"graph '{graph.name}': '{user}' refers to undefined value '{name}'"
                )
            return values[name]

        for arg in data.get("arguments", []):
            if isinstance(arg, str):
                arg = {"name": arg}
            values[arg["name"]] = graph.add_argument(arg["name"], arg.get("type"))

        for op_data in data.get("operations", []):
            name = op_data["name"]
            attributes = op_data.get("attributes", [])
            if isinstance(attributes, dict):
                attributes = list(attributes.items())
            result_names = op_data.get("results", [name])
            op = Operation(
                name,
                op_data["type"],
                [lookup(v, name) for v in op_data.get("operands", [])],
                [(k, decode_value(v)) for k, v in attributes],
                result_names=result_names,
                result_types=op_data.get("result_types"),
            )
            graph.append(op)
            for result in op.results:
                values[result.name] = result

        graph.set_outputs([lookup(v, "outputs") for v in data.get("outputs", [])])
        return graph

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, json_data: str) -> "Graph":
        try:
            data = json.loads(json_data)
        except json.JSONDecodeError as e:
            raise PartitionError(f"invalid graph JSON: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def load_from_file(cls, filename: str) -> "Graph":
        with open(filename, "r") as f:
            return cls.from_json(f.read())

    def __repr__(self) -> str:
        return f"Graph({self.name!r}, {len(self.operations)} ops)"
