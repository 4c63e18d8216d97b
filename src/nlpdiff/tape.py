"""Node tapes: the flat, index-addressed representation of one expression.

A tape stores its nodes in prefix order:
every child sits at a larger position than its parent,
siblings appear in argument order,
and position 0 is the root.
A single descending loop therefore visits children before parents
(forward pass), and a single ascending loop visits parents before children
(reverse pass), without recursion.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass, field
from enum import IntEnum
from functools import cached_property
from typing import NamedTuple

import numpy as np
from numpy.typing import NDArray
from scipy.sparse import csc_matrix

from nlpdiff.operators import (
    COMPARISON_OPERATOR_TO_ID,
    COMPARISON_OPERATORS,
    FIXED_ARITY,
    LOGIC_OPERATOR_TO_ID,
    LOGIC_OPERATORS,
    OPERATOR_TO_ID,
    OPERATORS,
    UNIVARIATE_OPERATOR_TO_ID,
    UNIVARIATE_OPERATORS,
)


class NodeType(IntEnum):
    """Tag of a tape node."""

    VARIABLE = 0
    VALUE = 1
    PARAMETER = 2
    SUBEXPRESSION = 3
    CALL = 4
    CALLUNIVAR = 5
    COMPARISON = 6
    LOGIC = 7


LEAF_TYPES = frozenset(
    {NodeType.VARIABLE, NodeType.VALUE, NodeType.PARAMETER, NodeType.SUBEXPRESSION}
)


class Node(NamedTuple):
    """One tape entry.

    Attributes:
        type: The node tag.
        index: Variable index, constant-pool index, parameter handle,
            subexpression index or operator code, depending on ``type``.
        parent: Position of the parent node, ``-1`` for the root.
    """

    type: NodeType
    index: int
    parent: int


@dataclass(frozen=True, eq=False)
class Tape:
    """Immutable node sequence with its constant pool and child adjacency.

    Attributes:
        nodes: Nodes in prefix order, root first.
        const_values: Constant pool addressed by ``VALUE`` nodes.
    """

    nodes: tuple[Node, ...]
    const_values: NDArray[np.float64] = field(
        default_factory=lambda: np.zeros(0, dtype=np.float64)
    )

    def __post_init__(self) -> None:
        """Normalize inputs and validate the tape invariants."""
        nodes = tuple(Node(NodeType(t), int(i), int(p)) for t, i, p in self.nodes)
        object.__setattr__(self, "nodes", nodes)
        object.__setattr__(
            self, "const_values", np.asarray(self.const_values, dtype=np.float64)
        )
        _validate(self)

    def __len__(self) -> int:
        return len(self.nodes)

    @cached_property
    def adjacency(self) -> csc_matrix:
        """Boolean parent->children matrix; column ``k`` holds the children of node ``k``."""
        n = len(self.nodes)
        children = np.arange(1, n, dtype=np.int32)
        parents = np.fromiter(
            (node.parent for node in self.nodes[1:]), dtype=np.int32, count=n - 1
        )
        adj = csc_matrix(
            (np.ones(n - 1, dtype=bool), (children, parents)), shape=(n, n)
        )
        adj.sort_indices()
        return adj

    @cached_property
    def _child_ranges(self) -> tuple[list[int], list[int]]:
        """Plain-list copies of the adjacency index arrays for the sweep loops."""
        adj = self.adjacency
        return adj.indptr.tolist(), adj.indices.tolist()

    @property
    def children_indptr(self) -> list[int]:
        return self._child_ranges[0]

    @property
    def children_indices(self) -> list[int]:
        return self._child_ranges[1]

    def children(self, k: int) -> list[int]:
        """Positions of the children of node ``k``, in argument order."""
        indptr, indices = self._child_ranges
        return indices[indptr[k] : indptr[k + 1]]

    def operator(self, k: int) -> str:
        """Name of the operator at position ``k``."""
        node = self.nodes[k]
        match node.type:
            case NodeType.CALL:
                return OPERATORS[node.index]
            case NodeType.CALLUNIVAR:
                return UNIVARIATE_OPERATORS[node.index]
            case NodeType.COMPARISON:
                return COMPARISON_OPERATORS[node.index]
            case NodeType.LOGIC:
                return LOGIC_OPERATORS[node.index]
        raise ValueError(f"Node {k} of type {node.type.name} has no operator.")


def _validate(tape: Tape) -> None:
    """Check ordering, operator codes and arities, raising ``ValueError``."""
    nodes = tape.nodes
    if not nodes:
        raise ValueError("A tape needs at least one node.")
    if nodes[0].parent != -1:
        raise ValueError(f"The root must have parent -1, got {nodes[0].parent}.")

    num_children = [0] * len(nodes)
    for k, node in enumerate(nodes[1:], start=1):
        if not 0 <= node.parent < k:
            msg = (
                f"Node {k} has parent {node.parent}; "
                "parents must precede their children."
            )
            raise ValueError(msg)
        num_children[node.parent] += 1

    for k, node in enumerate(nodes):
        count = num_children[k]
        match node.type:
            case NodeType.VARIABLE | NodeType.PARAMETER | NodeType.SUBEXPRESSION:
                if node.index < 0:
                    raise ValueError(f"Node {k} has negative index {node.index}.")
            case NodeType.VALUE:
                if not 0 <= node.index < len(tape.const_values):
                    msg = (
                        f"Node {k} reads constant {node.index}, "
                        f"but the pool has {len(tape.const_values)} entries."
                    )
                    raise ValueError(msg)
            case NodeType.CALL:
                _check_code(k, node.index, OPERATORS)
                op = OPERATORS[node.index]
                expected = FIXED_ARITY.get(op)
                if expected is not None and count != expected:
                    raise ValueError(
                        f"Operator '{op}' at node {k} takes {expected} arguments, got {count}."
                    )
                if count == 0:
                    raise ValueError(f"Operator '{op}' at node {k} has no arguments.")
            case NodeType.CALLUNIVAR:
                _check_code(k, node.index, UNIVARIATE_OPERATORS)
                if count != 1:
                    raise ValueError(
                        f"Univariate node {k} must have exactly one argument, got {count}."
                    )
            case NodeType.COMPARISON:
                _check_code(k, node.index, COMPARISON_OPERATORS)
                if count < 2:
                    raise ValueError(
                        f"Comparison node {k} needs at least two arguments, got {count}."
                    )
            case NodeType.LOGIC:
                _check_code(k, node.index, LOGIC_OPERATORS)
                if count != 2:
                    raise ValueError(
                        f"Logic node {k} must have exactly two arguments, got {count}."
                    )
        if node.type in LEAF_TYPES and count:
            raise ValueError(f"Leaf node {k} ({node.type.name}) has children.")


def _check_code(k: int, code: int, table: tuple[str, ...]) -> None:
    if not 0 <= code < len(table):
        raise ValueError(f"Node {k} has unknown operator code {code}.")


# Tree construction


class VariableRef(NamedTuple):
    """Leaf referring to decision variable ``index``."""

    index: int


class ParameterRef(NamedTuple):
    """Leaf referring to nonlinear parameter ``index``."""

    index: int


class SubexpressionRef(NamedTuple):
    """Leaf referring to shared subexpression ``index``."""

    index: int


def tape_from_tree(tree) -> Tape:
    """Lay out a nested expression as a tape.

    Interior nodes are tuples ``(op, *args)``;
    leaves are [`VariableRef`][nlpdiff.VariableRef],
    [`ParameterRef`][nlpdiff.ParameterRef],
    [`SubexpressionRef`][nlpdiff.SubexpressionRef] or real numbers.
    A one-argument ``"+"`` or ``"-"`` is the univariate operator.

    Example:
        ``("+", ("sin", ("*", VariableRef(0), VariableRef(1))), ("^", VariableRef(0), 2))``
    """
    nodes: list[Node] = []
    const_values: list[float] = []
    stack: list[tuple[object, int]] = [(tree, -1)]
    while stack:
        item, parent = stack.pop()
        position = len(nodes)
        if isinstance(item, VariableRef):
            nodes.append(Node(NodeType.VARIABLE, item.index, parent))
        elif isinstance(item, ParameterRef):
            nodes.append(Node(NodeType.PARAMETER, item.index, parent))
        elif isinstance(item, SubexpressionRef):
            nodes.append(Node(NodeType.SUBEXPRESSION, item.index, parent))
        elif isinstance(item, numbers.Real) and not isinstance(item, bool):
            nodes.append(Node(NodeType.VALUE, len(const_values), parent))
            const_values.append(float(item))
        elif isinstance(item, tuple) and item and isinstance(item[0], str):
            op, args = item[0], item[1:]
            nodes.append(Node(*_classify_operator(op, len(args)), parent))
            for arg in reversed(args):
                stack.append((arg, position))
        else:
            raise ValueError(f"Cannot place {item!r} on a tape.")
    return Tape(tuple(nodes), np.asarray(const_values, dtype=np.float64))


def _classify_operator(op: str, num_args: int) -> tuple[NodeType, int]:
    if op in COMPARISON_OPERATOR_TO_ID:
        return NodeType.COMPARISON, COMPARISON_OPERATOR_TO_ID[op]
    if op in LOGIC_OPERATOR_TO_ID:
        return NodeType.LOGIC, LOGIC_OPERATOR_TO_ID[op]
    if num_args == 1 and op in UNIVARIATE_OPERATOR_TO_ID:
        return NodeType.CALLUNIVAR, UNIVARIATE_OPERATOR_TO_ID[op]
    if op in OPERATOR_TO_ID:
        return NodeType.CALL, OPERATOR_TO_ID[op]
    raise ValueError(f"Unknown operator '{op}' with {num_args} arguments.")
