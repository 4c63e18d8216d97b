"""Gradient sparsity, linearity and Hessian sparsity of node tapes.

Analysis is global: it depends on the tape structure only,
never on the point of evaluation,
so the results are valid for all inputs.
Subexpressions are analyzed in dependency order,
which means their results are always available
when a tape that references them is analyzed.
"""

from collections.abc import Sequence
from enum import IntEnum

from nlpdiff.operators import AFFINE_UNIVARIATE, OPERATORS, UNIVARIATE_OPERATORS
from nlpdiff.tape import NodeType, Tape


class Linearity(IntEnum):
    """Classification of a node or tape, ordered by increasing complexity."""

    CONSTANT = 0
    LINEAR = 1
    NONLINEAR = 2


Edge = tuple[int, int]
"""Hessian coordinate ``(row, col)`` with ``row >= col``."""


def compute_gradient_sparsity(tape: Tape) -> set[int]:
    """Variables that appear as leaves of ``tape``.

    Variables hidden behind subexpression leaves are not included;
    callers merge in the variable sets of the referenced subexpressions.
    """
    return {node.index for node in tape.nodes if node.type == NodeType.VARIABLE}


def list_subexpressions(tape: Tape) -> list[int]:
    """Sorted indices of the subexpressions ``tape`` references directly."""
    return sorted(
        {node.index for node in tape.nodes if node.type == NodeType.SUBEXPRESSION}
    )


def order_subexpressions(
    main_tapes: Sequence[Tape],
    subexpression_tapes: Sequence[Tape],
) -> tuple[list[int], list[list[int]]]:
    """Topologically order the subexpressions reachable from ``main_tapes``.

    Args:
        main_tapes: Objective and constraint tapes.
        subexpression_tapes: All subexpression tapes, addressed by index.

    Returns:
        Tuple of (order, individual_orders) where:
        - order: Every reachable subexpression, each after all subexpressions
          it references. Shared by all tapes.
        - individual_orders: Per main tape, the subexpressions it depends on
          (directly or transitively), in the same relative order as ``order``.

    Raises:
        ValueError: If a subexpression reference is out of range
            or the references contain a cycle.
    """
    num_subexpressions = len(subexpression_tapes)
    references: dict[int, list[int]] = {}

    def refs(k: int) -> list[int]:
        if k not in references:
            references[k] = list_subexpressions(subexpression_tapes[k])
            for r in references[k]:
                _check_reference(r, num_subexpressions)
        return references[k]

    main_refs = [list_subexpressions(tape) for tape in main_tapes]
    for refs_of_tape in main_refs:
        for r in refs_of_tape:
            _check_reference(r, num_subexpressions)

    # Iterative depth-first post-order; state 1 = on the stack, 2 = emitted.
    state = [0] * num_subexpressions
    order: list[int] = []
    for refs_of_tape in main_refs:
        for start in refs_of_tape:
            if state[start] == 2:
                continue
            stack = [(start, 0)]
            state[start] = 1
            while stack:
                k, next_child = stack[-1]
                children = refs(k)
                if next_child < len(children):
                    stack[-1] = (k, next_child + 1)
                    child = children[next_child]
                    if state[child] == 1:
                        raise ValueError(
                            f"Subexpression {child} depends on itself through a cycle."
                        )
                    if state[child] == 0:
                        state[child] = 1
                        stack.append((child, 0))
                else:
                    stack.pop()
                    state[k] = 2
                    order.append(k)

    position = {k: i for i, k in enumerate(order)}
    individual_orders = []
    for refs_of_tape in main_refs:
        reachable = set(refs_of_tape)
        frontier = list(refs_of_tape)
        while frontier:
            k = frontier.pop()
            for child in refs(k):
                if child not in reachable:
                    reachable.add(child)
                    frontier.append(child)
        individual_orders.append(sorted(reachable, key=position.__getitem__))

    return order, individual_orders


def _check_reference(k: int, num_subexpressions: int) -> None:
    if not 0 <= k < num_subexpressions:
        raise ValueError(
            f"Reference to subexpression {k}, but only {num_subexpressions} exist."
        )


def classify_linearity(
    tape: Tape,
    subexpression_linearity: Sequence[Linearity],
) -> list[Linearity]:
    """Classify every node of ``tape`` bottom-up.

    - Constants and parameters are CONSTANT, variables LINEAR,
      subexpressions take their precomputed class.
    - Comparisons and logic are piecewise constant, hence CONSTANT.
    - A call whose arguments are all CONSTANT is CONSTANT.
    - Sums, differences and affine univariates take the worst argument class.
    - A product is LINEAR if exactly one factor is non-constant and that
      factor is LINEAR; otherwise NONLINEAR.
    - A quotient is its numerator's class if the denominator is CONSTANT.
    - Everything else with a non-constant argument is NONLINEAR.

    Returns:
        One class per node; element 0 is the class of the whole tape.
    """
    nodes = tape.nodes
    linearity = [Linearity.CONSTANT] * len(nodes)

    for k in range(len(nodes) - 1, -1, -1):
        node = nodes[k]
        match node.type:
            case NodeType.VARIABLE:
                linearity[k] = Linearity.LINEAR
            case NodeType.VALUE | NodeType.PARAMETER:
                linearity[k] = Linearity.CONSTANT
            case NodeType.SUBEXPRESSION:
                linearity[k] = subexpression_linearity[node.index]
            case NodeType.COMPARISON | NodeType.LOGIC:
                linearity[k] = Linearity.CONSTANT
            case NodeType.CALLUNIVAR:
                child = linearity[tape.children(k)[0]]
                if child == Linearity.CONSTANT:
                    linearity[k] = Linearity.CONSTANT
                elif UNIVARIATE_OPERATORS[node.index] in AFFINE_UNIVARIATE:
                    linearity[k] = child
                else:
                    linearity[k] = Linearity.NONLINEAR
            case NodeType.CALL:
                linearity[k] = _call_linearity(
                    OPERATORS[node.index],
                    [linearity[c] for c in tape.children(k)],
                )
    return linearity


def _call_linearity(op: str, args: list[Linearity]) -> Linearity:
    if all(a == Linearity.CONSTANT for a in args):
        return Linearity.CONSTANT
    if op in ("+", "-"):
        return max(args)
    if op == "*":
        non_constant = [a for a in args if a != Linearity.CONSTANT]
        if len(non_constant) == 1 and non_constant[0] == Linearity.LINEAR:
            return Linearity.LINEAR
        return Linearity.NONLINEAR
    if op == "/":
        numerator, denominator = args
        if denominator == Linearity.CONSTANT:
            return numerator
        return Linearity.NONLINEAR
    return Linearity.NONLINEAR


# How a node influences the root: not at all, affinely, or nonlinearly.
_ZERO, _AFFINE, _CURVED = 0, 1, 2


def compute_hessian_sparsity(
    tape: Tape,
    linearity: Sequence[Linearity],
    subexpression_edgelist: Sequence[set[Edge]],
    subexpression_variables: Sequence[set[int]],
) -> set[Edge]:
    """Conservative Hessian sparsity of ``tape``.

    A top-down pass marks how each node enters the root:
    with zero derivative, affinely, or nonlinearly.
    The arguments of every affinely entering node whose arguments enter
    nonlinearly contribute one clique over all variables they reach
    (including those of their subexpressions).
    Subexpressions entering affinely contribute their own edge lists.

    Args:
        tape: The tape to analyze.
        linearity: Per-node classes from `classify_linearity`.
        subexpression_edgelist: Edge lists of already analyzed subexpressions.
        subexpression_variables: Variable sets of already analyzed subexpressions.

    Returns:
        Set of ``(row, col)`` with ``row >= col``.
    """
    nodes = tape.nodes
    n = len(nodes)
    influence = [_ZERO] * n
    influence[0] = _ZERO if linearity[0] == Linearity.CONSTANT else _AFFINE

    for k in range(1, n):
        node = nodes[k]
        parent = node.parent
        if linearity[k] == Linearity.CONSTANT or influence[parent] == _ZERO:
            continue
        if influence[parent] == _CURVED:
            influence[k] = _CURVED
        else:
            influence[k] = _child_influence(tape, parent, k, linearity)

    # Subtrees are contiguous in prefix order.
    subtree_end = list(range(1, n + 1))
    for k in range(n - 1, 0, -1):
        parent = nodes[k].parent
        subtree_end[parent] = max(subtree_end[parent], subtree_end[k])

    edges: set[Edge] = set()
    for node, tag in zip(nodes, influence, strict=True):
        if tag == _AFFINE and node.type == NodeType.SUBEXPRESSION:
            edges |= subexpression_edgelist[node.index]

    # Curved children of one affinely entering node interact with each other,
    # so they share a single clique.
    groups: dict[int, set[int]] = {}
    for k in range(1, n):
        parent = nodes[k].parent
        if influence[k] != _CURVED or influence[parent] == _CURVED:
            continue
        group = groups.setdefault(parent, set())
        for j in range(k, subtree_end[k]):
            if influence[j] != _CURVED:
                continue
            member = nodes[j]
            if member.type == NodeType.VARIABLE:
                group.add(member.index)
            elif member.type == NodeType.SUBEXPRESSION:
                group |= subexpression_variables[member.index]

    for group in groups.values():
        members = sorted(group)
        for a, i in enumerate(members):
            for j in members[: a + 1]:
                edges.add((i, j))
    return edges


def _child_influence(
    tape: Tape, parent: int, k: int, linearity: Sequence[Linearity]
) -> int:
    """Influence of child ``k`` of an affinely entering ``parent``."""
    parent_node = tape.nodes[parent]
    if parent_node.type == NodeType.CALLUNIVAR:
        op = UNIVARIATE_OPERATORS[parent_node.index]
        return _AFFINE if op in AFFINE_UNIVARIATE else _CURVED
    if parent_node.type != NodeType.CALL:
        return _ZERO
    op = OPERATORS[parent_node.index]
    if op in ("+", "-"):
        return _AFFINE
    siblings = tape.children(parent)
    if op == "*":
        for s in siblings:
            if s != k and linearity[s] != Linearity.CONSTANT:
                return _CURVED
        return _AFFINE
    if op == "/":
        numerator, denominator = siblings
        if k == numerator and linearity[denominator] == Linearity.CONSTANT:
            return _AFFINE
        return _CURVED
    return _CURVED
