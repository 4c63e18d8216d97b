"""nlpdiff - Sparse derivatives of nonlinear programs from expression tapes.

Expressions are stored as flat node tapes and differentiated by
forward/reverse sweeps over real and dual numbers.
Sparse Hessians are recovered from one Hessian-vector product per color
of a coloring of the Hessian's sparsity pattern.
`NLPEvaluator` exposes all of this through the callback protocol
of a nonlinear solver.
"""

from nlpdiff.coloring import ColoringOracle, RecoveryInfo, StarColoring, color_symmetric
from nlpdiff.errors import (
    CapabilityNotRequestedError,
    StaleExternalDataError,
    TapeInvariantError,
    UnsupportedFeatureError,
)
from nlpdiff.evaluator import (
    SUPPORTED_FEATURES,
    EvaluationStats,
    EvaluatorConfig,
    NLPEvaluator,
)
from nlpdiff.expression import evaluate_sympy, tape_to_sympy
from nlpdiff.model import (
    LinearConstraint,
    Model,
    NonlinearConstraint,
    ParameterStore,
    QuadExpr,
    QuadraticConstraint,
)
from nlpdiff.pattern import ColoredPattern, SparsityPattern
from nlpdiff.rings import DUAL, REAL, Dual
from nlpdiff.solve import NonlinearSolver, SolveResult, load, solve
from nlpdiff.sparsity import (
    Linearity,
    classify_linearity,
    compute_gradient_sparsity,
    compute_hessian_sparsity,
    list_subexpressions,
    order_subexpressions,
)
from nlpdiff.subexpressions import evaluate_subexpression
from nlpdiff.sweep import forward_pass, reverse_pass
from nlpdiff.tape import (
    Node,
    NodeType,
    ParameterRef,
    SubexpressionRef,
    Tape,
    VariableRef,
    tape_from_tree,
)
from nlpdiff.verify import (
    VerificationError,
    check_gradient_correctness,
    check_hessian_correctness,
    check_jacobian_correctness,
)

__all__ = [
    "DUAL",
    "REAL",
    "SUPPORTED_FEATURES",
    "CapabilityNotRequestedError",
    "ColoredPattern",
    "ColoringOracle",
    "Dual",
    "EvaluationStats",
    "EvaluatorConfig",
    "Linearity",
    "LinearConstraint",
    "Model",
    "NLPEvaluator",
    "Node",
    "NodeType",
    "NonlinearConstraint",
    "NonlinearSolver",
    "ParameterRef",
    "ParameterStore",
    "QuadExpr",
    "QuadraticConstraint",
    "RecoveryInfo",
    "SolveResult",
    "SparsityPattern",
    "StaleExternalDataError",
    "StarColoring",
    "SubexpressionRef",
    "Tape",
    "TapeInvariantError",
    "UnsupportedFeatureError",
    "VariableRef",
    "VerificationError",
    "check_gradient_correctness",
    "check_hessian_correctness",
    "check_jacobian_correctness",
    "classify_linearity",
    "color_symmetric",
    "compute_gradient_sparsity",
    "compute_hessian_sparsity",
    "evaluate_subexpression",
    "evaluate_sympy",
    "forward_pass",
    "list_subexpressions",
    "load",
    "order_subexpressions",
    "reverse_pass",
    "solve",
    "tape_from_tree",
    "tape_to_sympy",
]
