"""Pretty-printing for SparsityPattern and ColoredPattern."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nlpdiff.pattern import ColoredPattern, SparsityPattern

# Larger patterns only get the header line.
_MAX_ROWS = 16
_MAX_COLS = 40


def sparsity_str(pattern: SparsityPattern) -> str:
    """Full string representation with header and visualization."""
    header = (
        f"SparsityPattern({pattern.m}×{pattern.n}, "
        f"nnz={pattern.nnz}, sparsity={1 - pattern.density:.1%})"
    )
    return f"{header}\n{_render_dots(pattern)}"


def sparsity_repr(pattern: SparsityPattern) -> str:
    """Compact single-line representation."""
    return f"SparsityPattern(shape={pattern.shape}, nnz={pattern.nnz})"


def colored_repr(colored: ColoredPattern) -> str:
    """Compact single-line representation."""
    sp = colored.sparsity
    c = colored.num_colors
    return (
        f"ColoredPattern({sp.m}×{sp.n}, nnz={sp.nnz}, "
        f"{c} {'color' if c == 1 else 'colors'})"
    )


def colored_str(colored: ColoredPattern) -> str:
    """Pattern grid with each non-zero replaced by the color of its column."""
    n = colored.sparsity.n
    c = colored.num_colors
    products = "HVP" if c == 1 else "HVPs"
    header = f"{colored_repr(colored)}\n  {c} {products} (instead of {n})"
    if n > _MAX_COLS or colored.sparsity.m > _MAX_ROWS:
        return header
    dense = colored.sparsity.todense()
    lines = []
    for i in range(colored.sparsity.m):
        cells = [
            str(int(colored.colors[j])) if dense[i, j] else "⋅" for j in range(n)
        ]
        lines.append(" ".join(cells))
    return header + "\n" + "\n".join(lines)


def _render_dots(pattern: SparsityPattern) -> str:
    """Render a small matrix using '⋅' for zeros and '●' for non-zeros."""
    if pattern.m == 0 or pattern.n == 0:
        return "(empty)"
    if pattern.m > _MAX_ROWS or pattern.n > _MAX_COLS:
        return "(too large to display)"

    dense = pattern.todense()
    lines = []
    for i in range(pattern.m):
        row_chars = ["●" if dense[i, j] else "⋅" for j in range(pattern.n)]
        lines.append(" ".join(row_chars))
    return "\n".join(lines)
