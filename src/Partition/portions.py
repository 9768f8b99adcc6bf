"""Split a total element count into almost-equal contiguous portions."""

from __future__ import annotations

import numbers

from .datastructures import DistributionMode, PartitionPlan


def _check_count(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return int(value)


def validate_portions(total_elements, n_nodes, mode) -> tuple[int, int, DistributionMode]:
    """Check arguments for compute_portions and normalize their types."""
    total_elements = _check_count("total_elements", total_elements)
    n_nodes = _check_count("n_nodes", n_nodes)
    mode = DistributionMode.parse(mode)

    if total_elements < 0:
        raise ValueError(f"total_elements must be non-negative, got {total_elements}")
    if n_nodes < 1:
        raise ValueError(f"n_nodes must be positive, got {n_nodes}")
    if mode is DistributionMode.CONTROL_NODE_MANAGES and n_nodes < 2:
        raise ValueError(
            "CONTROL_NODE_MANAGES needs at least 2 ranks: rank 0 only coordinates"
        )
    return total_elements, n_nodes, mode


def _split_trailing(n_elements: int, n_parts: int) -> list[int]:
    """Split n_elements among n_parts; the last `remainder` parts get one extra."""
    base, rem = divmod(n_elements, n_parts)
    return [base + 1 if n_parts - i <= rem else base for i in range(n_parts)]


def compute_portions(
    total_elements: int,
    n_nodes: int,
    mode: DistributionMode = DistributionMode.ALL_NODES_EQUAL,
) -> tuple[tuple[int, ...], tuple[int, ...]]:
    """Compute per-rank counts and displacements for Scatterv/Gatherv.

    Parameters
    ----------
    total_elements : int
        Length of the whole array.
    n_nodes : int
        Number of ranks in the group.
    mode : DistributionMode
        ALL_NODES_EQUAL shares elements among all ranks.
        CONTROL_NODE_MANAGES leaves rank 0 empty and shares among 1..n-1.

    Returns
    -------
    tuple
        (counts, displacements), each of length n_nodes.

    Example
    -------
    >>> compute_portions(11, 3, DistributionMode.ALL_NODES_EQUAL)
    ((3, 4, 4), (0, 3, 7))
    >>> compute_portions(7, 3, DistributionMode.CONTROL_NODE_MANAGES)
    ((0, 3, 4), (0, 0, 3))
    """
    total_elements, n_nodes, mode = validate_portions(total_elements, n_nodes, mode)

    if mode is DistributionMode.CONTROL_NODE_MANAGES:
        counts = [0] + _split_trailing(total_elements, n_nodes - 1)
    else:
        counts = _split_trailing(total_elements, n_nodes)

    displacements = [0] * n_nodes
    for i in range(1, n_nodes):
        displacements[i] = displacements[i - 1] + counts[i - 1]

    return tuple(counts), tuple(displacements)


def make_plan(
    total_elements: int,
    n_nodes: int,
    mode: DistributionMode = DistributionMode.ALL_NODES_EQUAL,
) -> PartitionPlan:
    """Compute a PartitionPlan for total_elements over n_nodes ranks."""
    mode = DistributionMode.parse(mode)
    counts, displacements = compute_portions(total_elements, n_nodes, mode)
    return PartitionPlan(int(total_elements), mode, counts, displacements)
