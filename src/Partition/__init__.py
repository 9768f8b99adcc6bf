"""MPI array Partition package.

Splits a logical array of N elements into almost-equal contiguous slices
over the ranks of an MPI group and moves data consistently with that
split (scatter, gather, all-gather, broadcast, reduce, all-reduce).

Modes
-----
- CONTROL_NODE_MANAGES: rank 0 coordinates, ranks 1..n-1 do the work
- ALL_NODES_EQUAL: every rank, including rank 0, gets a share

Components
----------
- compute_portions / make_plan: Pure count/offset computation
- ClusterContext: Rank, size and MPI runtime lifetime
- DistributionCoordinator: Collectives over one shared plan
"""

from .mpi import ClusterContext, resolve_datatype, resolve_op
from .datastructures import (
    DistributionMode,
    PartitionPlan,
    RunParams,
    RunMetrics,
)
from .portions import compute_portions, make_plan
from .coordinator import DistributionCoordinator, NotConfiguredError
from .runner import run_worker

__all__ = [
    # Data structures
    "DistributionMode",
    "PartitionPlan",
    "RunParams",
    "RunMetrics",
    # Partition computation
    "compute_portions",
    "make_plan",
    # MPI
    "ClusterContext",
    "resolve_datatype",
    "resolve_op",
    # Coordination
    "DistributionCoordinator",
    "NotConfiguredError",
    # Utilities
    "run_worker",
]
