"""Data structures for partition plans and run configuration.

Architecture: Plan vs Run

                 Plan (shared, identical on all ranks)
                 ─────────────────────────────────────
                 DistributionMode, PartitionPlan

                 Run (config in, results out)
                 ─────────────────────────────────────
                 RunParams   - what to distribute and how
                 RunMetrics  - what happened (rank 0)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


# ============================================================================
# Partition plan
# ============================================================================


class DistributionMode(Enum):
    """How work is shared among ranks.

    CONTROL_NODE_MANAGES: rank 0 only coordinates and owns no elements.
    ALL_NODES_EQUAL: every rank, including rank 0, owns a share.
    """

    CONTROL_NODE_MANAGES = "control_node_manages"
    ALL_NODES_EQUAL = "all_nodes_equal"

    @classmethod
    def parse(cls, value) -> "DistributionMode":
        """Accept a DistributionMode, its value, or its name (any case)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for mode in cls:
                if key in (mode.value, mode.name.lower()):
                    return mode
        raise ValueError(
            f"Unknown distribution mode: {value!r}. "
            f"Use one of {[m.value for m in cls]}."
        )


@dataclass(frozen=True)
class PartitionPlan:
    """Per-rank element counts and offsets into the whole array.

    Must be identical on every rank before it shapes a collective call.
    """

    total_elements: int
    mode: DistributionMode
    counts: Tuple[int, ...]
    displacements: Tuple[int, ...]

    def __post_init__(self):
        if len(self.counts) != len(self.displacements):
            raise ValueError("counts and displacements must have the same length")
        if sum(self.counts) != self.total_elements:
            raise ValueError(
                f"counts sum to {sum(self.counts)}, expected {self.total_elements}"
            )
        offset = 0
        for count, displ in zip(self.counts, self.displacements):
            if count < 0 or displ != offset:
                raise ValueError("displacements must be the prefix sum of counts")
            offset += count
        if self.mode is DistributionMode.CONTROL_NODE_MANAGES and self.counts[0] != 0:
            raise ValueError("control rank must own no elements")

    @property
    def n_nodes(self) -> int:
        return len(self.counts)

    def local_count(self, rank: int) -> int:
        """Number of elements owned by rank."""
        return self.counts[rank]

    def local_slice(self, rank: int) -> slice:
        """Slice of the whole array owned by rank."""
        start = self.displacements[rank]
        return slice(start, start + self.counts[rank])

    def imbalance(self) -> int:
        """Spread between the largest and smallest share of working ranks."""
        working = self.counts[1:] if self.mode is DistributionMode.CONTROL_NODE_MANAGES else self.counts
        if not working:
            return 0
        return max(working) - min(working)


# ============================================================================
# Run configuration and results
# ============================================================================


@dataclass
class RunParams:
    """Run configuration - validated by Hydra, logged to MLflow as params.

    Identical across all MPI ranks.
    """

    total_elements: int
    mode: str = DistributionMode.ALL_NODES_EQUAL.value
    n_ranks: int = 1
    dtype: str = "float64"
    reduce_op: str = "sum"
    broadcast_value: int = 42
    experiment_name: str = "default"

    # Auto-detected at runtime (not from config)
    environment: str = field(init=False)

    def __post_init__(self):
        self.mode = DistributionMode.parse(self.mode).value
        self.environment = (
            "hpc"
            if os.environ.get("LSB_JOBID") or os.environ.get("SLURM_JOB_ID")
            else "local"
        )

    def to_mlflow(self) -> dict:
        return dict(self.__dict__)


@dataclass
class RunMetrics:
    """Aggregated results - logged to MLflow as metrics (rank 0)."""

    roundtrip_ok: bool = False
    allgather_consistent: bool = False
    broadcast_ok: bool = False
    imbalance: Optional[int] = None
    max_local_count: Optional[int] = None
    min_local_count: Optional[int] = None

    # Timing (seconds, from MPI.Wtime on rank 0)
    configure_time: Optional[float] = None
    scatter_time: Optional[float] = None
    gather_time: Optional[float] = None
    allgather_time: Optional[float] = None
    reduce_time: Optional[float] = None
    wall_time: Optional[float] = None

    def to_mlflow(self) -> dict:
        """Convert to MLflow-compatible dict (no None, bools as int)."""
        return {
            k: (int(v) if isinstance(v, bool) else v)
            for k, v in self.__dict__.items()
            if v is not None
        }
