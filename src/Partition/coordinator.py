"""Collective data movement shaped by a shared partition plan."""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .datastructures import DistributionMode, PartitionPlan
from .mpi.context import ClusterContext
from .mpi.datatypes import resolve_datatype, resolve_op
from .portions import make_plan, validate_portions

log = logging.getLogger(__name__)

ROOT = 0


class NotConfiguredError(RuntimeError):
    """A data-moving call was made before the partition plan was set."""


class DistributionCoordinator:
    """Scatter/gather/reduce wrapper over one partition of a whole array.

    Every configuration call (set_mode, set_total_elements, configure) and
    every collective is a group-wide synchronization point: all ranks must
    make the same calls in the same order, or the group deadlocks.

    Parameters
    ----------
    context : ClusterContext
        Group identity shared by every coordinator in the process.
    mode : DistributionMode or str, optional
    total_elements : int, optional
        If either is given the coordinator is configured immediately.

    Example
    -------
    >>> coord = DistributionCoordinator(ctx)
    >>> coord.configure(DistributionMode.ALL_NODES_EQUAL, 11)  # counts (3, 4, 4) on 3 ranks
    >>> local = coord.scatter(x)                               # x only needed on rank 0
    >>> y = coord.gather(local + 1)                            # y on rank 0, None elsewhere
    """

    def __init__(self, context: ClusterContext, mode=None, total_elements: Optional[int] = None):
        self.context = context
        self.comm = context.comm
        self.rank = context.rank
        self.size = context.size

        self._mode = DistributionMode.ALL_NODES_EQUAL
        self._total_elements = 0
        self._plan: Optional[PartitionPlan] = None

        if mode is not None or total_elements is not None:
            self.configure(mode, total_elements)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_mode(self, mode):
        """Set the distribution mode and recompute the plan (collective)."""
        self.configure(mode=mode)

    def set_total_elements(self, total_elements: int):
        """Set the whole-array length and recompute the plan (collective)."""
        self.configure(total_elements=total_elements)

    def configure(self, mode=None, total_elements: Optional[int] = None):
        """Update mode and/or total and install the new plan on every rank.

        Rank 0 computes the plan and broadcasts counts and displacements.
        Arguments are validated on every rank first so that a bad call
        fails everywhere instead of leaving some ranks inside a Bcast.
        """
        new_mode = self._mode if mode is None else mode
        new_total = self._total_elements if total_elements is None else total_elements
        new_total, _, new_mode = validate_portions(new_total, self.size, new_mode)

        counts = np.zeros(self.size, dtype=np.int64)
        displs = np.zeros(self.size, dtype=np.int64)
        if self.rank == ROOT:
            plan = make_plan(new_total, self.size, new_mode)
            counts[:] = plan.counts
            displs[:] = plan.displacements

        datatype = resolve_datatype(counts.dtype)
        self.comm.Bcast([counts, datatype], root=ROOT)
        self.comm.Bcast([displs, datatype], root=ROOT)

        self._mode = new_mode
        self._total_elements = new_total
        self._plan = PartitionPlan(
            new_total,
            new_mode,
            tuple(int(c) for c in counts),
            tuple(int(d) for d in displs),
        )
        log.debug(
            f"rank {self.rank}: plan {new_mode.value} N={new_total} "
            f"counts={self._plan.counts} displs={self._plan.displacements}"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_configured(self) -> bool:
        return self._plan is not None

    @property
    def mode(self) -> DistributionMode:
        return self._mode

    @property
    def total_elements(self) -> int:
        return self._total_elements

    @property
    def plan(self) -> PartitionPlan:
        self._require_plan()
        return self._plan

    @property
    def counts(self) -> tuple[int, ...]:
        return self.plan.counts

    @property
    def displacements(self) -> tuple[int, ...]:
        return self.plan.displacements

    @property
    def local_count(self) -> int:
        """Number of elements owned by this rank."""
        return self.plan.local_count(self.rank)

    def _require_plan(self):
        if self._plan is None:
            raise NotConfiguredError(
                "Coordinator is not configured: call set_mode/set_total_elements "
                "(on every rank) before moving data"
            )

    def summary(self) -> dict:
        """Flat description of this rank's view of the plan (for logs/MLflow)."""
        info = {
            "rank": self.rank,
            "size": self.size,
            "mode": self._mode.value,
            "total_elements": self._total_elements,
            "configured": self.is_configured,
        }
        if self._plan is not None:
            info.update(
                local_count=self.local_count,
                counts=list(self._plan.counts),
                displacements=list(self._plan.displacements),
                imbalance=self._plan.imbalance(),
            )
        return info

    # ------------------------------------------------------------------
    # Collectives
    # ------------------------------------------------------------------

    def broadcast(self, value=None):
        """Replicate a value from rank 0; returns it on every rank."""
        return self.comm.bcast(value, root=ROOT)

    def scatter(self, whole=None, local_out=None, dtype=None) -> np.ndarray:
        """Distribute contiguous slices of `whole` (rank 0) per the plan.

        Parameters
        ----------
        whole : array, optional
            Whole array of length total_elements. Only read on rank 0.
        local_out : array, optional
            Receive buffer of length local_count. Allocated if None.
        dtype : numpy dtype, optional
            Element type when neither `local_out` nor `whole` is given
            (typical on non-root ranks).

        Returns
        -------
        np.ndarray
            This rank's slice.
        """
        plan = self.plan
        count = plan.local_count(self.rank)

        if self.rank == ROOT:
            if whole is None:
                raise ValueError("scatter: rank 0 must supply the whole array")
            whole = np.ascontiguousarray(whole)
            if whole.size != plan.total_elements:
                raise ValueError(
                    f"scatter: whole array has {whole.size} elements, plan expects "
                    f"{plan.total_elements}"
                )

        if local_out is None:
            if dtype is None:
                if whole is None:
                    raise ValueError("scatter: pass local_out or dtype on non-root ranks")
                dtype = np.asarray(whole).dtype
            local_out = np.empty(count, dtype=dtype)
        elif local_out.size != count:
            raise ValueError(
                f"scatter: local_out has {local_out.size} elements, rank {self.rank} "
                f"owns {count}"
            )

        if self.rank == ROOT and whole.dtype != local_out.dtype:
            raise ValueError(
                f"scatter: whole dtype {whole.dtype} != local dtype {local_out.dtype}"
            )

        datatype = resolve_datatype(local_out.dtype)
        sendbuf = None
        if self.rank == ROOT:
            sendbuf = [whole, plan.counts, plan.displacements, datatype]
        self.comm.Scatterv(sendbuf, [local_out, count, datatype], root=ROOT)
        return local_out

    def gather(self, local_in, whole_out=None):
        """Assemble every rank's slice into the whole array on rank 0.

        Returns the assembled array on rank 0. Other ranks get back
        `whole_out` untouched (None by default).
        """
        plan = self.plan
        local_in = self._check_local(local_in, "gather")
        datatype = resolve_datatype(local_in.dtype)

        recvbuf = None
        if self.rank == ROOT:
            whole_out = self._whole_buffer(whole_out, local_in.dtype, "gather")
            recvbuf = [whole_out, plan.counts, plan.displacements, datatype]

        self.comm.Gatherv([local_in, local_in.size, datatype], recvbuf, root=ROOT)
        return whole_out

    def all_gather(self, local_in, whole_out=None) -> np.ndarray:
        """Assemble every rank's slice into the whole array on all ranks."""
        plan = self.plan
        local_in = self._check_local(local_in, "all_gather")
        datatype = resolve_datatype(local_in.dtype)
        whole_out = self._whole_buffer(whole_out, local_in.dtype, "all_gather")

        self.comm.Allgatherv(
            [local_in, local_in.size, datatype],
            [whole_out, plan.counts, plan.displacements, datatype],
        )
        return whole_out

    def reduce(self, local_part, result=None, op="sum"):
        """Element-wise combine every rank's array onto rank 0.

        Not shaped by the plan: every rank passes an array of the same length.
        Returns the result on rank 0, `result` untouched elsewhere.
        """
        self._require_plan()
        local_part = np.ascontiguousarray(local_part)
        datatype = resolve_datatype(local_part.dtype)
        mpi_op = resolve_op(op)

        recvbuf = None
        if self.rank == ROOT:
            result = self._result_buffer(result, local_part, "reduce")
            recvbuf = [result, result.size, datatype]

        self.comm.Reduce(
            [local_part, local_part.size, datatype], recvbuf, op=mpi_op, root=ROOT
        )
        return result

    def all_reduce(self, local_part, result=None, op="sum") -> np.ndarray:
        """Element-wise combine every rank's array; result on all ranks."""
        self._require_plan()
        local_part = np.ascontiguousarray(local_part)
        datatype = resolve_datatype(local_part.dtype)
        mpi_op = resolve_op(op)
        result = self._result_buffer(result, local_part, "all_reduce")

        self.comm.Allreduce(
            [local_part, local_part.size, datatype],
            [result, result.size, datatype],
            op=mpi_op,
        )
        return result

    # ------------------------------------------------------------------
    # Buffer checks
    # ------------------------------------------------------------------

    def _check_local(self, local_in, what: str) -> np.ndarray:
        local_in = np.ascontiguousarray(local_in)
        if local_in.size != self.local_count:
            raise ValueError(
                f"{what}: local array has {local_in.size} elements, rank {self.rank} "
                f"owns {self.local_count}"
            )
        return local_in

    def _whole_buffer(self, whole_out, dtype, what: str) -> np.ndarray:
        if whole_out is None:
            return np.empty(self._plan.total_elements, dtype=dtype)
        if whole_out.size != self._plan.total_elements:
            raise ValueError(
                f"{what}: output has {whole_out.size} elements, plan expects "
                f"{self._plan.total_elements}"
            )
        if whole_out.dtype != dtype:
            raise ValueError(f"{what}: output dtype {whole_out.dtype} != input dtype {dtype}")
        return whole_out

    @staticmethod
    def _result_buffer(result, local_part: np.ndarray, what: str) -> np.ndarray:
        if result is None:
            return np.empty_like(local_part)
        if result.size != local_part.size or result.dtype != local_part.dtype:
            raise ValueError(
                f"{what}: result must match the local array "
                f"({local_part.size} x {local_part.dtype}), got "
                f"({result.size} x {result.dtype})"
            )
        return result

    def __repr__(self) -> str:
        state = "configured" if self.is_configured else "unconfigured"
        return (
            f"DistributionCoordinator(rank={self.rank}, size={self.size}, "
            f"mode={self._mode.value}, N={self._total_elements}, {state})"
        )
