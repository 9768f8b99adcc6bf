"""Group identity and MPI runtime lifetime."""

from __future__ import annotations

import logging
import weakref

import mpi4py

# The runtime is brought up and torn down by ClusterContext, not at import.
mpi4py.rc.initialize = False
mpi4py.rc.finalize = False

from mpi4py import MPI  # noqa: E402

log = logging.getLogger(__name__)


def _finalize_runtime():
    if MPI.Is_initialized() and not MPI.Is_finalized():
        MPI.Finalize()
        log.debug("MPI runtime finalized")


class ClusterContext:
    """Rank and size of this process within the group.

    Constructing a context initializes MPI if nobody has yet; the context
    that initialized the runtime is the one that finalizes it, on finalize(),
    on leaving a with-block, when the handle is garbage collected, or at
    interpreter exit, whichever comes first. Pass an existing communicator
    to adopt it without touching the runtime.

    Parameters
    ----------
    comm : MPI.Comm, optional
        Communicator to use. Defaults to MPI.COMM_WORLD.

    Example
    -------
    >>> with ClusterContext() as ctx:
    ...     coord = DistributionCoordinator(ctx)
    """

    def __init__(self, comm=None):
        self._comm = comm
        self._rank = None
        self._size = None
        self._owns_runtime = False
        self._finalized = False
        self._finalizer = None
        self.initialize()

    def initialize(self):
        """Bring up the runtime (once) and record rank and size."""
        if self._rank is not None:
            return
        if self._comm is None:
            if MPI.Is_finalized():
                raise RuntimeError("MPI runtime has already been finalized")
            if not MPI.Is_initialized():
                MPI.Init()
                self._owns_runtime = True
                # also runs when the handle is collected or at interpreter exit
                self._finalizer = weakref.finalize(self, _finalize_runtime)
                log.debug("MPI runtime initialized")
            self._comm = MPI.COMM_WORLD

        self._rank = self._comm.Get_rank()
        self._size = self._comm.Get_size()
        if self._size < 1 or not 0 <= self._rank < self._size:
            raise RuntimeError(f"Invalid group identity: rank={self._rank}, size={self._size}")

    def finalize(self):
        """Tear down the runtime if this context brought it up. Runs at most once."""
        if self._finalized:
            return
        self._finalized = True
        if self._finalizer is not None:
            self._finalizer()

    @property
    def comm(self):
        return self._comm

    @property
    def rank(self) -> int:
        return self._rank

    @property
    def size(self) -> int:
        return self._size

    @property
    def is_root(self) -> bool:
        return self._rank == 0

    @property
    def owns_runtime(self) -> bool:
        return self._owns_runtime

    def barrier(self):
        self._comm.Barrier()

    def __enter__(self) -> "ClusterContext":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.finalize()
        return False

    def __repr__(self) -> str:
        return f"ClusterContext(rank={self._rank}, size={self._size})"
