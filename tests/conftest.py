"""Shared fixtures: an in-process fake MPI group backed by threads.

Each rank runs in its own thread with a ThreadComm that implements the
handful of mpi4py communicator methods the coordinator uses. Every call is
a barrier, like the real collectives, and ranks that call different
collectives fail loudly instead of deadlocking.
"""

import functools
import threading

import numpy as np
import pytest

import Partition  # noqa: F401  (configures mpi4py before MPI is imported)
from Partition import ClusterContext
from mpi4py import MPI

TIMEOUT = 10.0

_NUMPY_OPS = [
    (MPI.SUM, np.add),
    (MPI.PROD, np.multiply),
    (MPI.MAX, np.maximum),
    (MPI.MIN, np.minimum),
    (MPI.LAND, np.logical_and),
    (MPI.LOR, np.logical_or),
    (MPI.LXOR, np.logical_xor),
    (MPI.BAND, np.bitwise_and),
    (MPI.BOR, np.bitwise_or),
    (MPI.BXOR, np.bitwise_xor),
]


def _ufunc(op):
    for mpi_op, fn in _NUMPY_OPS:
        if op == mpi_op:
            return fn
    raise NotImplementedError(f"op {op} not supported by ThreadComm")


class _Group:
    def __init__(self, size):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=TIMEOUT)
        self.slots = [None] * size


class ThreadComm:
    """Fake communicator for one rank of a thread-backed group."""

    def __init__(self, group, rank):
        self.group = group
        self.rank = rank
        self.calls = []

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.group.size

    def _exchange(self, name, item):
        """Deposit item, wait for every rank, return all ranks' items."""
        self.calls.append(name)
        self.group.slots[self.rank] = (name, item)
        self.group.barrier.wait()
        entries = list(self.group.slots)
        self.group.barrier.wait()
        names = [n for n, _ in entries]
        if len(set(names)) != 1:
            raise AssertionError(f"ranks out of step: {names}")
        return [it for _, it in entries]

    def Barrier(self):
        self._exchange("Barrier", None)

    def bcast(self, obj, root=0):
        return self._exchange("bcast", obj)[root]

    def gather(self, obj, root=0):
        items = self._exchange("gather", obj)
        return items if self.rank == root else None

    def Bcast(self, buf, root=0):
        arr = buf[0] if isinstance(buf, list) else buf
        items = self._exchange("Bcast", np.array(arr, copy=True))
        arr[...] = items[root]

    def Scatterv(self, sendbuf, recvbuf, root=0):
        items = self._exchange("Scatterv", sendbuf)
        data, counts, displs, _ = items[root]
        out, count, _ = recvbuf
        assert count == counts[self.rank]
        start = displs[self.rank]
        out[:count] = np.asarray(data).reshape(-1)[start:start + count]

    def Gatherv(self, sendbuf, recvbuf, root=0):
        local, count, _ = sendbuf
        items = self._exchange("Gatherv", np.array(local, copy=True).reshape(-1)[:count])
        if self.rank == root:
            self._assemble(items, recvbuf)

    def Allgatherv(self, sendbuf, recvbuf):
        local, count, _ = sendbuf
        items = self._exchange("Allgatherv", np.array(local, copy=True).reshape(-1)[:count])
        self._assemble(items, recvbuf)

    @staticmethod
    def _assemble(items, recvbuf):
        out, counts, displs, _ = recvbuf
        for r, piece in enumerate(items):
            assert piece.size == counts[r]
            out[displs[r]:displs[r] + counts[r]] = piece

    def Reduce(self, sendbuf, recvbuf, op=MPI.SUM, root=0):
        part, count, _ = sendbuf
        items = self._exchange("Reduce", np.array(part, copy=True))
        if self.rank == root:
            out, n, _ = recvbuf
            out[...] = functools.reduce(_ufunc(op), items)

    def Allreduce(self, sendbuf, recvbuf, op=MPI.SUM):
        part, count, _ = sendbuf
        items = self._exchange("Allreduce", np.array(part, copy=True))
        out, n, _ = recvbuf
        out[...] = functools.reduce(_ufunc(op), items)


def run_spmd(size, fn, *args):
    """Run fn(ctx, *args) on `size` thread-backed ranks; return per-rank results."""
    group = _Group(size)
    results = [None] * size
    errors = [None] * size

    def target(rank):
        ctx = ClusterContext(comm=ThreadComm(group, rank))
        try:
            results[rank] = fn(ctx, *args)
        except BaseException as e:
            errors[rank] = e
            group.barrier.abort()

    threads = [threading.Thread(target=target, args=(r,), daemon=True) for r in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(TIMEOUT * 3)

    real = [e for e in errors if e is not None and not isinstance(e, threading.BrokenBarrierError)]
    if real:
        raise real[0]
    if any(e is not None for e in errors):
        raise next(e for e in errors if e is not None)
    return results


@pytest.fixture
def spmd():
    """Runner for SPMD functions on a fake in-process group."""
    return run_spmd


@pytest.fixture(scope="session", autouse=True)
def mpi_runtime():
    """Singleton MPI runtime for the test process (datatype handles need it)."""
    ctx = ClusterContext()
    yield ctx
    ctx.finalize()
