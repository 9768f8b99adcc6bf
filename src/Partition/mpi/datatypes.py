"""Map numpy dtypes and operator names onto MPI handles."""

from __future__ import annotations

import functools

import numpy as np
from mpi4py import MPI
from mpi4py.util import dtlib

# Operator name -> MPI.Op
_OPS = {
    "sum": MPI.SUM,
    "prod": MPI.PROD,
    "max": MPI.MAX,
    "min": MPI.MIN,
    "land": MPI.LAND,
    "lor": MPI.LOR,
    "lxor": MPI.LXOR,
    "band": MPI.BAND,
    "bor": MPI.BOR,
    "bxor": MPI.BXOR,
}


@functools.lru_cache(maxsize=None)
def _datatype_for(key: np.dtype) -> MPI.Datatype:
    try:
        datatype = dtlib.from_numpy_dtype(key)
    except (ValueError, KeyError, TypeError) as e:
        raise TypeError(f"No MPI datatype for numpy dtype {key}: {e}") from e
    if not datatype.is_predefined:
        datatype.Commit()
    return datatype


def resolve_datatype(dtype) -> MPI.Datatype:
    """MPI datatype matching a numpy dtype (or anything np.dtype accepts).

    Derived types are committed once and cached per dtype for the lifetime
    of the runtime. Needs an initialized runtime (see ClusterContext).
    """
    try:
        key = np.dtype(dtype)
    except TypeError as e:
        raise TypeError(f"Not a numpy dtype: {dtype!r}") from e
    if not MPI.Is_initialized() or MPI.Is_finalized():
        raise RuntimeError("MPI runtime is not active; create a ClusterContext first")
    return _datatype_for(key)


def resolve_op(op) -> MPI.Op:
    """MPI reduction operator from an MPI.Op or a name such as 'sum' or 'max'."""
    if isinstance(op, MPI.Op):
        return op
    if isinstance(op, str) and op.lower() in _OPS:
        return _OPS[op.lower()]
    raise ValueError(f"Unknown reduction op: {op!r}. Use one of {sorted(_OPS)}.")
