"""MPI runtime access.

This package provides:
- ClusterContext: Rank/size of this process and the MPI runtime lifetime
- resolve_datatype: numpy dtype -> MPI datatype (via mpi4py.util.dtlib)
- resolve_op: operator name -> MPI reduction op
"""

from .context import ClusterContext
from .datatypes import resolve_datatype, resolve_op

__all__ = [
    "ClusterContext",
    "resolve_datatype",
    "resolve_op",
]
