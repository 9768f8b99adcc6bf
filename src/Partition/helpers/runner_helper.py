"""MPI worker - invoked via: mpiexec -n X python -m Partition.helpers.runner_helper '{config}'"""

import json
import logging
import sys
from dataclasses import fields

import numpy as np

from Partition import ClusterContext, DistributionCoordinator, RunMetrics, RunParams
from mpi4py import MPI  # after Partition, which sets mpi4py.rc

log = logging.getLogger(__name__)

# Length of the per-rank arrays fed to reduce/all_reduce
REDUCE_LENGTH = 4


def params_from_config(config: dict) -> RunParams:
    """Build RunParams from a config dict, ignoring unknown keys."""
    names = {f.name for f in fields(RunParams) if f.init}
    return RunParams(**{k: v for k, v in config.items() if k in names})


def run_pipeline(ctx: ClusterContext, params: RunParams):
    """Broadcast, partition, scatter, transform, gather, reduce.

    Every rank must call this. Rank 0 owns the input array 1..N; each rank
    adds its rank number to its slice before gathering. Returns
    (RunMetrics, result dict) on rank 0 and (None, None) elsewhere.
    """
    dtype = np.dtype(params.dtype)
    coord = DistributionCoordinator(ctx)

    ctx.barrier()
    t_start = MPI.Wtime()

    # Only rank 0 knows the problem size; everyone else learns it here
    n = coord.broadcast(params.total_elements if ctx.is_root else None)
    value = coord.broadcast(params.broadcast_value if ctx.is_root else None)

    t0 = MPI.Wtime()
    coord.configure(params.mode, n)
    t_configure = MPI.Wtime() - t0

    x = np.arange(1, n + 1).astype(dtype) if ctx.is_root else None

    t0 = MPI.Wtime()
    received = coord.scatter(x, dtype=dtype)
    t_scatter = MPI.Wtime() - t0

    roundtrip = coord.gather(received.copy())

    local = received.copy()
    np.add(local, ctx.rank, out=local, casting="unsafe")

    t0 = MPI.Wtime()
    gathered = coord.gather(local)
    t_gather = MPI.Wtime() - t0

    t0 = MPI.Wtime()
    everywhere = coord.all_gather(local)
    t_allgather = MPI.Wtime() - t0

    partial = np.full(REDUCE_LENGTH, ctx.rank + 1).astype(dtype)
    t0 = MPI.Wtime()
    reduced = coord.reduce(partial, op=params.reduce_op)
    t_reduce = MPI.Wtime() - t0
    all_reduced = coord.all_reduce(partial, op=params.reduce_op)

    wall_time = MPI.Wtime() - t_start

    observation = {
        **coord.summary(),
        "received": received.tolist(),
        "all_gather": everywhere.tolist(),
        "all_reduce": all_reduced.tolist(),
        "broadcast": value,
    }
    observations = ctx.comm.gather(observation, root=0)

    if not ctx.is_root:
        return None, None

    plan = coord.plan
    local_counts = [obs["local_count"] for obs in observations]
    metrics = RunMetrics(
        roundtrip_ok=bool(np.array_equal(roundtrip, x)),
        allgather_consistent=all(
            obs["all_gather"] == gathered.tolist() for obs in observations
        ),
        broadcast_ok=all(obs["broadcast"] == params.broadcast_value for obs in observations),
        imbalance=plan.imbalance(),
        max_local_count=max(local_counts),
        min_local_count=min(local_counts),
        configure_time=t_configure,
        scatter_time=t_scatter,
        gather_time=t_gather,
        allgather_time=t_allgather,
        reduce_time=t_reduce,
        wall_time=wall_time,
    )
    result = {
        "params": params.to_mlflow(),
        "metrics": metrics.to_mlflow(),
        "counts": list(plan.counts),
        "displacements": list(plan.displacements),
        "input": x.tolist(),
        "gathered": gathered.tolist(),
        "reduce": reduced.tolist(),
        "ranks": observations,
    }
    log.info(
        f"N={n}, ranks={ctx.size}, {plan.mode.value}: counts={plan.counts}, "
        f"roundtrip={'ok' if metrics.roundtrip_ok else 'FAILED'}"
    )
    return metrics, result


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config = json.loads(argv[0])

    with ClusterContext() as ctx:
        logging.basicConfig(
            level=config.get("log_level", "INFO"),
            format=f"[rank {ctx.rank}] [%(levelname)s] %(message)s",
        )
        params = params_from_config(config)
        _, result = run_pipeline(ctx, params)

        if ctx.is_root:
            # runner.py parses this line
            print(f"RESULT:{json.dumps(result)}", flush=True)


if __name__ == "__main__":
    main()
