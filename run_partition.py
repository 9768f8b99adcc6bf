"""
Partition Runner - runs the scatter/gather pipeline locally or under mpiexec.

Usage:
    python run_partition.py total_elements=11 n_ranks=3
    python run_partition.py mode=control_node_manages n_ranks=4 mlflow.mode=local
    python run_partition.py -m total_elements=100,1000 n_ranks=2,4
"""

import logging
import os
import subprocess
import sys

import hydra
from omegaconf import DictConfig, OmegaConf

log = logging.getLogger(__name__)

# Config keys forwarded to the mpiexec child as key=value overrides
_FORWARDED_KEYS = [
    "total_elements", "n_ranks", "mode", "dtype", "reduce_op",
    "broadcast_value", "experiment_name",
]


def _params(cfg: DictConfig):
    from Partition.helpers.runner_helper import params_from_config

    return params_from_config(OmegaConf.to_container(cfg, resolve=True))


def _log_results(cfg: DictConfig, params, metrics, result: dict):
    """Log run to MLflow (rank 0 only)."""
    from utils.mlflow.io import (
        log_metrics_dict,
        log_parameters,
        log_rank_table,
        setup_mlflow_tracking,
        start_mlflow_run_context,
    )

    setup_mlflow_tracking(mode=cfg.mlflow.mode)
    run_name = f"{params.mode}_N{params.total_elements}_p{params.n_ranks}"

    with start_mlflow_run_context(
        experiment_name=params.experiment_name,
        parent_run_name=f"N{params.total_elements}",
        child_run_name=run_name,
    ):
        log_parameters(params.to_mlflow())
        log_metrics_dict(metrics.to_mlflow())
        rows = [
            {k: obs[k] for k in ("rank", "local_count", "mode", "total_elements")}
            for obs in result["ranks"]
        ]
        df = log_rank_table(rows)
        log_parameters({"working_ranks": int((df["local_count"] > 0).sum())})


def _run_in_group(cfg: DictConfig):
    """Run the pipeline on every rank of the current MPI group."""
    from Partition import ClusterContext
    from Partition.helpers.runner_helper import run_pipeline

    params = _params(cfg)
    with ClusterContext() as ctx:
        if ctx.rank == 0:
            log.info(f"{params.mode}, N={params.total_elements}, ranks={ctx.size}")
        metrics, result = run_pipeline(ctx, params)

        if ctx.rank != 0:
            return

        log.info(
            f"counts={result['counts']} displs={result['displacements']} "
            f"roundtrip={metrics.roundtrip_ok} allgather={metrics.allgather_consistent} "
            f"reduce={result['reduce']} time={metrics.wall_time:.4f}s"
        )
        if cfg.mlflow.mode != "disabled":
            _log_results(cfg, params, metrics, result)


def _spawn_mpi(cfg: DictConfig, n_ranks: int):
    """Re-launch this script under mpiexec."""
    mpi = cfg.get("mpi", {})
    env = os.environ.copy()
    env["MPI_SUBPROCESS"] = "1"

    cmd = [mpi.get("launcher", "mpiexec"), "-n", str(n_ranks)]
    if mpi.get("oversubscribe"):
        cmd.append("--oversubscribe")
    cmd.extend([sys.executable, os.path.abspath(__file__)])

    for key in _FORWARDED_KEYS:
        val = cfg.get(key)
        if val is not None:
            cmd.append(f"{key}={val}")
    cmd.append(f"mlflow.mode={cfg.mlflow.mode}")

    result = subprocess.run(cmd, capture_output=True, text=True, env=env, timeout=mpi.get("timeout", 300))
    for line in (result.stdout or "").strip().split("\n"):
        if line:
            log.info(line)
    for line in (result.stderr or "").strip().split("\n"):
        if line:
            log.warning(line) if "error" in line.lower() else log.info(line)
    if result.returncode != 0:
        log.error(f"mpiexec exited with status {result.returncode}")
        sys.exit(result.returncode)


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Entry point - runs in-process for one rank or spawns MPI for more."""
    n_ranks = cfg.get("n_ranks", 1)
    log.info(f"{cfg.mode}, N={cfg.total_elements}, n_ranks={n_ranks}")

    if n_ranks == 1:
        _run_in_group(cfg)
    else:
        _spawn_mpi(cfg, n_ranks)


if __name__ == "__main__":
    if os.environ.get("MPI_SUBPROCESS"):
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

        # Parse key=value args
        cfg_dict = {}
        for arg in sys.argv[1:]:
            if "=" in arg and not arg.startswith("-"):
                key, val = arg.split("=", 1)
                d = cfg_dict
                for k in key.split(".")[:-1]:
                    d = d.setdefault(k, {})
                try:
                    d[key.split(".")[-1]] = int(val)
                except ValueError:
                    d[key.split(".")[-1]] = val

        _run_in_group(OmegaConf.create(cfg_dict))
    else:
        main()
