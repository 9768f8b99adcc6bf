"""Run the partition pipeline via mpiexec subprocess."""

import json
import os
import subprocess
import sys

RESULT_PREFIX = "RESULT:"

# Let OpenMPI start as root and with more ranks than cores (CI containers)
_LAUNCH_ENV = {
    "OMPI_ALLOW_RUN_AS_ROOT": "1",
    "OMPI_ALLOW_RUN_AS_ROOT_CONFIRM": "1",
    "OMPI_MCA_rmaps_base_oversubscribe": "1",
    "PRTE_MCA_rmaps_default_mapping_policy": ":oversubscribe",
}


def run_worker(
    total_elements: int,
    n_ranks: int = 1,
    launcher: str = "mpiexec",
    timeout: float = 120,
    **kwargs,
) -> dict:
    """Partition total_elements over n_ranks MPI processes and move data.

    Parameters
    ----------
    total_elements : int
        Length of the whole array
    n_ranks : int
        Number of MPI ranks
    launcher : str
        MPI launcher executable
    timeout : float
        Seconds before the run is considered hung
    **kwargs
        Extra options: mode, dtype, reduce_op, broadcast_value, log_level

    Returns
    -------
    dict
        Result from rank 0 (plan, gathered arrays, per-rank observations,
        metrics), or a dict with an 'error' key on failure
    """
    config = {"total_elements": total_elements, "n_ranks": n_ranks, **kwargs}
    cmd = [
        launcher, "-n", str(n_ranks),
        sys.executable, "-m", "Partition.helpers.runner_helper", json.dumps(config),
    ]
    env = {**_LAUNCH_ENV, **os.environ}

    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, env=env, timeout=timeout)
    except FileNotFoundError:
        return {"error": f"MPI launcher not found: {launcher}"}
    except subprocess.TimeoutExpired:
        return {"error": f"Run timed out after {timeout}s (ranks out of step?)"}

    if proc.returncode != 0:
        return {"error": proc.stderr}

    for line in reversed(proc.stdout.splitlines()):
        if line.startswith(RESULT_PREFIX):
            return json.loads(line[len(RESULT_PREFIX):])

    return {"error": "No result line in output", "stderr": proc.stderr}
