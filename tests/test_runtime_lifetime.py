"""Runtime lifetime tests - each scenario runs in a fresh Python process.

MPI can be initialized and finalized only once per process, so the owning
path of ClusterContext cannot be exercised inside the test session.
"""

import json
import os
import shutil
import subprocess
import sys
import textwrap

import pytest
from Partition.runner import _LAUNCH_ENV, RESULT_PREFIX

LIFECYCLE = """
import json
from Partition import ClusterContext, resolve_datatype
from mpi4py import MPI

out = {}
try:
    resolve_datatype("float64")
except RuntimeError as e:
    out["resolve_before_init"] = str(e)

ctx = ClusterContext()
out["owns"] = ctx.owns_runtime
out["initialized"] = MPI.Is_initialized()
out["second_owns"] = ClusterContext().owns_runtime
ctx.finalize()
ctx.finalize()
out["finalized"] = MPI.Is_finalized()
try:
    ClusterContext()
except RuntimeError as e:
    out["reinit"] = str(e)
print("RESULT:" + json.dumps(out))
"""

DROPPED_HANDLE = """
import gc
import json
from Partition import ClusterContext
from mpi4py import MPI

ctx = ClusterContext()
owns = ctx.owns_runtime
del ctx
gc.collect()
print("RESULT:" + json.dumps({"owns": owns, "finalized": MPI.Is_finalized()}))
"""

NO_WITH_BLOCK = """
from Partition import ClusterContext, DistributionCoordinator

ctx = ClusterContext()
coord = DistributionCoordinator(ctx, total_elements=4)
print(f"RESULT:{ctx.rank}:{list(coord.counts)}", flush=True)
"""


def _run(tmp_path, name, source, n_ranks=None):
    script = tmp_path / f"{name}.py"
    script.write_text(textwrap.dedent(source))
    cmd = [sys.executable, str(script)]
    if n_ranks is not None:
        cmd = ["mpiexec", "-n", str(n_ranks), *cmd]
    return subprocess.run(
        cmd, capture_output=True, text=True, timeout=120, env={**_LAUNCH_ENV, **os.environ}
    )


def _results(proc):
    return [line[len(RESULT_PREFIX):] for line in proc.stdout.splitlines() if line.startswith(RESULT_PREFIX)]


# Run each scenario once per module, reuse results
@pytest.fixture(scope="module")
def runs(tmp_path_factory):
    tmp_path = tmp_path_factory.mktemp("runtime")
    return {
        "lifecycle": _run(tmp_path, "lifecycle", LIFECYCLE),
        "dropped": _run(tmp_path, "dropped", DROPPED_HANDLE),
    }


def test_owning_context_lifecycle(runs):
    proc = runs["lifecycle"]
    assert proc.returncode == 0, proc.stderr
    out = json.loads(_results(proc)[-1])

    assert out["owns"] is True
    assert out["initialized"] is True
    assert out["second_owns"] is False
    assert out["finalized"] is True
    assert "already been finalized" in out["reinit"]
    assert "create a ClusterContext" in out["resolve_before_init"]


def test_dropped_handle_finalizes(runs):
    proc = runs["dropped"]
    assert proc.returncode == 0, proc.stderr
    out = json.loads(_results(proc)[-1])

    assert out == {"owns": True, "finalized": True}


@pytest.mark.skipif(shutil.which("mpiexec") is None, reason="mpiexec not available")
def test_job_without_with_block_exits_cleanly(tmp_path):
    """A context left open until interpreter exit still finalizes every rank."""
    proc = _run(tmp_path, "no_with", NO_WITH_BLOCK, n_ranks=2)

    assert proc.returncode == 0, proc.stderr
    assert sorted(_results(proc)) == ["0:[2, 2]", "1:[2, 2]"]
