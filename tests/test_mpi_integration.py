"""MPI integration tests - spawn actual MPI processes via run_worker."""

import shutil

import pytest
from Partition import run_worker

pytestmark = pytest.mark.skipif(
    shutil.which("mpiexec") is None, reason="mpiexec not available"
)


# Run each configuration once per module, reuse results
@pytest.fixture(scope="module")
def mpi_results():
    """Run all MPI configurations once."""
    return {
        "equal_11_3": run_worker(11, n_ranks=3, mode="all_nodes_equal", dtype="float32"),
        "control_7_3": run_worker(7, n_ranks=3, mode="control_node_manages", dtype="int32"),
        "equal_1000_4": run_worker(1000, n_ranks=4, mode="all_nodes_equal", reduce_op="max"),
        "control_2_4": run_worker(2, n_ranks=4, mode="control_node_manages"),
        "single": run_worker(5, n_ranks=1),
    }


@pytest.mark.parametrize("key", ["equal_11_3", "control_7_3", "equal_1000_4", "control_2_4", "single"])
def test_runs_and_round_trips(mpi_results, key):
    """Every configuration should run and reproduce its input after scatter/gather."""
    r = mpi_results[key]
    assert "error" not in r, f"Failed: {r.get('error')}"
    assert r["metrics"]["roundtrip_ok"] == 1
    assert r["metrics"]["allgather_consistent"] == 1
    assert r["metrics"]["broadcast_ok"] == 1


def test_equal_example(mpi_results):
    r = mpi_results["equal_11_3"]
    assert r["counts"] == [3, 4, 4]
    assert r["displacements"] == [0, 3, 7]
    assert r["gathered"] == [1, 2, 3, 5, 6, 7, 8, 10, 11, 12, 13]


def test_control_example(mpi_results):
    r = mpi_results["control_7_3"]
    assert r["counts"] == [0, 3, 4]
    assert r["displacements"] == [0, 0, 3]
    assert r["ranks"][0]["received"] == []


def test_plan_identical_on_every_rank(mpi_results):
    r = mpi_results["equal_1000_4"]
    assert all(obs["counts"] == r["counts"] for obs in r["ranks"])
    assert r["counts"] == [250, 250, 250, 250]
    assert r["reduce"] == [4.0, 4.0, 4.0, 4.0]


def test_more_ranks_than_elements(mpi_results):
    r = mpi_results["control_2_4"]
    assert r["counts"] == [0, 0, 1, 1]


def test_control_mode_single_rank_fails():
    """Control mode needs a worker rank; the error is reported, not hidden."""
    r = run_worker(5, n_ranks=1, mode="control_node_manages")
    assert "error" in r
    assert "at least 2" in r["error"]
