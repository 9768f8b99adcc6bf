"""MLflow I/O utilities for experiment tracking.

This module provides helpers for:
- Setting up MLflow tracking (local or Databricks).
- Orchestrating MLflow runs (context manager for parent/nested runs).
- Logging parameters, metrics, and per-rank tables.
- Retrieving partition runs from MLflow.
"""

import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import mlflow
import pandas as pd

log = logging.getLogger(__name__)

PROJECT_PREFIX = "/Shared/MPI-Partition"


def setup_mlflow_tracking(mode: str = "local", tracking_uri: Optional[str] = None):
    """
    Configures MLflow tracking.

    Parameters
    ----------
    mode : str
        "databricks" or "local".
    tracking_uri : str, optional
        Explicit URI for local mode (defaults to ./mlruns).
    """
    if mode == "databricks":
        try:
            mlflow.login(backend="databricks", interactive=False)
            mlflow.set_tracking_uri("databricks")
            log.info("Connected to Databricks MLflow tracking.")
        except Exception as e:
            raise RuntimeError(
                "MLflow Databricks setup failed. Ensure credentials are configured."
            ) from e
    elif mode == "local":
        if tracking_uri is None:
            tracking_uri = f"file://{Path.cwd() / 'mlruns'}"
        mlflow.set_tracking_uri(tracking_uri)
        log.info(f"Using local MLflow tracking backend: {tracking_uri}")
    else:
        log.warning(
            f"Unknown MLflow mode '{mode}'. Using existing URI: {mlflow.get_tracking_uri()}"
        )


def _experiment_name(name: str) -> str:
    if mlflow.get_tracking_uri() == "databricks" and not name.startswith("/"):
        return f"{PROJECT_PREFIX}/{name}"
    return name


@contextmanager
def start_mlflow_run_context(experiment_name: str, parent_run_name: str, child_run_name: str):
    """
    Context manager to start a child run nested under a (reused) parent run.
    """
    experiment_name = _experiment_name(experiment_name)
    exp = mlflow.set_experiment(experiment_name)
    log.info(f"Using MLflow experiment: {experiment_name}")

    client = mlflow.tracking.MlflowClient()
    parent_runs = client.search_runs(
        experiment_ids=[exp.experiment_id],
        filter_string=f"tags.mlflow.runName = '{parent_run_name}' AND tags.is_parent = 'true'",
        max_results=1,
    )
    parent_run_id = parent_runs[0].info.run_id if parent_runs else None

    with mlflow.start_run(
        run_id=parent_run_id, run_name=parent_run_name, tags={"is_parent": "true"}
    ):
        with mlflow.start_run(run_name=child_run_name, nested=True) as child_run:
            env = (
                "hpc"
                if os.environ.get("LSB_JOBID") or os.environ.get("SLURM_JOB_ID")
                else "local"
            )
            mlflow.set_tag("environment", env)
            log.info(f"Started MLflow run '{child_run.info.run_name}' ({child_run.info.run_id}) [{env}]")
            yield child_run


def log_parameters(params: dict):
    """Log a dictionary of parameters to the active MLflow run."""
    mlflow.log_params(params)


def log_metrics_dict(metrics: dict):
    """Log a dictionary of metrics to the active MLflow run, filtering out None values."""
    filtered_metrics = {k: v for k, v in metrics.items() if v is not None}
    mlflow.log_metrics(filtered_metrics)


def log_rank_table(rows: list, artifact_file: str = "ranks.json") -> pd.DataFrame:
    """Log per-rank rows (one dict per rank) as an MLflow table."""
    df = pd.DataFrame(rows)
    mlflow.log_table(df, artifact_file=artifact_file)
    return df


def load_runs(experiment: str, roundtrip_only: bool = True) -> pd.DataFrame:
    """Load child runs of an experiment as a DataFrame (newest first).

    Parameters
    ----------
    experiment : str
        Experiment name (prefixed for Databricks)
    roundtrip_only : bool
        Only include runs whose scatter/gather round trip succeeded
    """
    exp = mlflow.get_experiment_by_name(_experiment_name(experiment))
    if exp is None:
        return pd.DataFrame()

    df = mlflow.search_runs(
        experiment_ids=[exp.experiment_id],
        filter_string="metrics.roundtrip_ok = 1" if roundtrip_only else "",
        order_by=["start_time DESC"],
    )
    if "tags.is_parent" in df.columns:
        df = df[df["tags.is_parent"] != "true"]
    return df
