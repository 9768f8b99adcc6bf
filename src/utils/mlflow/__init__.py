"""MLflow utilities for experiment tracking.

Provides:
- Tracking setup (local or Databricks)
- Context manager for MLflow run orchestration
- Logging functions for parameters, metrics and per-rank tables
- Run fetching
"""

from .io import (
    setup_mlflow_tracking,
    start_mlflow_run_context,
    log_parameters,
    log_metrics_dict,
    log_rank_table,
    load_runs,
)

__all__ = [
    "setup_mlflow_tracking",
    "start_mlflow_run_context",
    "log_parameters",
    "log_metrics_dict",
    "log_rank_table",
    "load_runs",
]
