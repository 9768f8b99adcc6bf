"""Utility modules for experiment tracking.

Submodules:
- mlflow: MLflow tracking setup, run orchestration and run loading

Import examples:
    from utils import mlflow       # MLflow utilities
"""

import warnings

# Suppress MLflow FutureWarning about filesystem backend deprecation
warnings.filterwarnings("ignore", category=FutureWarning, module="mlflow")

from . import mlflow  # noqa: E402

__all__ = [
    "mlflow",
]
