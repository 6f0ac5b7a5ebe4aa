"""MLflow utilities for experiment tracking and artifact management."""

from .io import (
    get_experiment_name,
    log_history,
    log_metrics_and_timeseries,
    log_params,
    setup_mlflow,
)

__all__ = [
    "get_experiment_name",
    "log_history",
    "log_metrics_and_timeseries",
    "log_params",
    "setup_mlflow",
]
