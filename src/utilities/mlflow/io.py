"""MLflow I/O utilities for experiment tracking."""

import logging
import os
import tempfile
from pathlib import Path

import mlflow
from mlflow.tracking import MlflowClient
from omegaconf import DictConfig, OmegaConf

log = logging.getLogger(__name__)


def get_experiment_name(cfg: DictConfig) -> str:
    """Build full experiment name with optional prefix."""
    name = cfg.experiment_name
    prefix = cfg.mlflow.get("project_prefix", "")
    if prefix and not name.startswith("/"):
        return f"{prefix}/{name}"
    return name


def setup_mlflow(cfg: DictConfig) -> str:
    """Setup MLflow tracking and return experiment name."""
    tracking_uri = cfg.mlflow.get("tracking_uri", "./mlruns")
    # If defaulting to local file backend, clear any env override
    if str(cfg.mlflow.get("mode", "")).lower() in ("files", "local"):
        os.environ.pop("MLFLOW_TRACKING_URI", None)
    os.environ["MLFLOW_TRACKING_URI"] = str(tracking_uri)
    mlflow.set_tracking_uri(tracking_uri)

    experiment_name = get_experiment_name(cfg)
    try:
        mlflow.set_experiment(experiment_name)
    except Exception as exc:
        # If experiment was previously deleted, fall back to a new name
        experiment_name = f"{experiment_name}-restored"
        log.warning(f"MLflow set_experiment failed ({exc}); using '{experiment_name}'")
        mlflow.set_experiment(experiment_name)
    return experiment_name


def log_params(driver, cfg: DictConfig = None):
    """Log driver params and the resolved Hydra config."""
    mlflow.log_params(driver.params.to_mlflow())
    if cfg is not None:
        mlflow.log_dict(OmegaConf.to_container(cfg, resolve=True), "config.yaml")


def log_metrics_and_timeseries(driver, run_id: str):
    """Log final metrics and the Picard history to MLflow."""
    mlflow.log_metrics(driver.metrics.to_mlflow())

    if driver.time_series is not None:
        batch_metrics = driver.time_series.to_mlflow_batch()
        if batch_metrics:
            MlflowClient().log_batch(run_id=run_id, metrics=batch_metrics)


def log_history(driver):
    """Save the Picard history table as a CSV artifact."""
    if driver.time_series is None or len(driver.time_series) == 0:
        return

    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "picard_history.csv"
        driver.time_series.to_dataframe().to_csv(path, index=False)
        mlflow.log_artifact(str(path), artifact_path="history")
    log.info("Logged Picard history (csv)")
