"""
Coupled Runner - Hydra + MLflow integration for the Picard coupling driver.

Usage:
    # Serial debug run (both solvers on one rank)
    uv run python run_coupled.py

    # Disjoint groups: rank 0 neutronics, ranks 1-3 heat/fluids
    mpirun -n 4 python run_coupled.py partition.neutronics_ranks=[0] partition.heat_ranks=[1,2,3]

    # Relaxation and convergence settings
    uv run python run_coupled.py coupling.alpha=0.5 coupling.norm=l2
    uv run python run_coupled.py coupling.alpha=robbins-monro coupling.max_picard_iter=30

    # Boron criticality search
    uv run python run_coupled.py coupling.criticality_search=true

    # Parameter sweeps (multirun mode)
    uv run python run_coupled.py -m coupling.alpha=0.3,0.6,1.0

MLflow modes:
    files    - file-based ./mlruns (default)
    coolify  - remote server (requires .env with credentials)

MLflow logging happens on parent rank 0 only.
"""

import logging
import os
import sys
from pathlib import Path

import hydra
import mlflow
from dotenv import load_dotenv
from hydra.utils import instantiate
from mpi4py import MPI
from omegaconf import DictConfig, OmegaConf

# Load .env file (for MLflow credentials)
load_dotenv()

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

from cli.console import print_comm_report, print_summary  # noqa: E402
from coupling import CollectiveFailure, CoupledDriver, CouplingParameters, partition_comm  # noqa: E402
from utilities.mlflow import (  # noqa: E402
    log_history,
    log_metrics_and_timeseries,
    log_params,
    setup_mlflow,
)

log = logging.getLogger(__name__)


# =============================================================================
# Driver Factory
# =============================================================================


def create_driver(cfg: DictConfig, comm: MPI.Comm) -> CoupledDriver:
    """Split ``comm`` and instantiate both solver adapters on their groups."""
    partition = partition_comm(
        comm,
        neutronics_ranks=cfg.partition.neutronics_ranks,
        heat_ranks=cfg.partition.heat_ranks,
    )
    try:
        params = CouplingParameters(**OmegaConf.to_container(cfg.coupling, resolve=True))
        neutronics = instantiate(cfg.neutronics, comm=partition.neutronics_comm)
        heat = instantiate(cfg.heat_fluids, comm=partition.heat_comm)
        criticality = instantiate(cfg.boron) if params.criticality_search else None
        return CoupledDriver(partition, neutronics, heat, params=params, criticality=criticality)
    except Exception:
        partition.free()
        raise


def build_run_name(cfg: DictConfig) -> str:
    if cfg.get("run_name"):
        return cfg.run_name
    neutronics = cfg.neutronics._target_.rsplit(".", 1)[-1]
    heat = cfg.heat_fluids._target_.rsplit(".", 1)[-1]
    return f"{neutronics}-{heat}_alpha{cfg.coupling.alpha}"


# =============================================================================
# Main Entry Point
# =============================================================================


def run(cfg: DictConfig, driver: CoupledDriver, comm: MPI.Comm) -> CoupledDriver:
    print_comm_report(driver.comm_layout())

    use_mlflow = cfg.mlflow.get("enabled", True) and comm.Get_rank() == 0
    if not use_mlflow:
        driver.execute()
        return driver

    experiment_name = setup_mlflow(cfg)
    log.info(f"MLflow experiment: {experiment_name}")

    run_tags = {"method": driver.params.method, "ranks": str(comm.Get_size())}
    parent_run_id = os.environ.get("MLFLOW_PARENT_RUN_ID")
    nested = False
    if parent_run_id:
        run_tags["mlflow.parentRunId"] = parent_run_id
        run_tags["parent_run_id"] = parent_run_id
        run_tags["sweep"] = "child"
        nested = True

    with mlflow.start_run(run_name=build_run_name(cfg), tags=run_tags, nested=nested) as mlrun:
        log_params(driver, cfg)

        # Tag with HPC job info if available
        job_id = os.environ.get("LSB_JOBID")
        if job_id:
            mlflow.set_tag("lsf.job_id", job_id)
            mlflow.set_tag("lsf.job_name", os.environ.get("LSB_JOBNAME", ""))

        log.info("Starting coupled run...")
        driver.execute()

        log_metrics_and_timeseries(driver, mlrun.info.run_id)
        log_history(driver)
    return driver


def launch(cfg: DictConfig, comm: MPI.Comm) -> CoupledDriver:
    """Create and run the driver, releasing its sub-communicators on every path."""
    driver = create_driver(cfg, comm)
    try:
        run(cfg, driver, comm)
    except CollectiveFailure:
        log.exception(f"Rank {comm.Get_rank()}: exchange failed, aborting")
        comm.Abort(1)
        raise
    finally:
        driver.partition.free()
    return driver


@hydra.main(config_path="conf", config_name="config", version_base=None)
def main(cfg: DictConfig) -> None:
    """Hydra entry point - runs the coupled driver with MLflow tracking."""
    comm = MPI.COMM_WORLD
    if comm.Get_rank() == 0:
        log.info(
            f"Coupled run on {comm.Get_size()} rank(s): power={cfg.coupling.power}, "
            f"alpha={cfg.coupling.alpha}, norm={cfg.coupling.norm}"
        )

    driver = launch(cfg, comm)

    if comm.Get_rank() == 0:
        print_summary(driver.metrics)
        log.info(
            f"Done: {driver.metrics.picard_iterations} iter, "
            f"converged={driver.metrics.converged}, "
            f"time={driver.metrics.wall_time_seconds:.2f}s"
        )


if __name__ == "__main__":
    main()
