"""Rich console output helpers."""

import math

from rich.console import Console
from rich.table import Table

console = Console()


def ok(msg: str):
    """Print success message."""
    console.print(f"  [green]✓[/green] {msg}")


def fail(msg: str):
    """Print failure message."""
    console.print(f"  [red]✗[/red] {msg}")


def dim(msg: str):
    """Print dimmed message."""
    console.print(f"  [dim]{msg}[/dim]")


def header(msg: str):
    """Print bold header."""
    console.print(f"\n[bold]{msg}[/bold]")


def comm_table(rows: list) -> Table:
    """Table of parent ranks, hosts and solver roles."""
    table = Table(title="Communicator layout", show_lines=False)
    table.add_column("Rank", justify="right", style="cyan")
    table.add_column("Host")
    table.add_column("Roles")
    for row in sorted(rows, key=lambda r: r["rank"]):
        table.add_row(str(row["rank"]), row["host"], row["roles"] or "[red]none[/red]")
    return table


def print_comm_report(rows: list):
    """Print the communicator layout gathered by ``CoupledDriver.comm_layout``."""
    if rows:
        console.print(comm_table(rows))


def print_summary(metrics):
    """Print the final metrics of a coupled run."""
    header("Coupled run summary")
    status = ok if metrics.converged else fail
    status(
        f"{metrics.picard_iterations} Picard iterations over {metrics.timesteps} timestep(s), "
        f"{metrics.unconverged_timesteps} unconverged"
    )
    dim(f"final ||dT|| = {metrics.final_temperature_norm:.3e}")
    if not math.isnan(metrics.final_k_eff):
        dim(f"k_eff = {metrics.final_k_eff:.5f}, boron = {metrics.final_boron_ppm:.1f} ppm")
    dim(f"wall time = {metrics.wall_time_seconds:.2f} s")
