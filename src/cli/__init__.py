"""Console reporting for coupled runs."""

from .console import comm_table, console, dim, fail, header, ok, print_comm_report, print_summary

__all__ = [
    "comm_table",
    "console",
    "dim",
    "fail",
    "header",
    "ok",
    "print_comm_report",
    "print_summary",
]
