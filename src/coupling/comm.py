"""Communicator partition between the neutronics and heat/fluids groups.

The parent communicator is split into one sub-communicator per solver. Role
assignment may overlap, e.g. a single rank can drive both solvers in a debug
run. Every rank of the parent communicator records the parent rank of the
root of each group so it can take part in cross-group exchanges.

All exchanges are blocking. Failures inside MPI surface as
:class:`CollectiveFailure`.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
from mpi4py import MPI

from .errors import CollectiveFailure, ConfigurationError

log = logging.getLogger(__name__)


@dataclass
class CommPartition:
    """Parent communicator plus the two solver sub-communicators.

    Attributes
    ----------
    comm : MPI.Comm
        Parent communicator used for cross-group exchange.
    neutronics_comm, heat_comm : MPI.Comm
        Sub-communicators; ``MPI.COMM_NULL`` on ranks outside the group.
    neutronics_root, heat_root : int
        Rank in ``comm`` of each group's root (rank 0 of the sub-communicator).
    """

    comm: MPI.Comm
    neutronics_comm: MPI.Comm
    heat_comm: MPI.Comm
    neutronics_ranks: List[int] = field(default_factory=list)
    heat_ranks: List[int] = field(default_factory=list)

    @property
    def rank(self) -> int:
        return self.comm.Get_rank()

    @property
    def size(self) -> int:
        return self.comm.Get_size()

    @property
    def neutronics_root(self) -> int:
        return self.neutronics_ranks[0]

    @property
    def heat_root(self) -> int:
        return self.heat_ranks[0]

    @property
    def is_neutronics(self) -> bool:
        return self.neutronics_comm != MPI.COMM_NULL

    @property
    def is_heat(self) -> bool:
        return self.heat_comm != MPI.COMM_NULL

    def roles(self, rank: int) -> str:
        """Human readable role list for a parent rank."""
        roles = []
        if rank in self.neutronics_ranks:
            roles.append("neutronics" + (" (root)" if rank == self.neutronics_root else ""))
        if rank in self.heat_ranks:
            roles.append("heat/fluids" + (" (root)" if rank == self.heat_root else ""))
        return ", ".join(roles)

    # ------------------------------------------------------------------
    # Blocking exchanges on the parent communicator
    # ------------------------------------------------------------------

    def barrier(self):
        try:
            self.comm.Barrier()
        except MPI.Exception as exc:
            raise CollectiveFailure(f"Barrier failed on rank {self.rank}") from exc

    def bcast(self, obj, root: int):
        """Broadcast a picklable object from ``root`` to every parent rank."""
        try:
            return self.comm.bcast(obj, root=root)
        except MPI.Exception as exc:
            raise CollectiveFailure(f"bcast from rank {root} failed") from exc

    def broadcast_array(self, array: np.ndarray, root: int) -> np.ndarray:
        """Broadcast a float64 array in place; returns the same buffer."""
        try:
            self.comm.Bcast([array, MPI.DOUBLE], root=root)
        except MPI.Exception as exc:
            raise CollectiveFailure(f"Bcast of {array.size} values from rank {root} failed") from exc
        return array

    def gather(self, obj, root: int) -> Optional[list]:
        try:
            return self.comm.gather(obj, root=root)
        except MPI.Exception as exc:
            raise CollectiveFailure(f"gather to rank {root} failed") from exc

    def scatter(self, objs, root: int):
        try:
            return self.comm.scatter(objs, root=root)
        except MPI.Exception as exc:
            raise CollectiveFailure(f"scatter from rank {root} failed") from exc

    def allgather(self, obj) -> list:
        try:
            return self.comm.allgather(obj)
        except MPI.Exception as exc:
            raise CollectiveFailure("allgather failed") from exc

    def free(self):
        """Release the sub-communicators."""
        for name in ("neutronics_comm", "heat_comm"):
            sub = getattr(self, name)
            if sub != MPI.COMM_NULL:
                sub.Free()
                setattr(self, name, MPI.COMM_NULL)


def _validate_ranks(name: str, ranks: Sequence[int], size: int) -> List[int]:
    ranks = sorted({int(r) for r in ranks})
    if not ranks:
        raise ConfigurationError(f"{name} must contain at least one rank")
    bad = [r for r in ranks if r < 0 or r >= size]
    if bad:
        raise ConfigurationError(f"{name} contains ranks outside [0, {size}): {bad}")
    return ranks


def partition_comm(
    comm: MPI.Comm,
    neutronics_ranks: Optional[Sequence[int]] = None,
    heat_ranks: Optional[Sequence[int]] = None,
) -> CommPartition:
    """Split ``comm`` into neutronics and heat/fluids sub-communicators.

    Parameters
    ----------
    comm : MPI.Comm
        Parent communicator.
    neutronics_ranks, heat_ranks : sequence of int, optional
        Parent ranks assigned to each solver. ``None`` assigns every rank.

    Raises
    ------
    ConfigurationError
        If a group is empty, names a rank outside ``comm``, or some rank of
        ``comm`` belongs to neither group.
    """
    size = comm.Get_size()
    rank = comm.Get_rank()
    all_ranks = range(size)

    n_ranks = _validate_ranks(
        "neutronics_ranks", all_ranks if neutronics_ranks is None else neutronics_ranks, size
    )
    h_ranks = _validate_ranks("heat_ranks", all_ranks if heat_ranks is None else heat_ranks, size)

    orphans = sorted(set(all_ranks) - set(n_ranks) - set(h_ranks))
    if orphans:
        raise ConfigurationError(f"Ranks {orphans} are assigned to neither solver")

    # key=rank keeps the lowest parent rank as root of each sub-communicator
    try:
        neutronics_comm = comm.Split(0 if rank in n_ranks else MPI.UNDEFINED, rank)
        heat_comm = comm.Split(0 if rank in h_ranks else MPI.UNDEFINED, rank)
    except MPI.Exception as exc:
        raise CollectiveFailure("Communicator split failed") from exc

    partition = CommPartition(
        comm=comm,
        neutronics_comm=neutronics_comm,
        heat_comm=heat_comm,
        neutronics_ranks=n_ranks,
        heat_ranks=h_ranks,
    )
    log.debug(f"Rank {rank}: {partition.roles(rank) or 'no role'}")
    return partition
