"""Mapping between neutronics cells and thermal-hydraulics elements.

The mapping is built in three phases:

1. Local collection: each heat/fluids rank describes its elements as
   :class:`ElementRecord` rows (volume, fluid flag, owning cell handle).
2. One collective exchange: the records are all-gathered so every rank
   holds the same list.
3. A pure reduction (:func:`reduce_gathered`) derives the global cell
   ordering, cell volumes, fluid masks and local/global index tables.

Indexing Conventions:
- Global elements are ordered by ``(rank, local_index)`` of the producing
  heat/fluids rank, independent of the order records arrive in.
- Global cells are ordered by first appearance in that element order; model
  cells not covered by any element are appended in neutronics order.
- ``elem_to_cell[e]`` is the global cell index owning global element ``e``.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .comm import CommPartition
from .datastructures import EntityTable
from .errors import ConfigurationError, MappingError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElementRecord:
    """One thermal-hydraulics element as reported by its owning rank."""

    rank: int
    local_index: int
    volume: float
    fluid: bool
    cell: int  # neutronics cell handle, negative if point location failed


@dataclass
class CellElementMap:
    """Immutable bidirectional cell <-> element map with volumes and fluid masks."""

    cells: np.ndarray  # global cell index -> cell handle
    elem_rank: np.ndarray
    elem_local_index: np.ndarray
    elem_to_cell: np.ndarray
    elem_volumes: np.ndarray
    elem_fluid_mask: np.ndarray
    cell_volumes: np.ndarray
    cell_fluid_mask: np.ndarray
    cell_to_elems: List[np.ndarray]
    local_to_global: Dict[int, np.ndarray] = field(default_factory=dict)
    cell_index: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self):
        for name in ("cells", "elem_to_cell", "elem_volumes", "elem_fluid_mask",
                     "cell_volumes", "cell_fluid_mask"):
            getattr(self, name).setflags(write=False)

    @property
    def n_cells(self) -> int:
        return self.cells.shape[0]

    @property
    def n_elements(self) -> int:
        return self.elem_to_cell.shape[0]

    @property
    def populated(self) -> np.ndarray:
        """Mask of cells with nonzero mapped volume."""
        return self.cell_volumes > 0.0

    def local_elements(self, rank: int) -> np.ndarray:
        """Global element indices of ``rank``'s elements, in local order."""
        return self.local_to_global.get(rank, np.empty(0, dtype=np.int64))

    def local_cells(self, rank: int) -> np.ndarray:
        """Global indices of the cells touched by ``rank``'s elements (first-seen order)."""
        owners = self.elem_to_cell[self.local_elements(rank)]
        _, first = np.unique(owners, return_index=True)
        return owners[np.sort(first)]

    def global_cell_indices(self, handles: Iterable[int]) -> np.ndarray:
        """Global cell index for each handle."""
        try:
            return np.array([self.cell_index[int(h)] for h in handles], dtype=np.int64)
        except KeyError as exc:
            raise MappingError(f"Cell handle {exc.args[0]} is not part of the mapping") from None

    def assemble(self, parts: Sequence[Optional[np.ndarray]]) -> np.ndarray:
        """Assemble per-rank local element arrays into one global element array."""
        values = np.zeros(self.n_elements)
        for rank, local in enumerate(parts):
            idx = self.local_elements(rank)
            if idx.size == 0:
                continue
            local = np.asarray(local, dtype=np.float64)
            if local.shape != idx.shape:
                raise MappingError(
                    f"Rank {rank} reported {local.size} element values, expected {idx.size}"
                )
            values[idx] = local
        return values


def reduce_gathered(
    records: Iterable[ElementRecord], model_cells: Sequence[int] = ()
) -> CellElementMap:
    """Build the global map from a gathered list of element records.

    Pure function: operates on the full gathered list and needs no parallel
    runtime. The result does not depend on the order of ``records``.

    Parameters
    ----------
    records : iterable of ElementRecord
        Every element of the thermal-hydraulics model.
    model_cells : sequence of int, optional
        All cell handles of the neutronics model. Cells not referenced by any
        element are kept with zero volume.

    Raises
    ------
    MappingError
        On unlocated elements, duplicate records, negative volumes or a
        non-contiguous local numbering on some rank.
    """
    records = sorted(records, key=lambda r: (r.rank, r.local_index))

    unlocated = [r for r in records if r.cell < 0]
    if unlocated:
        r = unlocated[0]
        raise MappingError(
            f"{len(unlocated)} element(s) could not be located in the neutronics model "
            f"(first: rank {r.rank}, local element {r.local_index})"
        )
    if any(r.volume < 0 for r in records):
        raise MappingError("Element volumes must be non-negative")

    # Global cell ordering: first seen in the canonical element order
    cell_index: Dict[int, int] = {}
    for r in records:
        cell_index.setdefault(int(r.cell), len(cell_index))
    for handle in model_cells:
        cell_index.setdefault(int(handle), len(cell_index))
    n_cells = len(cell_index)

    n_elem = len(records)
    elem_rank = np.fromiter((r.rank for r in records), dtype=np.int64, count=n_elem)
    elem_local = np.fromiter((r.local_index for r in records), dtype=np.int64, count=n_elem)
    elem_volumes = np.fromiter((r.volume for r in records), dtype=np.float64, count=n_elem)
    elem_fluid = np.fromiter((r.fluid for r in records), dtype=bool, count=n_elem)
    elem_to_cell = np.fromiter((cell_index[int(r.cell)] for r in records), dtype=np.int64, count=n_elem)

    if n_elem > 1:
        same = (elem_rank[1:] == elem_rank[:-1]) & (elem_local[1:] == elem_local[:-1])
        if np.any(same):
            i = int(np.argmax(same))
            raise MappingError(
                f"Duplicate element record: rank {elem_rank[i]}, local element {elem_local[i]}"
            )

    # Local -> global element tables; local numbering must be 0..n-1
    local_to_global = {}
    for rank in np.unique(elem_rank):
        idx = np.flatnonzero(elem_rank == rank)
        if not np.array_equal(elem_local[idx], np.arange(idx.size)):
            raise MappingError(f"Rank {rank} has a non-contiguous local element numbering")
        local_to_global[int(rank)] = idx

    cell_volumes = np.bincount(elem_to_cell, weights=elem_volumes, minlength=n_cells)
    cell_fluid = np.bincount(elem_to_cell, weights=elem_fluid.astype(float), minlength=n_cells) > 0

    # Cell -> element adjacency, elements kept in global order
    order = np.argsort(elem_to_cell, kind="stable")
    counts = np.bincount(elem_to_cell, minlength=n_cells)
    cell_to_elems = np.split(order, np.cumsum(counts)[:-1]) if n_cells else []

    cells = np.empty(n_cells, dtype=np.int64)
    for handle, i in cell_index.items():
        cells[i] = handle

    return CellElementMap(
        cells=cells,
        elem_rank=elem_rank,
        elem_local_index=elem_local,
        elem_to_cell=elem_to_cell,
        elem_volumes=elem_volumes,
        elem_fluid_mask=elem_fluid,
        cell_volumes=cell_volumes,
        cell_fluid_mask=cell_fluid,
        cell_to_elems=cell_to_elems,
        local_to_global=local_to_global,
        cell_index=cell_index,
    )


def element_records(rank: int, elements: EntityTable, cells: np.ndarray) -> List[ElementRecord]:
    """Describe a rank's local elements, given the cell handle owning each one."""
    cells = np.asarray(cells, dtype=np.int64)
    if cells.shape[0] != len(elements):
        raise MappingError(f"Got {cells.shape[0]} cell handles for {len(elements)} elements")
    return [
        ElementRecord(
            rank=rank,
            local_index=i,
            volume=float(elements.volumes[i]),
            fluid=bool(elements.fluid[i]),
            cell=int(cells[i]),
        )
        for i in range(len(elements))
    ]


def locate_elements(
    partition: CommPartition,
    centroids: np.ndarray,
    locate: Optional[Callable[[np.ndarray], np.ndarray]],
) -> np.ndarray:
    """Find the owning cell of every local element centroid.

    Centroids are gathered on the neutronics root, located there with
    ``locate`` (the neutronics adapter's point-location query) and the
    handles scattered back. Ranks without elements pass an empty array.
    """
    root = partition.neutronics_root
    gathered = partition.gather(np.asarray(centroids, dtype=np.float64).reshape(-1, 3), root=root)

    chunks = None
    if partition.rank == root:
        counts = [c.shape[0] for c in gathered]
        if sum(counts):
            handles = np.asarray(locate(np.concatenate(gathered)), dtype=np.int64)
        else:
            handles = np.empty(0, dtype=np.int64)
        chunks = np.split(handles, np.cumsum(counts)[:-1])

    return partition.scatter(chunks, root=root)


class DiscretizationMapper:
    """Builds the cell <-> element map exactly once per run."""

    def __init__(self, partition: CommPartition):
        self.partition = partition
        self._gathered = False
        self._mapping: Optional[CellElementMap] = None

    @property
    def mapping(self) -> CellElementMap:
        if self._mapping is None:
            raise ConfigurationError("Discretization mapping has not been built")
        return self._mapping

    def build_mapping(
        self,
        local_elements: List[ElementRecord],
        local_cells: Optional[EntityTable] = None,
    ) -> CellElementMap:
        """Gather element records from every rank and reduce them to the global map.

        Parameters
        ----------
        local_elements : list of ElementRecord
            This rank's elements with owning cell handles (empty off heat ranks).
        local_cells : EntityTable, optional
            Neutronics model cells; only read on the neutronics root.
        """
        if self._gathered:
            raise ConfigurationError(
                "Discretization mapping requested twice; geometry is fixed for the run"
            )
        self._gathered = True

        gathered = self.partition.allgather(list(local_elements))
        model_cells = None
        if self.partition.rank == self.partition.neutronics_root and local_cells is not None:
            model_cells = local_cells.handles.tolist()
        model_cells = self.partition.bcast(model_cells, root=self.partition.neutronics_root)

        mapping = reduce_gathered(
            (r for part in gathered for r in part), model_cells or ()
        )
        self.partition.barrier()

        log.info(
            f"Mapped {mapping.n_elements} elements onto {mapping.n_cells} cells "
            f"({int(np.count_nonzero(mapping.cell_fluid_mask))} fluid, "
            f"{int(np.count_nonzero(~mapping.populated))} outside the heat/fluids mesh)"
        )
        self._mapping = mapping
        return mapping
