from enum import Enum
from typing import List, NamedTuple, Tuple

import numpy as np


BACKGROUND_CELL = int(np.iinfo(np.uint32).max)


class CoordinateMode(Enum):
    XY = "xy"
    XYZ = "xyz"


class Transcript(NamedTuple):
    x: float
    y: float
    z: float
    gene: int


class TranscriptCatalog:
    """Immutable, column-wise store of filtered transcript detections.

    Transcript ids are positions in the arrays. In XY mode `z` is all zeros.
    `init_assignments` holds a cell index per transcript or BACKGROUND_CELL.
    """

    def __init__(
        self,
        gene_names: List[str],
        x: np.ndarray,
        y: np.ndarray,
        z: np.ndarray,
        gene: np.ndarray,
        init_assignments: np.ndarray,
        init_population: np.ndarray,
        mode: CoordinateMode = CoordinateMode.XY,
        nfiltered: int = 0,
    ):
        n = len(x)
        if not (len(y) == len(z) == len(gene) == len(init_assignments) == n):
            raise ValueError("Transcript columns must all have the same length.")
        self.gene_names = list(gene_names)
        self.x = np.ascontiguousarray(x, dtype=np.float32)
        self.y = np.ascontiguousarray(y, dtype=np.float32)
        self.z = np.ascontiguousarray(z, dtype=np.float32)
        self.gene = np.ascontiguousarray(gene, dtype=np.uint32)
        self.init_assignments = np.ascontiguousarray(init_assignments, dtype=np.uint32)
        self.init_population = np.ascontiguousarray(init_population, dtype=np.int64)
        self.mode = mode
        self.nfiltered = int(nfiltered)
        for arr in (self.x, self.y, self.z, self.gene, self.init_assignments, self.init_population):
            arr.setflags(write=False)

    def __len__(self) -> int:
        return len(self.x)

    def __getitem__(self, i: int) -> Transcript:
        return Transcript(float(self.x[i]), float(self.y[i]), float(self.z[i]), int(self.gene[i]))

    @property
    def ngenes(self) -> int:
        return len(self.gene_names)

    @property
    def ncells(self) -> int:
        return len(self.init_population)

    @property
    def is_3d(self) -> bool:
        return self.mode is CoordinateMode.XYZ

    def positions(self) -> np.ndarray:
        """(n, 2) array in XY mode, (n, 3) in XYZ mode."""
        if self.is_3d:
            return np.column_stack([self.x, self.y, self.z])
        return np.column_stack([self.x, self.y])

    @classmethod
    def from_arrays(
        cls,
        gene_names: List[str],
        x,
        y,
        gene,
        assignments,
        z=None,
        nfiltered: int = 0,
    ) -> "TranscriptCatalog":
        """Build a catalog from in-memory columns; negative assignments mean background."""
        x = np.asarray(x, dtype=np.float32)
        mode = CoordinateMode.XY if z is None else CoordinateMode.XYZ
        z = np.zeros_like(x) if z is None else np.asarray(z, dtype=np.float32)
        raw = np.asarray(assignments, dtype=np.int64)
        cell_assignments = np.where(raw >= 0, raw, BACKGROUND_CELL).astype(np.uint32)
        return cls(
            gene_names,
            x,
            np.asarray(y, dtype=np.float32),
            z,
            np.asarray(gene, dtype=np.uint32),
            cell_assignments,
            postprocess_cell_assignments(cell_assignments),
            mode=mode,
            nfiltered=nfiltered,
        )


def postprocess_cell_assignments(cell_assignments: np.ndarray) -> np.ndarray:
    """Population per cell; the cell count is the largest assigned index plus one."""
    assigned = cell_assignments[cell_assignments != BACKGROUND_CELL].astype(np.int64)
    if assigned.size == 0:
        return np.zeros(0, dtype=np.int64)
    return np.bincount(assigned, minlength=int(assigned.max()) + 1).astype(np.int64)


def coordinate_span(catalog: TranscriptCatalog) -> Tuple[float, float, float, float, float, float]:
    """(xmin, xmax, ymin, ymax, zmin, zmax) over all transcripts."""
    if len(catalog) == 0:
        raise ValueError("Cannot compute the coordinate span of an empty transcript table.")
    return (
        float(catalog.x.min()), float(catalog.x.max()),
        float(catalog.y.min()), float(catalog.y.max()),
        float(catalog.z.min()), float(catalog.z.max()),
    )
