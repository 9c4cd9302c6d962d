import math
from typing import List, Tuple

import numpy as np


SQRT_3 = math.sqrt(3.0)


def count_square_chunks(chunk_size: float, xspan: float, yspan: float) -> int:
    return max(1, math.ceil(xspan / chunk_size)) * max(1, math.ceil(yspan / chunk_size))


def find_chunk_size(
    ncells: int,
    xspan: float,
    yspan: float,
    nworkers: int,
    chunk_factor: int = 4,
    max_cells_per_chunk: int = 100,
) -> Tuple[float, int]:
    """Smallest sqrt(2)-grown square size giving enough cells per chunk.

    Starts from an even split of the bounding box into `nworkers * chunk_factor`
    squares and grows until `ncells / nchunks >= min(ncells, max_cells_per_chunk)`.
    Returns (chunk_size, nchunks).
    """
    area = xspan * yspan
    chunk_size = math.sqrt(area / max(1, nworkers * chunk_factor)) if area > 0 else 0.0
    if not chunk_size > 0:
        chunk_size = max(xspan, yspan, 1.0)

    min_cells_per_chunk = min(float(ncells), float(max_cells_per_chunk))
    while ncells / count_square_chunks(chunk_size, xspan, yspan) < min_cells_per_chunk:
        chunk_size *= math.sqrt(2.0)
    return chunk_size, count_square_chunks(chunk_size, xspan, yspan)


class _Chunker:
    def __init__(self, size: float, xmin: float = 0.0, ymin: float = 0.0):
        if not size > 0:
            raise ValueError(f"Chunk size must be positive, got {size}.")
        self.size = float(size)
        self.xmin = float(xmin)
        self.ymin = float(ymin)

    def _keys(self, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError

    def chunk_of(self, x: float, y: float) -> Tuple[int, int]:
        a, b = self._keys(np.asarray([x], dtype=np.float64), np.asarray([y], dtype=np.float64))
        return int(a[0]), int(b[0])

    def assign(self, xs, ys) -> np.ndarray:
        """Dense chunk id per point, ids ordered by chunk key."""
        a, b = self._keys(np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64))
        if len(a) == 0:
            return np.zeros(0, dtype=np.int64)
        _, inverse = np.unique(np.column_stack([a, b]), axis=0, return_inverse=True)
        return inverse.reshape(-1).astype(np.int64)

    def chunks(self, xs, ys) -> List[Tuple[Tuple[int, int], np.ndarray]]:
        """Non-empty chunks as (key, point indices), in key order."""
        a, b = self._keys(np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64))
        if len(a) == 0:
            return []
        keys, inverse = np.unique(np.column_stack([a, b]), axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        order = np.argsort(inverse, kind="stable")
        bounds = np.searchsorted(inverse[order], np.arange(len(keys) + 1))
        return [
            ((int(keys[i, 0]), int(keys[i, 1])), order[bounds[i]:bounds[i + 1]])
            for i in range(len(keys))
        ]


class SquareChunker(_Chunker):
    """Axis-aligned square grid anchored at (xmin, ymin)."""

    def _keys(self, xs, ys):
        a = np.floor((xs - self.xmin) / self.size).astype(np.int64)
        b = np.floor((ys - self.ymin) / self.size).astype(np.int64)
        return a, b


class HexChunker(_Chunker):
    """Pointy-top hexagonal grid; each hexagon has area size**2.

    Keys are axial (q, r) coordinates obtained by cube rounding, so every point
    lands in exactly one hexagon.
    """

    def __init__(self, size: float, xmin: float = 0.0, ymin: float = 0.0):
        super().__init__(size, xmin, ymin)
        # hexagon area 3*sqrt(3)/2 * R^2 == size^2
        self.radius = self.size / math.sqrt(1.5 * SQRT_3)

    def _keys(self, xs, ys):
        px = (xs - self.xmin) / self.radius
        py = (ys - self.ymin) / self.radius
        q = SQRT_3 / 3.0 * px - py / 3.0
        r = 2.0 / 3.0 * py
        s = -q - r

        rq, rr, rs = np.rint(q), np.rint(r), np.rint(s)
        dq, dr, ds = np.abs(rq - q), np.abs(rr - r), np.abs(rs - s)
        fix_q = (dq > dr) & (dq > ds)
        fix_r = ~fix_q & (dr > ds)
        rq = np.where(fix_q, -rr - rs, rq)
        rr = np.where(fix_r, -rq - rs, rr)
        return rq.astype(np.int64), rr.astype(np.int64)
