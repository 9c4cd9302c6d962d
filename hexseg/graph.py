import logging
from typing import Tuple

import numpy as np
import scipy.sparse as sp
from sklearn.neighbors import KDTree

from .transcripts import TranscriptCatalog


logger = logging.getLogger("hexseg")

DEFAULT_KNN = 16


def _build_kdtree(points: np.ndarray) -> KDTree:
    n = points.shape[0]
    leaf = max(20, min(64, n // 10 if n >= 100 else 20))
    return KDTree(points, leaf_size=leaf)


def _kdtree_query(kdt: KDTree, queries: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """Query a prebuilt KDTree; returns (indices, distances) with rows sorted by distance."""
    # breadth_first/sort_results improve determinism
    dist, ind = kdt.query(queries, k=k, return_distance=True, breadth_first=True, sort_results=True)
    ind = np.asarray(ind)
    if ind.dtype != np.int64:
        ind = ind.astype(np.int64, copy=False)
    return ind, dist


def _quadrant_hits(
    points: np.ndarray, rows: np.ndarray, ind: np.ndarray, dist: np.ndarray, radius: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Nearest candidate within `radius` per (source row, xy quadrant)."""
    k = ind.shape[1]
    src = np.repeat(rows, k)
    dst = ind.ravel()
    valid = (dst != src) & (dist.ravel() <= radius)
    src, dst = src[valid], dst[valid]

    dx = points[dst, 0] - points[src, 0]
    dy = points[dst, 1] - points[src, 1]
    quadrant = (dx >= 0).astype(np.int64) + 2 * (dy >= 0).astype(np.int64)
    # candidates are distance-sorted per source, so the first hit per (source, quadrant) is the nearest
    _, first = np.unique(src * 4 + quadrant, return_index=True)
    return src[first], dst[first]


class NeighborhoodGraph:
    """Undirected transcript adjacency stored in CSR form, both directions per edge."""

    def __init__(self, adjacency: sp.csr_matrix, transcript_areas: np.ndarray, avg_edge_length: float):
        self.adjacency = adjacency
        self.indptr = adjacency.indptr
        self.indices = adjacency.indices
        self.transcript_areas = transcript_areas
        self.avg_edge_length = float(avg_edge_length)

    def __len__(self) -> int:
        return self.adjacency.shape[0]

    def edge_count(self) -> int:
        return int(self.adjacency.nnz)

    def neighbors(self, i: int) -> np.ndarray:
        return self.indices[self.indptr[i]:self.indptr[i + 1]]

    def degree(self) -> np.ndarray:
        return np.diff(self.indptr)

    def is_symmetric(self) -> bool:
        return (self.adjacency != self.adjacency.T).nnz == 0


def neighborhood_graph(catalog: TranscriptCatalog, radius: float, knn: int = DEFAULT_KNN) -> NeighborhoodGraph:
    """Quadrant nearest-neighbour graph over transcripts.

    For every transcript the nearest transcript in each of the four xy
    quadrants is connected when it lies within `radius`; the directed choices
    are merged into a symmetric adjacency. Candidates start from a `knn`
    nearest-neighbour query; a transcript with an empty quadrant is re-queried
    with twice as many candidates until every quadrant is filled or the
    candidates reach past `radius`. Also derives a per-transcript area
    (inverse local density from the first `knn` query) and the average edge
    length.
    """
    n = len(catalog)
    if n < 2:
        raise ValueError(f"Cannot build a neighborhood graph from {n} transcript(s).")
    if not radius > 0:
        raise ValueError(f"Neighborhood radius must be positive, got {radius}.")

    points = catalog.positions().astype(np.float64)
    kdt = _build_kdtree(points)
    k = min(int(knn) + 1, n)
    ind, dist = _kdtree_query(kdt, points, k)

    # area = 1 / local density, density = k / (pi r_k^2) with self included in k
    rk = dist[:, k - 1].astype(np.float64) + 1e-3
    transcript_areas = np.pi * rk * rk / k

    rows = np.arange(n, dtype=np.int64)
    srcs, dsts = [], []
    nrequery = 0
    while True:
        src, dst = _quadrant_hits(points, rows, ind, dist, radius)
        found = np.bincount(src, minlength=n)[rows]
        done = (found == 4) | (dist[:, -1] > radius) | (k >= n)
        keep = done[np.searchsorted(rows, src)]
        srcs.append(src[keep])
        dsts.append(dst[keep])
        rows = rows[~done]
        if rows.size == 0:
            break
        nrequery += rows.size
        k = min(2 * k, n)
        ind, dist = _kdtree_query(kdt, points[rows], k)
    src, dst = np.concatenate(srcs), np.concatenate(dsts)
    if nrequery:
        logger.debug("Re-queried %d transcripts with open quadrants", nrequery)

    directed = sp.coo_matrix((np.ones(len(src), dtype=np.int8), (src, dst)), shape=(n, n)).tocsr()
    adjacency = (directed + directed.T).tocsr()
    adjacency.data[:] = 1
    adjacency.sort_indices()

    upper = sp.triu(adjacency, k=1).tocoo()
    if upper.nnz == 0:
        raise ValueError(
            f"Neighborhood graph is empty: no transcripts within radius {radius:.4g} of each other."
        )
    edge_lengths = np.linalg.norm(points[upper.row] - points[upper.col], axis=1)
    avg_edge_length = float(edge_lengths.mean())

    logger.info(
        "Built neighborhood graph with %d edges (average edge length %.4g)",
        adjacency.nnz // 2, avg_edge_length,
    )
    return NeighborhoodGraph(adjacency, transcript_areas, avg_edge_length)
