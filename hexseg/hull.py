import gzip
import logging
import math
from typing import List, Tuple

import geojson
import numpy as np
from shapely.geometry import MultiPoint, mapping
from shapely.geometry.base import BaseGeometry

from .transcripts import BACKGROUND_CELL, TranscriptCatalog, coordinate_span


logger = logging.getLogger("hexseg")


def compute_full_area(catalog: TranscriptCatalog) -> float:
    """Area of the convex hull of all transcript xy positions."""
    if len(catalog) == 0:
        return 0.0
    return float(MultiPoint(np.column_stack([catalog.x, catalog.y]).astype(np.float64)).convex_hull.area)


def estimate_full_area(catalog: TranscriptCatalog, mean_nucleus_area: float) -> float:
    """Total area of the square bins (side 2*sqrt(mean_nucleus_area)) holding any transcript."""
    if not mean_nucleus_area > 0:
        raise ValueError(f"mean_nucleus_area must be positive, got {mean_nucleus_area}.")
    xmin, xmax, ymin, ymax, _, _ = coordinate_span(catalog)
    binsize = 2.0 * math.sqrt(mean_nucleus_area)
    xbins = max(1, math.ceil((xmax - xmin) / binsize))
    ybins = max(1, math.ceil((ymax - ymin) / binsize))
    xbin = np.minimum(np.floor((catalog.x - xmin) / binsize).astype(np.int64), xbins - 1)
    ybin = np.minimum(np.floor((catalog.y - ymin) / binsize).astype(np.int64), ybins - 1)
    occupied = np.unique(xbin * ybins + ybin).size
    logger.debug("Occupied bins: %d of %d (bin size %.4g)", occupied, xbins * ybins, binsize)
    return occupied * binsize * binsize


def cell_hulls(catalog: TranscriptCatalog, cell_assignments: np.ndarray) -> List[Tuple[int, int, BaseGeometry]]:
    """(cell, population, convex hull) for every cell with at least one transcript."""
    assigned = np.flatnonzero(cell_assignments != BACKGROUND_CELL)
    if assigned.size == 0:
        return []
    cells = cell_assignments[assigned].astype(np.int64)
    order = np.argsort(cells, kind="stable")
    assigned, cells = assigned[order], cells[order]
    starts = np.flatnonzero(np.r_[True, cells[1:] != cells[:-1]])
    stops = np.r_[starts[1:], len(cells)]
    xy = np.column_stack([catalog.x, catalog.y]).astype(np.float64)
    hulls = []
    for start, stop in zip(starts, stops):
        members = assigned[start:stop]
        hulls.append((int(cells[start]), int(stop - start), MultiPoint(xy[members]).convex_hull))
    return hulls


def write_cell_hulls(path: str, catalog: TranscriptCatalog, cell_assignments: np.ndarray) -> int:
    """Write a gzipped GeoJSON FeatureCollection of cell hulls; returns the feature count."""
    features = [
        geojson.Feature(geometry=mapping(hull), properties={"cell": cell, "population": population})
        for cell, population, hull in cell_hulls(catalog, cell_assignments)
    ]
    with gzip.open(path, "wt", encoding="utf-8") as f:
        geojson.dump(geojson.FeatureCollection(features), f)
    return len(features)
