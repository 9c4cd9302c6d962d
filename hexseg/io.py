import logging
import os
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .transcripts import (
    BACKGROUND_CELL,
    CoordinateMode,
    TranscriptCatalog,
    postprocess_cell_assignments,
)


logger = logging.getLogger("hexseg")


def read_transcripts_csv(
    path: str,
    transcript_column: str = "feature_name",
    x_column: str = "x_location",
    y_column: str = "y_location",
    z_column: Optional[str] = None,
    min_qv: float = 0.0,
    cell_id_column: str = "cell_id",
    overlaps_nucleus_column: str = "overlaps_nucleus",
    qv_column: str = "qv",
) -> TranscriptCatalog:
    """Read a (optionally gzipped) Xenium-style transcript table.

    Rows with quality below `min_qv` are dropped. Genes get dense ids in
    first-seen order. A transcript starts in its cell only when the cell id is
    non-negative and it overlaps a nucleus; otherwise it starts as background.
    """
    required = [transcript_column, x_column, y_column, cell_id_column, overlaps_nucleus_column, qv_column]
    if z_column:
        required.append(z_column)
    header = pd.read_csv(path, nrows=0)
    missing = [c for c in required if c not in header.columns]
    if missing:
        raise ValueError(f"Missing columns in transcript file {path}: {missing}")

    df = pd.read_csv(path, usecols=required, dtype={transcript_column: str})
    qv = df[qv_column].to_numpy(dtype=np.float32)
    keep = qv >= min_qv
    nfiltered = int((~keep).sum())
    df = df.loc[keep]

    codes, names = pd.factorize(df[transcript_column], sort=False)
    cell_id = df[cell_id_column].to_numpy(dtype=np.int64)
    overlaps = df[overlaps_nucleus_column].to_numpy(dtype=np.int64)
    assignments = np.where((cell_id >= 0) & (overlaps > 0), cell_id, BACKGROUND_CELL).astype(np.uint32)

    x = df[x_column].to_numpy(dtype=np.float32)
    if z_column:
        mode = CoordinateMode.XYZ
        z = df[z_column].to_numpy(dtype=np.float32)
    else:
        mode = CoordinateMode.XY
        z = np.zeros_like(x)

    catalog = TranscriptCatalog(
        [str(n) for n in names],
        x,
        df[y_column].to_numpy(dtype=np.float32),
        z,
        codes.astype(np.uint32),
        assignments,
        postprocess_cell_assignments(assignments),
        mode=mode,
        nfiltered=nfiltered,
    )
    logger.info(
        "Read %d transcripts (%d genes, %d cells, %d filtered below qv %.1f)",
        len(catalog), catalog.ngenes, catalog.ncells, nfiltered, min_qv,
    )
    return catalog


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_counts(path: str, gene_names: Sequence[str], counts: np.ndarray) -> None:
    """Gene-by-cell counts as one row per cell, gene names as the header."""
    df = pd.DataFrame(np.asarray(counts).T, columns=list(gene_names))
    df.to_csv(path, index=False, compression="gzip")


def write_component_labels(path: str, cell_assignments: np.ndarray, z: np.ndarray) -> None:
    """Component label of each transcript's cell, -1 for background."""
    labels = np.full(len(cell_assignments), -1, dtype=np.int64)
    assigned = cell_assignments != BACKGROUND_CELL
    labels[assigned] = np.asarray(z)[cell_assignments[assigned].astype(np.int64)]
    pd.DataFrame({"z": labels}).to_csv(path, index=False, compression="gzip")


def write_cell_assignments(path: str, catalog: TranscriptCatalog, cell_assignments: np.ndarray) -> None:
    df = pd.DataFrame({
        "x": catalog.x,
        "y": catalog.y,
        "gene": np.asarray(catalog.gene_names, dtype=object)[catalog.gene.astype(np.int64)],
        "assignment": np.asarray(cell_assignments, dtype=np.uint32),
    })
    df.to_csv(path, index=False, compression="gzip")
