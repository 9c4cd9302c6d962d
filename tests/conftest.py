from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from hexseg.logging_utils import reset_logger
from hexseg.transcripts import TranscriptCatalog


@pytest.fixture(autouse=True)
def _isolated_logger():
    yield
    reset_logger()


def make_catalog(ncells=6, per_cell=25, nbackground=40, ngenes=5, seed=0, spacing=10.0, z=False):
    """Cells on a grid with gaussian transcript clouds, a cell-type gene profile
    per cell, and uniform background. About a third of each cell's transcripts
    start unassigned."""
    rng = np.random.default_rng(seed)
    side = int(np.ceil(np.sqrt(ncells)))
    xs, ys, genes, assign = [], [], [], []
    for c in range(ncells):
        cx, cy = (c % side) * spacing, (c // side) * spacing
        profile = rng.dirichlet(np.ones(ngenes) * 0.5)
        xs.append(rng.normal(cx, 1.5, per_cell))
        ys.append(rng.normal(cy, 1.5, per_cell))
        genes.append(rng.choice(ngenes, size=per_cell, p=profile))
        a = np.full(per_cell, c)
        a[rng.random(per_cell) < 0.33] = -1
        a[0] = c
        assign.append(a)
    extent = side * spacing
    xs.append(rng.uniform(-spacing / 2, extent, nbackground))
    ys.append(rng.uniform(-spacing / 2, extent, nbackground))
    genes.append(rng.integers(0, ngenes, nbackground))
    assign.append(np.full(nbackground, -1))
    x = np.concatenate(xs)
    return TranscriptCatalog.from_arrays(
        [f"gene{g}" for g in range(ngenes)],
        x,
        np.concatenate(ys),
        np.concatenate(genes),
        np.concatenate(assign),
        z=rng.normal(0.0, 0.5, len(x)) if z else None,
    )


def write_transcript_csv(path, x, y, genes, cell_ids, overlaps=None, qv=None, z=None):
    n = len(x)
    df = pd.DataFrame({
        "transcript_id": np.arange(n),
        "cell_id": cell_ids,
        "overlaps_nucleus": np.ones(n, dtype=int) if overlaps is None else overlaps,
        "feature_name": genes,
        "x_location": x,
        "y_location": y,
        "qv": np.full(n, 40.0) if qv is None else qv,
    })
    if z is not None:
        df["z_location"] = z
    df.to_csv(path, index=False)
    return path


@pytest.fixture
def catalog():
    return make_catalog()
