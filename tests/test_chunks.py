from __future__ import annotations

import math

import numpy as np
import pytest

from hexseg.chunks import HexChunker, SquareChunker, count_square_chunks, find_chunk_size


@pytest.mark.parametrize(
    "ncells, xspan, yspan, nworkers",
    [
        (0, 100.0, 100.0, 4),
        (1, 100.0, 100.0, 8),
        (50, 1000.0, 10.0, 2),
        (10000, 2000.0, 2000.0, 16),
        (500, 0.0, 0.0, 1),
    ],
)
def test_find_chunk_size_meets_cells_per_chunk(ncells, xspan, yspan, nworkers):
    size, nchunks = find_chunk_size(ncells, xspan, yspan, nworkers, chunk_factor=4, max_cells_per_chunk=100)
    assert size > 0
    assert nchunks == count_square_chunks(size, xspan, yspan)
    assert ncells / nchunks >= min(ncells, 100)


def test_find_chunk_size_starts_from_even_split():
    # plenty of cells: the initial split already satisfies the bound
    size, nchunks = find_chunk_size(10 ** 6, 400.0, 400.0, nworkers=4, chunk_factor=4)
    assert size == pytest.approx(100.0)
    assert nchunks == 16


def test_find_chunk_size_grows_by_sqrt2():
    base, _ = find_chunk_size(10 ** 9, 400.0, 400.0, nworkers=4, chunk_factor=4)
    size, _ = find_chunk_size(300, 400.0, 400.0, nworkers=4, chunk_factor=4)
    ratio = math.log(size / base, math.sqrt(2.0))
    assert ratio == pytest.approx(round(ratio))
    assert size > base


def _points(n=2000, seed=0):
    rng = np.random.default_rng(seed)
    return rng.uniform(-30, 70, n), rng.uniform(5, 60, n)


def test_hex_chunks_partition_points():
    xs, ys = _points()
    chunker = HexChunker(12.0, xmin=-30.0, ymin=5.0)
    chunks = chunker.chunks(xs, ys)
    seen = np.concatenate([idx for _, idx in chunks])
    assert np.array_equal(np.sort(seen), np.arange(len(xs)))
    keys = [key for key, _ in chunks]
    assert keys == sorted(keys)
    assert all(len(idx) > 0 for _, idx in chunks)


def test_hex_chunk_of_agrees_with_assign():
    xs, ys = _points(300, seed=1)
    chunker = HexChunker(7.5)
    ids = chunker.assign(xs, ys)
    by_key = {}
    for i in range(len(xs)):
        key = chunker.chunk_of(xs[i], ys[i])
        by_key.setdefault(key, set()).add(int(ids[i]))
    # one dense id per key and distinct keys get distinct ids
    assert all(len(v) == 1 for v in by_key.values())
    assert len({next(iter(v)) for v in by_key.values()}) == len(by_key)


def test_hex_chunk_members_are_within_one_hexagon():
    xs, ys = _points(seed=2)
    chunker = HexChunker(10.0)
    assert 1.5 * math.sqrt(3.0) * chunker.radius ** 2 == pytest.approx(100.0)
    for _, idx in chunker.chunks(xs, ys):
        px, py = xs[idx], ys[idx]
        d = np.hypot(px[:, None] - px[None, :], py[:, None] - py[None, :])
        assert d.max() <= 2 * chunker.radius + 1e-9


def test_hex_chunk_centre_point():
    chunker = HexChunker(10.0)
    assert chunker.chunk_of(0.0, 0.0) == (0, 0)
    assert chunker.chunk_of(0.1 * chunker.radius, -0.1 * chunker.radius) == (0, 0)


def test_square_chunker():
    chunker = SquareChunker(10.0, xmin=0.0, ymin=0.0)
    assert chunker.chunk_of(0.0, 0.0) == (0, 0)
    assert chunker.chunk_of(9.99, 10.0) == (0, 1)
    ids = chunker.assign([1.0, 15.0, 2.0, 25.0], [1.0, 1.0, 3.0, 1.0])
    assert ids.tolist() == [0, 1, 0, 2]


def test_empty_input_has_no_chunks():
    chunker = HexChunker(5.0)
    assert chunker.chunks([], []) == []
    assert chunker.assign([], []).shape == (0,)


@pytest.mark.parametrize("size", [0.0, -1.0, float("nan")])
def test_non_positive_chunk_size_raises(size):
    with pytest.raises(ValueError):
        HexChunker(size)
