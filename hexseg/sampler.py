import logging
import math
import threading
from typing import List, Optional, Union

import numpy as np
from joblib import Parallel, delayed

from .chunks import HexChunker
from .diagnostics import ProposalStats
from .graph import NeighborhoodGraph
from .model import ModelParams
from .transcripts import BACKGROUND_CELL, TranscriptCatalog


logger = logging.getLogger("hexseg")

PROB_EPS = 1e-6
MIN_DISPERSION = 1e-3
SIGMA_RANGE = (1e-3, 1e3)


class HexBinSampler:
    """MCMC over cell regions and mixture parameters.

    Transcripts are split into hexagonal chunks of side-equivalent `chunk_size`.
    A local step runs one task per chunk on a thread pool; every accepted move
    holds the locks of both cells it touches (background has its own lock), so
    the count, population and area aggregates never see a partial update.
    The global step runs after the local tasks have joined.

    Use as a context manager to keep the worker pool alive across steps.
    """

    def __init__(
        self,
        params: ModelParams,
        catalog: TranscriptCatalog,
        graph: NeighborhoodGraph,
        chunk_size: float,
        nworkers: int = 1,
        seed: Union[int, np.random.SeedSequence, None] = 0,
        background_proposal_prob: float = 0.1,
        proposal_fraction: float = 0.05,
    ):
        if len(graph) != len(catalog) or params.ntranscripts != len(catalog):
            raise ValueError("Graph, model state and transcript table disagree on the number of transcripts.")
        self.params = params
        self.graph = graph
        self.nworkers = max(1, int(nworkers))
        self.background_proposal_prob = float(background_proposal_prob)
        self.proposal_fraction = float(proposal_fraction)

        xmin = float(catalog.x.min()) if len(catalog) else 0.0
        ymin = float(catalog.y.min()) if len(catalog) else 0.0
        self.chunker = HexChunker(chunk_size, xmin, ymin)
        self.chunks: List[np.ndarray] = [idx for _, idx in self.chunker.chunks(catalog.x, catalog.y)]

        self._cell_locks = [threading.Lock() for _ in range(params.ncells)]
        self._background_lock = threading.Lock()

        self._seed_seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
        self.rng = np.random.default_rng(self._seed_seq.spawn(1)[0])
        self._parallel: Optional[Parallel] = None

    def __enter__(self) -> "HexBinSampler":
        self._parallel = Parallel(n_jobs=self.nworkers, backend="threading")
        self._parallel.__enter__()
        return self

    def __exit__(self, *exc) -> None:
        parallel, self._parallel = self._parallel, None
        if parallel is not None:
            parallel.__exit__(*exc)

    def _run(self, tasks):
        if self._parallel is not None:
            return self._parallel(tasks)
        return Parallel(n_jobs=self.nworkers, backend="threading")(tasks)

    def _lock(self, cell: int) -> threading.Lock:
        return self._background_lock if cell == BACKGROUND_CELL else self._cell_locks[cell]

    # ---- local moves ----

    def sample_cell_regions(self, proposal_stats: ProposalStats) -> None:
        """One local step: a batch of transcript reassignments in every chunk."""
        if not self.chunks:
            return
        seeds = self._seed_seq.spawn(len(self.chunks))
        results = self._run(
            delayed(self._sample_chunk)(idx, seed) for idx, seed in zip(self.chunks, seeds)
        )
        for stats in results:
            proposal_stats.merge(stats)

    def _sample_chunk(self, idx: np.ndarray, seed: np.random.SeedSequence) -> ProposalStats:
        params = self.params
        assignments = params.cell_assignments
        genes = params.transcript_genes
        areas = params.transcript_areas
        population = params.cell_population
        indptr, indices = self.graph.indptr, self.graph.indices
        stats = ProposalStats()

        rng = np.random.default_rng(seed)
        nproposals = max(1, math.ceil(self.proposal_fraction * len(idx)))
        picks = idx[rng.integers(0, len(idx), size=nproposals)]
        uniforms = rng.random((nproposals, 3))

        for t in range(nproposals):
            i = int(picks[t])
            u_bg, u_nb, u_acc = uniforms[t]
            src = int(assignments[i])
            j = -1
            if src != BACKGROUND_CELL and u_bg < self.background_proposal_prob:
                dst = BACKGROUND_CELL
            else:
                start, stop = indptr[i], indptr[i + 1]
                if stop == start:
                    continue
                j = int(indices[start + int(u_nb * (stop - start))])
                dst = int(assignments[j])
            if dst == src:
                continue
            if src != BACKGROUND_CELL and population[src] <= 1:
                continue

            if src == BACKGROUND_CELL:
                kind = "background_to_cell"
            elif dst == BACKGROUND_CELL:
                kind = "cell_to_background"
            else:
                kind = "cell_to_cell"

            locks = [self._lock(c) for c in sorted((src, dst))]
            for lock in locks:
                lock.acquire()
            try:
                # the neighbour may have left dst since it was read
                if j >= 0 and int(assignments[j]) != dst:
                    stats.record_stale()
                    continue
                # cells keep at least one transcript
                if src != BACKGROUND_CELL and population[src] <= 1:
                    continue
                g = int(genes[i])
                a = float(areas[i])
                if src == BACKGROUND_CELL:
                    delta = -params.background_term(g)
                else:
                    delta = params.delta_remove(src, g, a)
                if dst == BACKGROUND_CELL:
                    delta += params.background_term(g)
                else:
                    delta += params.delta_add(dst, g, a)
                accept = delta >= 0.0 or u_acc < math.exp(delta)
                if accept:
                    params.apply_move(i, dst)
                stats.record(kind, accept)
            finally:
                for lock in reversed(locks):
                    lock.release()
        return stats

    # ---- global moves ----

    def sample_global_params(self) -> None:
        """Resample z, pi, p, r, area parameters, q and background gene frequencies."""
        params = self.params
        priors = params.priors
        rng = self.rng
        K = params.ncomponents
        nz = params.nonzero_counts()
        genes, cells, n = nz

        if params.ncells:
            columns = self._run(
                delayed(params.component_log_likelihood)(k, nz) for k in range(K)
            )
            logpost = np.column_stack(columns)
            if not np.all(np.isfinite(logpost)):
                raise FloatingPointError("Non-finite component log-likelihood while resampling z.")
            # Gumbel-max draw from each cell's categorical posterior
            params.z = np.argmax(logpost + rng.gumbel(size=logpost.shape), axis=1).astype(np.int64)

        z = params.z
        sizes = np.bincount(z, minlength=K)
        params.pi = rng.dirichlet(priors.alpha_pi + sizes)

        component_counts = np.zeros((K, params.ngenes))
        if len(n):
            np.add.at(component_counts, (z[cells], genes), n)
        p = rng.beta(
            priors.alpha_theta + component_counts,
            priors.beta_theta + (sizes * params.r)[:, None],
        )
        params.p = np.clip(p, PROB_EPS, 1.0 - PROB_EPS)

        tables = self._sample_crt(n, z[cells], params.r, K)
        rate = priors.f_r - sizes * np.log1p(-params.p).sum(axis=1)
        params.r = np.maximum(rng.gamma(priors.e_r + tables, 1.0 / rate), MIN_DISPERSION)

        self._sample_area_params(sizes)

        nassigned = params.ntranscripts - params.nbackground
        q = rng.beta(priors.alpha_q + params.nbackground, priors.beta_q + nassigned)
        params.q = float(np.clip(q, PROB_EPS, 1.0 - PROB_EPS))
        if params.ngenes:
            params.bg_gene = np.maximum(rng.dirichlet(1.0 + params.background_counts), 1e-300)

        for name in ("pi", "p", "r", "mu_a", "sigma_a", "bg_gene"):
            if not np.all(np.isfinite(getattr(params, name))):
                raise FloatingPointError(f"Non-finite values in resampled parameter '{name}'.")
        params.refresh()

    def _sample_crt(self, n: np.ndarray, comp: np.ndarray, r: np.ndarray, K: int) -> np.ndarray:
        """Chinese restaurant table counts per component, L ~ CRT(n, r[comp])."""
        if len(n) == 0:
            return np.zeros(K)
        reps = n.astype(np.int64)
        entry = np.repeat(np.arange(len(reps)), reps)
        offsets = np.cumsum(reps) - reps
        seat = np.arange(len(entry)) - np.repeat(offsets, reps)
        r_entry = r[comp[entry]]
        new_table = self.rng.random(len(entry)) < r_entry / (r_entry + seat)
        return np.bincount(comp[entry][new_table], minlength=K).astype(np.float64)

    def _sample_area_params(self, sizes: np.ndarray) -> None:
        params = self.params
        priors = params.priors
        rng = self.rng
        K = params.ncomponents
        z = params.z
        log_area = np.log(params.effective_areas())

        prior_prec = 1.0 / priors.sigma_mu_a ** 2
        sigma2 = params.sigma_a ** 2
        prec = prior_prec + sizes / sigma2
        mean = (priors.mu_mu_a * prior_prec + np.bincount(z, weights=log_area, minlength=K) / sigma2) / prec
        params.mu_a = rng.normal(mean, 1.0 / np.sqrt(prec))

        sq = np.bincount(z, weights=(log_area - params.mu_a[z]) ** 2, minlength=K)
        shape = priors.alpha_sigma_a + sizes / 2.0
        rate = priors.beta_sigma_a + sq / 2.0
        params.sigma_a = np.clip(np.sqrt(1.0 / rng.gamma(shape, 1.0 / rate)), *SIGMA_RANGE)
