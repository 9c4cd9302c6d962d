import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy.special import gammaln

from .transcripts import BACKGROUND_CELL, TranscriptCatalog


LOG_2PI = math.log(2.0 * math.pi)


@dataclass(frozen=True)
class ModelPriors:
    """Hyperparameters fixed before sampling starts."""

    min_cell_area: float
    # log-normal cell area: mu_a ~ N(mu_mu_a, sigma_mu_a^2), sigma_a^2 ~ InvGamma(alpha_sigma_a, beta_sigma_a)
    mu_mu_a: float
    sigma_mu_a: float = 3.0
    alpha_sigma_a: float = 0.1
    beta_sigma_a: float = 0.1
    # negative binomial counts: p ~ Beta(alpha_theta, beta_theta), r ~ Gamma(e_r, f_r)
    alpha_theta: float = 1.0
    beta_theta: float = 1.0
    e_r: float = 1.0
    f_r: float = 1.0
    # background probability q ~ Beta(alpha_q, beta_q)
    alpha_q: float = 1.0
    beta_q: float = 1.0
    # mixture weights pi ~ Dirichlet(alpha_pi)
    alpha_pi: float = 1.0

    @classmethod
    def calibrate(
        cls,
        avg_edge_length: float,
        ntranscripts: int,
        ncells: int,
        full_area: float,
        background_prob: float,
    ) -> "ModelPriors":
        if not avg_edge_length > 0:
            raise ValueError(f"Average edge length must be positive to calibrate priors, got {avg_edge_length}.")
        if not 0.0 < background_prob < 1.0:
            raise ValueError(f"background_prob must be in (0, 1), got {background_prob}.")
        mu_mu_a = math.log(avg_edge_length * avg_edge_length * ntranscripts / max(ncells, 1))
        # strength: how many prior-mean-sized cells fit in the modeled region
        strength = max(2.0, float(full_area) / math.exp(mu_mu_a)) if full_area > 0 else 2.0
        return cls(
            min_cell_area=float(avg_edge_length),
            mu_mu_a=mu_mu_a,
            alpha_q=background_prob * strength,
            beta_q=(1.0 - background_prob) * strength,
        )


def _negbin_count_terms(n, r, log_p):
    return gammaln(n + r) - gammaln(r) - gammaln(n + 1.0) + n * log_p


def negbin_logpmf(n, r, log_p, log1m_p):
    """log NB(n; r, p) with pmf Gamma(n+r)/(Gamma(r) n!) p^n (1-p)^r."""
    return _negbin_count_terms(n, r, log_p) + r * log1m_p


def lognormal_logpdf(a, mu, sigma):
    la = np.log(a)
    return -la - np.log(sigma) - 0.5 * LOG_2PI - 0.5 * ((la - mu) / sigma) ** 2


def _lognormal_logpdf_scalar(a: float, mu: float, sigma: float) -> float:
    la = math.log(a)
    return -la - math.log(sigma) - 0.5 * LOG_2PI - 0.5 * ((la - mu) / sigma) ** 2


class ModelParams:
    """Mutable posterior state.

    `counts[g, c]`, `cell_population[c]` and `cell_area[c]` are sufficient
    statistics of `cell_assignments` and are updated incrementally by
    `apply_move`; `check_consistency` recomputes them from scratch.
    """

    def __init__(
        self,
        priors: ModelPriors,
        full_area: float,
        catalog: TranscriptCatalog,
        transcript_areas: np.ndarray,
        ncomponents: int,
        background_prob: float,
    ):
        if ncomponents <= 0:
            raise ValueError(f"ncomponents must be positive, got {ncomponents}.")
        self.priors = priors
        self.full_area = float(full_area)
        self.ncells = catalog.ncells
        self.ngenes = catalog.ngenes
        self.ntranscripts = len(catalog)
        self.ncomponents = int(ncomponents)

        self.transcript_genes = catalog.gene.astype(np.int64)
        self.transcript_areas = np.asarray(transcript_areas, dtype=np.float64)
        self.cell_assignments = np.array(catalog.init_assignments, dtype=np.uint32, copy=True)

        self.counts = np.zeros((self.ngenes, self.ncells), dtype=np.int64)
        self.cell_population = np.zeros(self.ncells, dtype=np.int64)
        self.cell_area = np.zeros(self.ncells, dtype=np.float64)
        self.background_counts = np.zeros(self.ngenes, dtype=np.int64)
        self.nbackground = 0
        self.recount()

        K, G = self.ncomponents, self.ngenes
        self.z = (np.arange(self.ncells) % K).astype(np.int64)
        self.pi = np.full(K, 1.0 / K)
        self.p = np.full((K, G), 0.5)
        self.r = np.ones(K)
        self.mu_a = np.full(K, priors.mu_mu_a)
        self.sigma_a = np.full(K, priors.sigma_mu_a)
        self.q = float(background_prob)
        self.bg_gene = np.full(G, 1.0 / G) if G else np.zeros(0)
        self.refresh()

    def recount(self) -> None:
        """Rebuild all sufficient statistics from `cell_assignments`."""
        self.counts, self.cell_population, self.cell_area, self.background_counts = self._tally()
        self.nbackground = int(self.background_counts.sum())

    def _tally(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        assigned = self.cell_assignments != BACKGROUND_CELL
        cells = self.cell_assignments[assigned].astype(np.int64)
        genes = self.transcript_genes[assigned]
        counts = np.zeros((self.ngenes, self.ncells), dtype=np.int64)
        np.add.at(counts, (genes, cells), 1)
        population = np.bincount(cells, minlength=self.ncells).astype(np.int64)
        area = np.bincount(cells, weights=self.transcript_areas[assigned], minlength=self.ncells)
        background = np.bincount(self.transcript_genes[~assigned], minlength=self.ngenes).astype(np.int64)
        return counts, population, area, background

    def refresh(self) -> None:
        """Recompute cached logs after the global parameters change."""
        self.log_p = np.log(self.p)
        self.log1m_p = np.log1p(-self.p)
        self.log_pi = np.log(self.pi)
        self.log_q = math.log(self.q)
        self.log1m_q = math.log1p(-self.q)
        self.log_bg_gene = np.log(self.bg_gene)

    def effective_areas(self) -> np.ndarray:
        return np.maximum(self.cell_area, self.priors.min_cell_area)

    def nunassigned(self) -> int:
        return int(np.count_nonzero(self.cell_assignments == BACKGROUND_CELL))

    # --- local move terms; callers hold the locks of every cell they touch ---

    def area_log_likelihood(self, c: int, area: float) -> float:
        k = self.z[c]
        return _lognormal_logpdf_scalar(max(area, self.priors.min_cell_area), self.mu_a[k], self.sigma_a[k])

    def delta_add(self, c: int, g: int, area: float) -> float:
        """Log-likelihood change of cell c gaining a transcript of gene g."""
        k = self.z[c]
        n = self.counts[g, c]
        a = self.cell_area[c]
        delta = math.log(n + self.r[k]) - math.log(n + 1.0) + self.log_p[k, g] + self.log1m_q
        return delta + self.area_log_likelihood(c, a + area) - self.area_log_likelihood(c, a)

    def delta_remove(self, c: int, g: int, area: float) -> float:
        """Log-likelihood change of cell c losing a transcript of gene g."""
        k = self.z[c]
        n = self.counts[g, c]
        a = self.cell_area[c]
        delta = -(math.log(n - 1.0 + self.r[k]) - math.log(n) + self.log_p[k, g] + self.log1m_q)
        return delta + self.area_log_likelihood(c, a - area) - self.area_log_likelihood(c, a)

    def background_term(self, g: int) -> float:
        return self.log_q + self.log_bg_gene[g]

    def apply_move(self, i: int, dst: int) -> None:
        src = int(self.cell_assignments[i])
        g = self.transcript_genes[i]
        area = self.transcript_areas[i]
        if src == BACKGROUND_CELL:
            self.background_counts[g] -= 1
            self.nbackground -= 1
        else:
            self.counts[g, src] -= 1
            self.cell_population[src] -= 1
            self.cell_area[src] -= area
        if dst == BACKGROUND_CELL:
            self.background_counts[g] += 1
            self.nbackground += 1
        else:
            self.counts[g, dst] += 1
            self.cell_population[dst] += 1
            self.cell_area[dst] += area
        self.cell_assignments[i] = dst

    # --- full evaluations ---

    def nonzero_counts(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        genes, cells = np.nonzero(self.counts)
        return genes, cells, self.counts[genes, cells].astype(np.float64)

    def component_log_likelihood(self, k: int, nz=None) -> np.ndarray:
        """Per-cell log p(counts, area, z=k) under component k."""
        genes, cells, n = self.nonzero_counts() if nz is None else nz
        r = self.r[k]
        ll = np.full(self.ncells, r * self.log1m_p[k].sum() + self.log_pi[k])
        if len(n):
            terms = _negbin_count_terms(n, r, self.log_p[k, genes])
            ll += np.bincount(cells, weights=terms, minlength=self.ncells)
        ll += lognormal_logpdf(self.effective_areas(), self.mu_a[k], self.sigma_a[k])
        return ll

    def log_likelihood(self) -> float:
        genes, cells, n = self.nonzero_counts()
        z_nz = self.z[cells]
        total = 0.0
        if len(n):
            total += float(_negbin_count_terms(n, self.r[z_nz], self.log_p[z_nz, genes]).sum())
        if self.ncells:
            # zero-count genes contribute only r log(1 - p)
            total += float((self.r[self.z] * self.log1m_p.sum(axis=1)[self.z]).sum())
            total += float(lognormal_logpdf(self.effective_areas(), self.mu_a[self.z], self.sigma_a[self.z]).sum())
            total += float(self.log_pi[self.z].sum())
        total += (self.ntranscripts - self.nbackground) * self.log1m_q
        total += self.nbackground * self.log_q + float((self.background_counts * self.log_bg_gene).sum())
        if not math.isfinite(total):
            raise FloatingPointError(f"Non-finite log-likelihood: {total}")
        return total

    def check_consistency(self) -> None:
        """Raise RuntimeError if any invariant of the assignment state is broken."""
        assigned = self.cell_assignments != BACKGROUND_CELL
        if self.ncells and np.any(self.cell_assignments[assigned] >= self.ncells):
            raise RuntimeError("Cell assignment out of range.")
        counts, population, area, background = self._tally()
        if self.counts.shape != (self.ngenes, self.ncells):
            raise RuntimeError("ncells changed during sampling.")
        if not np.array_equal(counts, self.counts):
            raise RuntimeError("Count matrix out of sync with cell assignments.")
        if not np.array_equal(population, self.cell_population):
            raise RuntimeError("Cell population out of sync with cell assignments.")
        if not np.array_equal(self.counts.sum(axis=0), self.cell_population):
            raise RuntimeError("Cell population does not equal the column sums of counts.")
        if not np.allclose(area, self.cell_area, rtol=1e-6, atol=1e-6):
            raise RuntimeError("Cell area out of sync with cell assignments.")
        if not np.array_equal(background, self.background_counts) or self.nbackground != int(background.sum()):
            raise RuntimeError("Background tallies out of sync with cell assignments.")
        if int(self.cell_population.sum()) + self.nbackground != self.ntranscripts:
            raise RuntimeError("Transcript count not conserved.")
        if not np.isclose(self.pi.sum(), 1.0) or np.any(self.pi < 0):
            raise RuntimeError("Mixture weights are not normalized.")
        if np.any(self.r <= 0) or np.any((self.p <= 0) | (self.p >= 1)):
            raise RuntimeError("Negative binomial parameters out of range.")
