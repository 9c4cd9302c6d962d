import logging
import os
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .chunks import SquareChunker, find_chunk_size
from .config import SamplerStage, build_schedule, preferred_n_jobs, resolve_params, validate_params
from .diagnostics import ProposalStats
from .graph import NeighborhoodGraph, neighborhood_graph
from .hull import compute_full_area, estimate_full_area, write_cell_hulls
from .io import (
    ensure_dir,
    read_transcripts_csv,
    write_cell_assignments,
    write_component_labels,
    write_counts,
)
from .logging_utils import setup_logger
from .model import ModelParams, ModelPriors
from .sampler import HexBinSampler
from .transcripts import TranscriptCatalog, coordinate_span


logger = logging.getLogger("hexseg")


def run_hexbin_sampler(
    params: ModelParams,
    catalog: TranscriptCatalog,
    graph: NeighborhoodGraph,
    chunk_size: float,
    stage: SamplerStage,
    local_steps_per_iter: int,
    nworkers: int = 1,
    seed: Optional[np.random.SeedSequence] = None,
    background_proposal_prob: float = 0.1,
    proposal_fraction: float = 0.05,
    report_every: int = 100,
    check_invariants: bool = False,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> List[Dict[str, Any]]:
    """Run one schedule stage; returns one trace record per iteration.

    Per iteration: `local_steps_per_iter` local steps, a global resample, then
    the full log-likelihood. Global parameters used by iteration i's local
    steps are those produced at the end of iteration i-1.
    """
    trace = []
    sampler = HexBinSampler(
        params,
        catalog,
        graph,
        chunk_size * stage.chunk_scale,
        nworkers=nworkers,
        seed=seed,
        background_proposal_prob=background_proposal_prob,
        proposal_fraction=proposal_fraction,
    )
    logger.info(
        "Running sampler stage: chunk scale %.3g (%d hexagonal chunks), %d iterations",
        stage.chunk_scale, len(sampler.chunks), stage.niter,
    )
    proposal_stats = ProposalStats()
    with sampler:
        sampler.sample_global_params()
        for i in range(stage.niter):
            for _ in range(local_steps_per_iter):
                sampler.sample_cell_regions(proposal_stats)
            sampler.sample_global_params()
            if check_invariants:
                params.check_consistency()

            loglik = params.log_likelihood()
            record = {
                "iteration": i,
                "log_likelihood": loglik,
                "nunassigned": params.nunassigned(),
                "acceptance_rate": proposal_stats.acceptance_rate(),
                **proposal_stats.as_dict(),
            }
            trace.append(record)
            logger.debug("Log likelihood: %.6g %r", loglik, proposal_stats)
            if i % max(1, report_every) == 0:
                logger.info(
                    "Iteration %d: log likelihood %.6g, %d unassigned transcripts, acceptance %.3f",
                    i, loglik, record["nunassigned"], record["acceptance_rate"],
                )
                if progress_callback:
                    progress_callback(f"Sampling (scale {stage.chunk_scale:g}) · iteration {i + 1}/{stage.niter}")
            proposal_stats.reset()
    return trace


def _output_path(out_dir: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(out_dir, path)


def run_segmentation(
    transcript_csv: str,
    out_dir: str,
    params: Optional[Dict[str, Any]] = None,
    log_level: str = "INFO",
    progress_callback: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """
    Segment transcripts into cells and write the count, label, assignment and
    polygon tables.

    `params` is a resolved parameter dict (see `config.resolve_params`).
    Returns a dict with output paths and run summary values.
    """
    cfg = params if params is not None else resolve_params()
    validate_params(cfg)
    ensure_dir(out_dir)
    setup_logger(out_dir, level=log_level)
    logger.info("HexSeg segmentation start")

    outputs = {key: _output_path(out_dir, p) for key, p in cfg["output"].items()}
    for p in outputs.values():
        ensure_dir(os.path.dirname(os.path.abspath(p)))

    cols = cfg["columns"]
    if progress_callback: progress_callback("Reading transcripts")
    try:
        catalog = read_transcripts_csv(
            transcript_csv,
            transcript_column=cols["transcript"],
            x_column=cols["x"],
            y_column=cols["y"],
            z_column=cols.get("z"),
            min_qv=float(cfg["min_qv"]),
            cell_id_column=cols["cell_id"],
            overlaps_nucleus_column=cols["overlaps_nucleus"],
            qv_column=cols["qv"],
        )
    except Exception:
        logger.exception("Stage read_transcripts failed")
        raise
    if len(catalog) == 0:
        raise ValueError(f"No transcripts left in {transcript_csv} after filtering (min_qv={cfg['min_qv']}).")
    logger.debug("Cell centre columns: %s, %s", cols.get("cell_x"), cols.get("cell_y"))

    ntranscripts, ncells = len(catalog), catalog.ncells
    xmin, xmax, ymin, ymax, _, _ = coordinate_span(catalog)
    nworkers = preferred_n_jobs(cfg.get("nthreads"))
    logger.info("Using %d worker threads", nworkers)

    chunk_size, nchunks = find_chunk_size(
        ncells, xmax - xmin, ymax - ymin, nworkers,
        chunk_factor=int(cfg["chunk_factor"]),
        max_cells_per_chunk=int(cfg["max_cells_per_chunk"]),
    )
    occupied = len(SquareChunker(chunk_size, xmin, ymin).chunks(catalog.x, catalog.y))
    logger.info("Using grid size %.4g. Chunks: %d (%d occupied)", chunk_size, nchunks, occupied)

    if progress_callback: progress_callback("Building neighborhood graph")
    graph = neighborhood_graph(catalog, chunk_size / 2.0, knn=int(cfg["graph"]["knn"]))

    if cfg["full_area_method"] == "bins":
        mean_nucleus_area = graph.avg_edge_length ** 2 * ntranscripts / max(ncells, 1)
        full_area = estimate_full_area(catalog, mean_nucleus_area)
    else:
        full_area = compute_full_area(catalog)
    logger.info("Full area: %.6g", full_area)

    priors = ModelPriors.calibrate(
        graph.avg_edge_length, ntranscripts, ncells, full_area, float(cfg["background_prob"]),
    )
    model = ModelParams(
        priors,
        full_area,
        catalog,
        graph.transcript_areas,
        int(cfg["ncomponents"]),
        float(cfg["background_prob"]),
    )

    stages = build_schedule(cfg["schedule"], int(cfg["niter"]))
    if not stages:
        logger.warning("Iteration budget is zero; writing the initial assignments")
    stage_seeds = np.random.SeedSequence(int(cfg["seed"])).spawn(max(1, len(stages)))
    sampler_cfg = cfg["sampler"]
    trace: List[Dict[str, Any]] = []
    for stage, seed in zip(stages, stage_seeds):
        if progress_callback: progress_callback(f"Sampling (scale {stage.chunk_scale:g})")
        try:
            stage_trace = run_hexbin_sampler(
                model,
                catalog,
                graph,
                chunk_size,
                stage,
                int(cfg["local_steps_per_iter"]),
                nworkers=nworkers,
                seed=seed,
                background_proposal_prob=float(sampler_cfg["background_proposal_prob"]),
                proposal_fraction=float(sampler_cfg["proposal_fraction"]),
                report_every=int(cfg["report_every"]),
                check_invariants=bool(sampler_cfg["check_invariants"]),
                progress_callback=progress_callback,
            )
        except Exception:
            logger.exception("Sampler stage (chunk scale %g) failed", stage.chunk_scale)
            raise
        for rec in stage_trace:
            rec["chunk_scale"] = stage.chunk_scale
        trace.extend(stage_trace)

    if model.counts.shape[1] != ncells or len(model.z) != ncells:
        raise RuntimeError(f"Cell count changed during sampling: {ncells} -> {model.counts.shape[1]}")

    if progress_callback: progress_callback("Writing outputs")
    try:
        write_counts(outputs["counts"], catalog.gene_names, model.counts)
        write_component_labels(outputs["z"], model.cell_assignments, model.z)
        write_cell_assignments(outputs["cell_assignments"], catalog, model.cell_assignments)
        npolygons = write_cell_hulls(outputs["cell_polygons"], catalog, model.cell_assignments)
    except Exception:
        logger.exception("Stage write_outputs failed")
        raise
    logger.info("Wrote %d cell polygons", npolygons)
    logger.info("Segmentation finished: %d cells, %d unassigned transcripts", ncells, model.nunassigned())

    return {
        **outputs,
        "ntranscripts": ntranscripts,
        "ncells": ncells,
        "nunassigned": model.nunassigned(),
        "nfiltered": catalog.nfiltered,
        "trace": trace,
        "model": model,
    }
