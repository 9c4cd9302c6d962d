"""HexSeg: MCMC cell segmentation of spatial transcript detections."""

__version__ = "0.1.0"

from .transcripts import BACKGROUND_CELL, Transcript, TranscriptCatalog
from .model import ModelParams, ModelPriors
from .sampler import HexBinSampler
from .diagnostics import ProposalStats
from .pipeline import run_segmentation

__all__ = [
    "__version__",
    "BACKGROUND_CELL",
    "Transcript",
    "TranscriptCatalog",
    "ModelPriors",
    "ModelParams",
    "HexBinSampler",
    "ProposalStats",
    "run_segmentation",
]
