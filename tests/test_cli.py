from __future__ import annotations

import os

from click.testing import CliRunner

from conftest import make_catalog, write_transcript_csv
from hexseg import __version__
from hexseg.cli import main
from hexseg.transcripts import BACKGROUND_CELL


def _csv(tmp_path):
    cat = make_catalog(ncells=4, per_cell=20, nbackground=20)
    genes = [cat.gene_names[g] for g in cat.gene]
    cell_ids = [-1 if c == BACKGROUND_CELL else int(c) for c in cat.init_assignments]
    return str(write_transcript_csv(tmp_path / "transcripts.csv", cat.x, cat.y, genes, cell_ids))


FAST = ["--niter", "2", "-l", "1", "-t", "1", "--min-qv", "0", "-n", "2"]


def test_cli_runs_and_writes_outputs(tmp_path):
    out = tmp_path / "out"
    result = CliRunner().invoke(main, [_csv(tmp_path), "--out-dir", str(out), "-o", "cells.csv.gz", *FAST])
    assert result.exit_code == 0, result.output
    assert "Done." in result.output
    assert os.path.isfile(out / "cells.csv.gz")
    assert os.path.isfile(out / "z.csv.gz")
    assert os.path.isfile(out / "cell_assignments.csv.gz")
    assert os.path.isfile(out / "cells.geojson.gz")


def test_cli_reports_missing_column(tmp_path):
    out = tmp_path / "out"
    result = CliRunner().invoke(main, [_csv(tmp_path), "--out-dir", str(out), "--x-column", "px", *FAST])
    assert result.exit_code == 1
    assert "Error" in result.output
    assert "px" in result.output
    assert not os.path.exists(out / "counts.csv.gz")


def test_cli_rejects_zero_components(tmp_path):
    args = [_csv(tmp_path), "--out-dir", str(tmp_path / "out"), *FAST, "-n", "0"]
    result = CliRunner().invoke(main, args)
    assert result.exit_code == 1
    assert "ncomponents" in result.output


def test_cli_config_file(tmp_path):
    cfg = tmp_path / "params.yaml"
    cfg.write_text("output:\n  counts: from_config.csv.gz\n", encoding="utf-8")
    out = tmp_path / "out"
    result = CliRunner().invoke(main, [_csv(tmp_path), "--out-dir", str(out), "--config", str(cfg), *FAST])
    assert result.exit_code == 0, result.output
    assert os.path.isfile(out / "from_config.csv.gz")


def test_cli_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
