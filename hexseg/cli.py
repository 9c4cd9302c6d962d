import sys

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .pipeline import run_segmentation
from .config import resolve_params
from . import __version__


console = Console()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="hexseg", message="%(prog)s %(version)s")
@click.argument("transcript_csv", type=click.Path(exists=True, dir_okay=False))
@click.option("--transcript-column", default=None, help="Gene name column. [default: feature_name]")
@click.option("--x-column", default=None, help="Transcript x coordinate column. [default: x_location]")
@click.option("--y-column", default=None, help="Transcript y coordinate column. [default: y_location]")
@click.option("-z", "--z-column", default=None, help="Transcript z coordinate column; enables 3D mode.")
@click.option("--cell-x-column", default=None, help="Cell centroid x column. [default: x_centroid]")
@click.option("--cell-y-column", default=None, help="Cell centroid y column. [default: y_centroid]")
@click.option("-n", "--ncomponents", type=int, default=None, help="Number of expression mixture components. [default: 20]")
@click.option("--niter", type=int, default=None, help="Total sampler iterations over all stages. [default: 1000]")
@click.option("-t", "--nthreads", type=int, default=None, help="Worker threads. [default: all CPUs]")
@click.option("-b", "--background-prob", type=float, default=None, help="Prior background probability. [default: 0.05]")
@click.option("-l", "--local-steps-per-iter", type=int, default=None, help="Local steps per global step. [default: 100]")
@click.option("-o", "--output-counts", default=None, help="Gene-by-cell count table path. [default: counts.csv.gz]")
@click.option("--min-qv", type=float, default=None, help="Drop transcripts below this quality. [default: 20]")
@click.option("--seed", type=int, default=None, help="Random seed. [default: 0]")
@click.option("--out-dir", default=".", show_default=True, type=click.Path(file_okay=False), help="Directory for outputs and logs.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML params file overriding config/params.yaml.")
@click.option("--log-level", default="INFO", show_default=True, type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(transcript_csv, transcript_column, x_column, y_column, z_column, cell_x_column, cell_y_column,
         ncomponents, niter, nthreads, background_prob, local_steps_per_iter, output_counts, min_qv, seed,
         out_dir, config_path, log_level):
    """Segment TRANSCRIPT_CSV into cells by MCMC over transcript assignments."""
    overrides = {
        "columns": {
            "transcript": transcript_column,
            "x": x_column,
            "y": y_column,
            "z": z_column,
            "cell_x": cell_x_column,
            "cell_y": cell_y_column,
        },
        "ncomponents": ncomponents,
        "niter": niter,
        "nthreads": nthreads,
        "background_prob": background_prob,
        "local_steps_per_iter": local_steps_per_iter,
        "min_qv": min_qv,
        "seed": seed,
        "output": {"counts": output_counts},
    }

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        t = progress.add_task("Starting", total=None)

        def _cb(desc: str):
            progress.update(t, description=desc)

        try:
            cfg = resolve_params(overrides, config_path=config_path)
            result = run_segmentation(
                transcript_csv,
                out_dir,
                params=cfg,
                log_level=log_level,
                progress_callback=_cb,
            )
            progress.update(t, description="Finished")
        except Exception as e:
            progress.update(t, description="Error")
            console.print(f"[red]Error: {e}")
            sys.exit(1)

    console.print("[green]Done.")
    table = Table(title="HexSeg outputs", show_lines=False)
    table.add_column("output")
    table.add_column("value")
    table.add_row("transcripts", str(result["ntranscripts"]))
    table.add_row("filtered (low qv)", str(result["nfiltered"]))
    table.add_row("cells", str(result["ncells"]))
    table.add_row("unassigned", str(result["nunassigned"]))
    for key in ("counts", "z", "cell_assignments", "cell_polygons"):
        table.add_row(key, result[key])
    console.print(table)


if __name__ == "__main__":
    main()
