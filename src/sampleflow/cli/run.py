"Implements ``sampleflow run``"

import logging
import os
import sys

import click

import sampleflow
from sampleflow.cli.shared_options import command
from sampleflow.workflow import run_pipeline

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


def parse_assignments(ctx, param, values):
    """Split ``NAME=VALUE`` option values into a dict"""
    result = {}
    for value in values:
        name, sep, val = value.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"'{value}' is not of the form NAME=VALUE", ctx, param)
        result[name] = val
    return result


def make_overrides(cores, outdir, workdir, fail_fast, params):
    """Config layer from command line options

    Paths are made absolute, relative paths on the command line being
    relative to the current directory, not the workflow root.
    """
    overrides = {}
    if cores is not None:
        overrides["cpus"] = cores
    if outdir is not None:
        overrides["outdir"] = os.path.abspath(outdir)
    if workdir is not None:
        overrides["workdir"] = os.path.abspath(workdir)
    if fail_fast is not None:
        overrides["fail_fast"] = fail_fast
    stage_overrides = {}
    for key, value in params.items():
        stage, sep, name = key.partition(".")
        if not sep or not stage or not name:
            raise click.BadParameter(
                f"'{key}' must be of the form STAGE.NAME", param_hint="--param"
            )
        stage_overrides.setdefault(stage, {}).setdefault("params", {})[name] = value
    if stage_overrides:
        overrides["overrides"] = {"stages": stage_overrides}
    return overrides


@command()
@click.argument("pipeline")
@click.option(
    "--cores", "-j", type=click.IntRange(min=1), metavar="N",
    help="Number of CPUs to use at most"
)
@click.option(
    "--outdir", "-o", type=click.Path(file_okay=False),
    help="Directory for published outputs"
)
@click.option(
    "--workdir", "-w", type=click.Path(file_okay=False),
    help="Directory for task working directories"
)
@click.option(
    "--input", "-i", "inputs", multiple=True, metavar="NAME=DIR",
    callback=parse_assignments,
    help="Read input NAME from DIR"
)
@click.option(
    "--param", "-p", "params", multiple=True, metavar="STAGE.NAME=VALUE",
    callback=parse_assignments,
    help="Set parameter NAME of STAGE"
)
@click.option(
    "--fail-fast/--no-fail-fast", default=None,
    help="Abort on first task failure"
)
@click.option(
    "--run-id", metavar="NAME",
    help="Name of working directory for this run"
)
@click.option(
    "--trace", type=click.Path(dir_okay=False),
    help="Write table of all tasks to TSV file"
)
@click.option(
    "--progress/--no-progress", default=None,
    help="Show progress bar (default: if stderr is a terminal)"
)
def run(pipeline, cores, outdir, workdir, inputs, params, fail_fast, run_id,
        trace, progress):
    """Run PIPELINE

    Exits with status 1 if a task of a stage without ``ignore``
    error strategy failed.
    """
    cfg = sampleflow.get_config()
    cfg.add_overrides(
        "command line", make_overrides(cores, outdir, workdir, fail_fast, params)
    )
    input_dirs = {name: os.path.abspath(path) for name, path in inputs.items()}
    if progress is None:
        progress = sys.stderr.isatty()

    summary = run_pipeline(cfg, pipeline, input_dirs, run_id, progress)
    summary.log_summary()
    if trace:
        summary.write_tsv(trace)
        log.warning("Wrote trace to %s", trace)
    if not summary.success:
        raise click.exceptions.Exit(1)
