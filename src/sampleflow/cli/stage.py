import logging
import textwrap
from fnmatch import fnmatch

import click

import sampleflow
from sampleflow.cli.shared_options import group

log = logging.getLogger(__name__)  # pylint: disable=invalid-name


def wrap(header, data):
    wrapper = textwrap.TextWrapper(
        initial_indent=header + " ",
        subsequent_indent=" " * len(header) + " "
    )
    return "\n"+"\n".join(wrapper.wrap(" ".join(data)))


def describe(items, long_opt, short_opt, code_opt, extra=None):
    """Echo name and docs of stages or pipelines"""
    if long_opt and short_opt:
        raise click.UsageError(
            "Options --long and --short are mutually exclusive")
    if not items:  # nothing to show
        return

    name_width = max(len(x.name) for x in items)
    for item in items:
        doc = (item.docstring or "").strip().split("\n", 1)
        short_doc = doc[0].strip() or "[no docs]"
        long_doc = textwrap.dedent(doc[1]) if len(doc) > 1 else ""

        if long_doc and long_opt:
            description = "\n" + "\n".join("  " + l for l in long_doc.split("\n"))
        else:
            description = ""

        if not short_opt:
            summary = "  " + short_doc
        else:
            summary = ""

        if code_opt:
            code = "\n  defined in: {}:{}".format(item.filename, item.lineno)
        else:
            code = ""

        details = extra(item) if extra and long_opt else ""

        click.echo("{name:<{width}}{summary}{description}{details}{code}"
                   "".format(name=item.name,
                             width=name_width,
                             summary=summary,
                             code=code,
                             details=details,
                             description=description))


def list_options(f):
    f = click.option(
        "--long", "-l", "long_opt", is_flag=True,
        help="Show full descriptions"
    )(f)
    f = click.option(
        "--short", "-s", "short_opt", is_flag=True,
        help="Show only names"
    )(f)
    f = click.option(
        "--code", "-c", "code_opt", is_flag=True,
        help="Show definition file name and line number"
    )(f)
    return f


@group()
def stage():
    """
    Inspect configured stages
    """


@stage.command(name="list")
@list_options
@click.argument(
    "stage_opt", metavar="STAGE", nargs=-1
)
def ls(long_opt, short_opt, code_opt, stage_opt):
    """
    List available stages
    """
    cfg = sampleflow.get_config()
    names = [name for name in cfg.stage_names
             if not stage_opt or any(fnmatch(name, pat) for pat in stage_opt)]
    stages = sorted((cfg.get_stage(name) for name in names), key=lambda s: s.name)

    def details(stage):
        text = wrap("  outputs:", [out.pattern for out in stage.outputs])
        text += f"\n  cpus: {stage.cpus}"
        if stage.params:
            text += wrap("  params: ", [f"{p.name}={p.default}" for p in stage.params])
        return text

    describe(stages, long_opt, short_opt, code_opt, details)


@group()
def pipeline():
    """
    Inspect configured pipelines
    """


@pipeline.command(name="list")
@list_options
@click.argument(
    "pipeline_opt", metavar="PIPELINE", nargs=-1
)
def ls_pipelines(long_opt, short_opt, code_opt, pipeline_opt):
    """
    List available pipelines
    """
    cfg = sampleflow.get_config()
    pipelines = sorted(
        (pipe for name, pipe in cfg.pipelines.items()
         if not pipeline_opt or any(fnmatch(name, pat) for pat in pipeline_opt)),
        key=lambda p: p.name
    )

    def details(pipe):
        text = wrap("  inputs:", list(pipe.inputs))
        text += wrap("  stages:", list(pipe.stages))
        return text

    describe(pipelines, long_opt, short_opt, code_opt, details)
