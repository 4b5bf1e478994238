import click

import sampleflow
from sampleflow.cli.run import run
from sampleflow.cli.shared_options import group
from sampleflow.cli.show import show
from sampleflow.cli.stage import pipeline, stage


@group()
@click.version_option(version=sampleflow.__version__)
def main(**kwargs):
    """
    Sample-parallel workflows.

    Runs configured pipelines over sets of samples, each stage of
    each sample in its own working directory.
    """


main.add_command(run)
main.add_command(stage)
main.add_command(pipeline)
main.add_command(show)
