"""
Sampleflow processes samples in stages, each task of which runs in its
own working directory.

.. code-block:: yaml

  stages:
    porechop:
      doc: Remove adapters from long reads
      inputs: 1
      cpus: 4
      outputs: ["{sample}.trimmed.fastq.gz"]
      script: porechop -t {cpus} -i {input} -o {sample}.trimmed.fastq.gz

"""

from sampleflow.stage.base import BaseStage, ConfigStage
from sampleflow.stage.params import Param
from sampleflow.stage.stage import (
    ConfiguredStage, ErrorStrategy, OutputGlob, PublishMode, PublishRule, Stage
)
from sampleflow.stage.pipeline import InputSpec, Pipeline
