import logging
import os
import textwrap

import click
import pandas as pd
import pytest

import sampleflow
from sampleflow.exceptions import (
    ConfigurationError, EmptyChannelError, SampleflowUsageError
)

from .conftest import MockCmd
from .data import make_reads

log = logging.getLogger(__name__)  # pylint: disable=invalid-name

pytestmark = pytest.mark.timeout(120)


def write_config(content):
    with open("sampleflow.yml", "w") as fdes:
        fdes.write(textwrap.dedent(content))


@pytest.fixture()
def copy_project(saved_cwd):
    """Project with a two stage pipeline over ``raw``"""
    write_config("""\
    cpus: 2
    stages:
      first:
        doc: |
          Copy the reads
        params:
          tag: {type: str, default: one}
        script: |
          test {sample} != FAIL
          (cat {input}; echo {params.tag}) > {sample}.first
        outputs: ["{sample}.first"]
      second:
        script: cat {input} > {sample}.second
        outputs: ["{sample}.second"]
    pipelines:
      copy:
        doc: Copy twice
        inputs:
          reads:
            dir: !workdir raw
        stages:
          - first
          - second
    """)
    make_reads(saved_cwd / "raw", ["A.fastq.gz", "B.fastq.gz"], content="read\n")
    return saved_cwd


def test_version(invoker):
    res = invoker.call("--version")
    assert sampleflow.__version__ in res.output


def test_stage_list(invoker):
    "List all stages"
    res = invoker.call("stage", "list")
    assert "\nflye " in res.output
    assert "Assemble long reads with Flye" in res.output

    with pytest.raises(click.UsageError):
        invoker.call("stage", "list", "-s", "-l")

    res = invoker.call("stage", "list", "does_not_exist")
    assert res.output == ""

    res = invoker.call("stage", "list", "fl?e", "-s")
    assert res.output.strip() == "flye"

    res = invoker.call("stage", "list", "bwa*", "-l")
    assert "short_reads" in res.output
    assert "cpus: 8" in res.output
    assert "{sample}_1.sam" in res.output

    res = invoker.call("stage", "list", "fastp", "-c")
    assert "defined in: " + sampleflow._defaults_file in res.output


def test_stage_list_local(invoker, copy_project):
    res = invoker.call("stage", "list", "first", "second")
    lines = res.output.splitlines()
    assert lines[0].startswith("first ")
    assert "Copy the reads" in lines[0]
    assert "[no docs]" in lines[1]


def test_pipeline_list(invoker, copy_project):
    res = invoker.call("pipeline", "list", "-s")
    assert res.output.split() == ["copy", "long_read_assembly", "short_read_trimming"]
    res = invoker.call("pipeline", "list", "copy", "-l")
    assert "Copy twice" in res.output
    assert "inputs: reads" in res.output
    assert "stages: first second" in res.output


def test_show(invoker, copy_project):
    "Test parts of show"
    res = invoker.call("show")
    assert "pipelines:" in res.output
    res = invoker.call("show", "cpus")
    assert res.output.strip() == "2"
    res = invoker.call("show", "stages.flye")
    assert "cpus: 16" in res.output
    res = invoker.call("show", "stages.first.params.tag.default")
    assert res.output.strip() == "one"
    res = invoker.call("show", "stages.flye.outputs.0")
    assert res.output.strip() == "{sample}.assembly.fasta"
    res = invoker.call("show", "outdir")
    assert res.output.strip() == str(copy_project / "results")
    res = invoker.call("show", "-s", "stages.first")
    assert "sampleflow.yml" in res.output

    with pytest.raises(click.BadParameter):
        invoker.call("show", "nothing")
    with pytest.raises(click.BadParameter):
        invoker.call("show", "stages.nothing")


def test_show_help(invoker):
    res = invoker.call("show", "--help")
    assert "Properties:" in res.output
    assert "stages:" in res.output


def test_run(invoker, copy_project):
    res = invoker.call("run", "copy", "--run-id", "test", "--trace", "trace.tsv")
    assert res.exit_code == 0
    results = copy_project / "results"
    assert sorted(os.listdir(results / "A")) == ["A.first", "A.second"]
    assert (results / "B" / "B.second").read_text() == "read\none\n"
    assert (copy_project / "work" / "test" / "second" / "B" / "attempt-1").is_dir()
    trace = pd.read_csv("trace.tsv", sep="\t")
    assert len(trace) == 4
    assert set(trace["status"]) == {"succeeded"}


def test_run_options(invoker, copy_project):
    make_reads(copy_project / "other", ["C.fastq.gz"], content="other\n")
    invoker.call("run", "copy", "-i", "reads=other", "-p", "first.tag=two",
                 "-o", "out", "-w", "tmp", "-j", "1")
    assert (copy_project / "out" / "C" / "C.second").read_text() == "other\ntwo\n"
    assert not (copy_project / "results").exists()
    assert (copy_project / "tmp").is_dir()


def test_run_failure(invoker, copy_project):
    make_reads(copy_project / "raw", ["FAIL.fastq.gz"])
    res = invoker.call_raises("run", "copy", "--trace", "trace.tsv")
    assert res.exit_code == 1
    assert "first:FAIL" in res.output
    assert (copy_project / "results" / "A" / "A.second").exists()
    assert not (copy_project / "results" / "FAIL").exists()
    trace = pd.read_csv("trace.tsv", sep="\t")
    assert list(trace[trace["sample"] == "FAIL"]["status"]) == ["failed"]


@pytest.mark.parametrize("args,error", [
    (["run", "nothing"], SampleflowUsageError),
    (["run", "copy", "-i", "reads"], click.BadParameter),
    (["run", "copy", "-i", "other=raw"], ConfigurationError),
    (["run", "copy", "-p", "tag=two"], click.BadParameter),
    (["run", "copy", "-i", "reads=empty"], EmptyChannelError),
])
def test_run_usage_errors(invoker, copy_project, args, error):
    os.mkdir("empty")
    with pytest.raises(error):
        invoker.call(*args)
    assert not (copy_project / "results").exists()


def test_run_cpu_budget(invoker, saved_cwd):
    make_reads(saved_cwd / "long_reads", ["A.fastq.gz"])
    res = invoker.call_raises("run", "long_read_assembly", "-j", "4")
    assert res.exit_code != 0
    assert "budget" in res.output
    assert not (saved_cwd / "work").exists()


@pytest.fixture()
def assembly_tools(bin_dir):
    """Fake long read assembly tools writing plausible outputs"""
    return {
        "porechop": MockCmd(bin_dir, "porechop", 'cp "$4" "$6"\n'),
        "flye": MockCmd(bin_dir, "flye", 'mkdir -p "$4"\ncat "$2" > "$4/assembly.fasta"\n'),
        "medaka_consensus": MockCmd(bin_dir, "medaka_consensus", """\
            mkdir -p "$6"
            (cat "$4"; echo medaka) > "$6/consensus.fasta"
            """),
        "bwa-mem2": MockCmd(bin_dir, "bwa-mem2", """\
            if [ "$1" = mem ]; then cat "$6"; fi
            """),
        "polypolish": MockCmd(bin_dir, "polypolish", """\
            case "$1" in
              filter) cp "$3" "$7"; cp "$5" "$9";;
              polish) cat "$2"; echo polished;;
            esac
            """),
    }


def test_long_read_assembly(invoker, saved_cwd, assembly_tools):
    make_reads(saved_cwd / "long_reads", ["A.fastq.gz", "B.fastq.gz"], content=">contig\n")
    make_reads(saved_cwd / "short_reads",
               ["A_R1.fastq.gz", "A_R2.fastq.gz", "B_R1.fastq.gz", "B_R2.fastq.gz"])
    invoker.call("run", "long_read_assembly", "-j", "16", "--run-id", "lr")

    results = saved_cwd / "results"
    for sample in ("A", "B"):
        assert sorted(os.listdir(results / sample)) == [
            f"{sample}.assembly.fasta", f"{sample}.medaka.fasta",
            f"{sample}.polished.fasta", f"{sample}.trimmed.fastq.gz",
        ]
        polished = results / sample / f"{sample}.polished.fasta"
        assert polished.read_text() == ">contig\nmedaka\npolished\n"

    flye_calls = assembly_tools["flye"].calls
    assert len(flye_calls) == 2
    assert "--nano-raw A.trimmed.fastq.gz --out-dir flye --threads 16" in flye_calls[0]
    assert "--meta" not in flye_calls[0]
    medaka_calls = assembly_tools["medaka_consensus"].calls
    assert "-i A.reads.fastq.gz -d A.assembly.fasta" in medaka_calls[0]
    assert "-m r941_min_sup_g507" in medaka_calls[0]
    assert len(assembly_tools["bwa-mem2"].calls) == 6
    assert len(assembly_tools["polypolish"].calls) == 4

    workdir = saved_cwd / "work" / "lr"
    sam = workdir / "bwa_mem2" / "A" / "attempt-1" / "A_1.sam"
    assert sam.exists()
    assert not (results / "A" / "A_1.sam").exists()


def test_long_read_assembly_params(invoker, saved_cwd, assembly_tools):
    make_reads(saved_cwd / "long_reads", ["A.fastq.gz"], content=">contig\n")
    make_reads(saved_cwd / "elsewhere", ["A_R1.fastq.gz", "A_R2.fastq.gz"])
    invoker.call("run", "long_read_assembly", "-j", "16",
                 "-p", "flye.meta=true", "-p", "flye.read_type=--nano-hq",
                 "-p", "bwa_mem2.short_reads=elsewhere")
    flye_call = assembly_tools["flye"].calls[0]
    assert flye_call.startswith(assembly_tools["flye"].filename
                                + " --nano-hq A.trimmed.fastq.gz")
    assert flye_call.endswith("--meta")
    bwa_calls = assembly_tools["bwa-mem2"].calls
    assert any(str(saved_cwd / "elsewhere" / "A_R1.fastq.gz") in call for call in bwa_calls)


def test_long_read_assembly_missing_short_reads(invoker, saved_cwd, assembly_tools):
    make_reads(saved_cwd / "long_reads", ["A.fastq.gz", "B.fastq.gz"], content=">contig\n")
    make_reads(saved_cwd / "short_reads", ["A_R1.fastq.gz", "A_R2.fastq.gz"])
    res = invoker.call_raises("run", "long_read_assembly", "-j", "16")
    assert res.exit_code == 1
    results = saved_cwd / "results"
    assert (results / "A" / "A.polished.fasta").exists()
    # B is published up to its last successful stage
    assert sorted(os.listdir(results / "B")) == [
        "B.assembly.fasta", "B.medaka.fasta", "B.trimmed.fastq.gz"
    ]


def test_short_read_trimming(invoker, saved_cwd, bin_dir):
    fastp = MockCmd(bin_dir, "fastp", """\
        cp "$4" "$8"
        cp "$6" "${10}"
        echo '{}' > "${18}"
        """)
    make_reads(saved_cwd / "run1", [
        "S1_S1_L001_R1_001.fastq.gz", "S1_S1_L001_R2_001.fastq.gz",
        "S2_S2_L001_R1_001.fastq.gz", "S2_S2_L001_R2_001.fastq.gz",
    ])
    make_reads(saved_cwd / "run2", ["S1_S7_R1_001.fastq.gz", "S1_S7_R2_001.fastq.gz"],
               content="second run\n")
    invoker.call("run", "short_read_trimming", "-j", "4", "--run-id", "sr",
                 "-p", "fastp.length_required=100")

    assert len(fastp.calls) == 3
    assert all("--length_required 100" in call for call in fastp.calls)
    results = saved_cwd / "results"
    assert sorted(os.listdir(results / "S1")) == [
        "S1.fastp.json", "S1_R1.trimmed.fastq.gz", "S1_R2.trimmed.fastq.gz"
    ]
    # the later arrival of S1 wins
    assert (results / "S1" / "S1_R1.trimmed.fastq.gz").read_text() == "second run\n"
    assert (saved_cwd / "work" / "sr" / "fastp" / "S1~2" / "attempt-1").is_dir()
    assert sorted(os.listdir(results)) == ["S1", "S2"]


def test_short_read_trimming_bad_param(invoker, saved_cwd):
    make_reads(saved_cwd / "run1", ["S1_R1.fastq.gz", "S1_R2.fastq.gz"])
    with pytest.raises(ConfigurationError) as exc:
        invoker.call("run", "short_read_trimming", "-j", "4",
                     "-p", "fastp.length_required=many")
    assert "length_required" in exc.value.message


def test_log_options(invoker, copy_project):
    try:
        res = invoker.call("run", "copy", "-v", "--no-color", "--log-file", "run.log")
        assert "Running 2 stage(s) with up to 2 cpus" in res.output
        text = (copy_project / "run.log").read_text()
        assert "sampleflow.workflow INFO Running 2 stage(s)" in text
        res = invoker.call("-q", "run", "copy", "--run-id", "quiet")
        assert "Tasks:" not in res.output
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler, logging.FileHandler):
                root.removeHandler(handler)
                handler.close()
