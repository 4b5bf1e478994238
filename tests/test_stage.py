from pathlib import Path

import pytest

from sampleflow.common import AttrDict
from sampleflow.exceptions import ConfigurationError
from sampleflow.stage import (
    ErrorStrategy, OutputGlob, PublishMode, PublishRule, Stage
)
from sampleflow.stage.params import Param

from .data import make_stage


def test_defaults():
    stage = make_stage("s1", "touch {sample}.out")
    assert stage.cpus == 1
    assert stage.inputs is None
    assert stage.error_strategy == ErrorStrategy.FAIL
    assert not stage.ignore_errors
    assert stage.outputs == [OutputGlob("{sample}.s1")]
    assert stage.publish.enabled
    assert stage.publish.mode == PublishMode.COPY
    assert str(stage) == "s1"


@pytest.mark.parametrize("kwargs,message", [
    ({"cpus": 0}, "cpus"),
    ({"cpus": "4"}, "cpus"),
    ({"inputs": 0}, "inputs"),
    ({"retries": -1}, "retries"),
    ({"error_strategy": "retry"}, "error_strategy"),
    ({"script": "  "}, "no script"),
    ({"script": "echo {sampel}"}, "Unknown field"),
    ({"script": "echo {params.nope}"}, "Unknown parameter"),
    ({"script": "echo {sample"}, "Malformed"),
    ({"script": "echo {sample:d}"}, "Malformed"),
    ({"script": "cat {input[x]}"}, "Malformed"),
    ({"script": "cat {input[2]}", "inputs": 2}, "input files"),
    ({"outputs": ["/abs/{sample}.out"]}, "relative"),
    ({"outputs": ["../{sample}.out"]}, "work directory"),
    ({"outputs": ["{input}.out"]}, "Unknown field"),
    ({"outputs": ["{sample:d}.out"]}, "Malformed"),
    ({"outputs": ["{sample}**"]}, "entire path component"),
    ({"outputs": ["{params.tag}"], "params": {"tag": ""}}, "empty"),
    ({"publish": {"mode": "move"}}, "publish mode"),
    ({"publish": {"dir": "all"}}, "{sample}"),
    ({"publish": {"dir": "/tmp/{sample}"}}, "relative"),
    ({"publish": {"dir": "{sample}/{attempt}"}}, "Unknown field"),
    ({"publish": {"dir": "{sample:x}"}}, "Malformed"),
    ({"params": {"q": {"type": "complex", "default": 1}}}, "parameter type"),
    ({"params": {"q": {"type": "int", "default": "many"}}}, "Bad default"),
    ({"params": {"q": {"type": "int", "dflt": 1}}}, "Unknown key"),
])
def test_invalid(kwargs, message):
    args = {"script": "touch {sample}.out"}
    args.update(kwargs)
    with pytest.raises(ConfigurationError) as exc:
        Stage("bad", **args)
    assert message in exc.value.message


def test_render_quotes_values(saved_tmpdir):
    stage = make_stage("trim", "tool -t {cpus} -i {input[0]} -I {input[1]} -o {sample}.out"
                       " --try {attempt} --name {stage} --dir {workdir}", cpus=3)
    script = stage.render("my sample", ["a b.fq", "c.fq"], saved_tmpdir, attempt=2)
    assert script == (
        f"tool -t 3 -i 'a b.fq' -I c.fq -o 'my sample'.out --try 2 --name trim"
        f" --dir {saved_tmpdir}"
    )


def test_render_all_inputs():
    stage = make_stage("cat", "cat {input} > {sample}.out")
    assert stage.render("A", ["x.fq", "y.fq"], "/w") == "cat x.fq y.fq > A.out"


def test_render_missing_input():
    stage = make_stage("cat", "cat {input[1]} > {sample}.out")
    with pytest.raises(IndexError):
        stage.render("A", ["x.fq"], "/w")


def test_params():
    stage = make_stage(
        "fastp", "fastp -l {params.length} -q {params.qual} {params.fast} {params.cut:raw}",
        params={
            "length": 50,
            "qual": {"type": "float", "default": 20},
            "fast": {"type": "flag", "value": "--fast"},
            "cut": {"type": "str", "default": "--cut_front --cut_tail"},
        }
    )
    assert [param.type_name for param in stage.params] == ["int", "float", "flag", "str"]
    assert stage.param_values() == AttrDict(
        length=50, qual=20.0, fast=[], cut="--cut_front --cut_tail"
    )
    assert stage.render("A", [], "/w") == "fastp -l 50 -q 20.0  --cut_front --cut_tail"

    stage.set_param("length", "75")
    stage.set_param("fast", "yes")
    assert stage.param_values().length == 75
    assert stage.render("A", [], "/w") == "fastp -l 75 -q 20.0 --fast --cut_front --cut_tail"


def test_param_errors():
    stage = make_stage("s", "echo {params.n} > {sample}.out", params={"n": 1})
    with pytest.raises(ConfigurationError) as exc:
        stage.set_param("m", 2)
    assert "has no parameter 'm'" in exc.value.message
    with pytest.raises(ConfigurationError):
        stage.set_param("n", "two")
    with pytest.raises(ConfigurationError):
        stage.set_param("n", True)
    with pytest.raises(ConfigurationError):
        stage.add_param("n", "str", "x")
    # identical parameter is accepted silently
    assert not stage.add_param("n", "int", 1)


def test_path_param_absolute(saved_cwd):
    stage = make_stage("s", "ls {params.dir} > {sample}.out",
                       params={"dir": {"type": "path", "default": "reads"}})
    assert stage.param_values().dir == str(saved_cwd / "reads")


def test_param_types_registered():
    assert set(Param.types) >= {"int", "float", "str", "path", "flag"}
    with pytest.raises(TypeError):
        class Duplicate(Param):  # pylint: disable=unused-variable
            type_name = "int"

            def convert(self, value):
                return value


def test_configure():
    stage = make_stage("s", "echo {params.n} > {sample}.out", params={"n": 1})
    stage.configure({
        "cpus": 4, "retries": 2, "error_strategy": "ignore",
        "params": {"n": 7}, "publish": {"mode": "symlink"},
    })
    assert stage.cpus == 4
    assert stage.retries == 2
    assert stage.ignore_errors
    assert stage.param_values().n == 7
    assert stage.publish.mode == PublishMode.SYMLINK
    stage.configure({"publish": False})
    assert not stage.publish.enabled
    with pytest.raises(ConfigurationError):
        stage.configure({"script": "true"})
    with pytest.raises(ConfigurationError):
        stage.configure({"cpus": -1})
    with pytest.raises(ConfigurationError):
        stage.configure({"publish": {"target": "x"}})


def test_output_glob_make():
    assert OutputGlob.make("{sample}.fa") == OutputGlob("{sample}.fa")
    assert OutputGlob.make({"pattern": "*.html", "optional": True}) \
        == OutputGlob("*.html", optional=True)
    with pytest.raises(TypeError):
        OutputGlob.make(3)


def test_collect_outputs(saved_tmpdir):
    stage = make_stage(
        "s", "true",
        outputs=["{sample}.fa", "{sample}_*.sam", {"pattern": "*.html", "optional": True}]
    )
    for name in ["A.fa", "A_2.sam", "A_1.sam", "input.fa", ".command.sh"]:
        (saved_tmpdir / name).write_text(name)
    (saved_tmpdir / "A_dir.sam").mkdir()
    files, missing = stage.collect_outputs(saved_tmpdir, "A", {".command.sh"})
    assert [path.name for path in files] == ["A.fa", "A_1.sam", "A_2.sam"]
    assert missing == []

    files, missing = stage.collect_outputs(saved_tmpdir, "B", set())
    assert files == []
    assert missing == [OutputGlob("{sample}.fa"), OutputGlob("{sample}_*.sam")]


def test_collect_outputs_glob_characters(saved_tmpdir):
    stage = make_stage("s", "true", outputs=["{sample}.{params.tag}"],
                       params={"tag": "v[2]"})
    for name in ["A[1].v[2]", "A1.v2", "A1.v[2]"]:
        (saved_tmpdir / name).write_text(name)
    files, missing = stage.collect_outputs(saved_tmpdir, "A[1]", set())
    assert [path.name for path in files] == ["A[1].v[2]"]
    assert missing == []


def test_format_specs_checked_with_typed_values():
    stage = make_stage("s", "tool -n {params.n:03d} -j {cpus:d} {input[1]} > {sample}.s",
                       params={"n": {"type": "int", "default": 7}})
    assert stage.render("A", ["a", "b"], "/w") == "tool -n 007 -j 1 b > A.s"
    # parameters without default are checked with a value of their type
    make_stage("s", "tool -q {params.q:.1f}", params={"q": {"type": "float"}})


def test_publish_rule():
    assert PublishRule.make(None).enabled
    assert not PublishRule.make(False).enabled
    assert PublishRule.make("link").mode == "link"
    rule = PublishRule.make({"pattern": "*.fasta", "dir": "{sample}/{stage}"})
    assert rule.patterns == ["*.fasta"]
    assert rule.target_dir("/out", "A", "flye").as_posix() == "/out/A/flye"
    assert rule.selects(Path("w/A.assembly.fasta"))
    assert not rule.selects(Path("w/A.reads.fastq.gz"))
    assert PublishRule().selects(Path("anything"))
    with pytest.raises(TypeError):
        PublishRule.make(1.5)
