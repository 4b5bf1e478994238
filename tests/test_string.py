import string

import pytest

import sampleflow.string


class FormatterTest(object):
    pattern = "{A} and {B}"
    fields = {'A': "x", 'B': 3}
    result = 'x and 3'
    formatter = string.Formatter()

    def format(self, pattern, *args, **kwargs):
        return self.formatter.format(pattern, *args, **kwargs)

    def test_formatting(self):
        assert self.format(self.pattern, **self.fields) == self.result


class TestGetNameFormatter(FormatterTest):
    formatter = sampleflow.string.GetNameFormatter()

    def test_get_names(self):
        names = list(self.formatter.get_names("{sample} {input[0]} {params.q} {{x}}"))
        assert names == ["sample", "input[0]", "params.q"]

    def test_get_root_names(self):
        roots = self.formatter.get_root_names("{sample} {input[1]} {params.q}")
        assert roots == {"sample", "input", "params"}


class TestQuotedFormatter(FormatterTest):
    formatter = sampleflow.string.QuotedFormatter()

    def test_quotes_values(self):
        assert self.format("ls {f}", f="a b") == "ls 'a b'"

    def test_expands_lists(self):
        assert self.format("cat {f}", f=["a b", "c"]) == "cat 'a b' c"
        assert self.format("cat {f[1]}", f=["a b", "c"]) == "cat c"

    def test_empty_list(self):
        assert self.format("x {f} y", f=[]) == "x  y"

    def test_raw(self):
        assert self.format("{f:raw}", f="a; b") == "a; b"
        assert self.format("{f:raw}", f=["-a", "-b c"]) == "-a -b c"

    def test_escaped_braces(self):
        assert self.format("echo ${{HOME}} {f}", f="x") == "echo ${HOME} x"

    @pytest.mark.parametrize("value", ["$(rm -rf /)", "`id`", "a'b", "x;y"])
    def test_no_injection(self, value):
        assert self.format("{f}", f=value) == "'" + value.replace("'", "'\"'\"'") + "'"
