"""
Tests for shared helpers, errors and failure reporting in ccmatch.
"""

import os

import pytest

from ccmatch.errors import (
    CCMatchError,
    CollaboratorFailure,
    ConfigurationError,
    DataIntegrityError,
    OrphanedControlError,
)
from ccmatch.utils import (
    atomic_writer,
    format_decimal,
    read_header,
    read_sample_table,
    stratum_slug,
    write_tsv,
    write_tsv_group,
)
from ccmatch.warnings_util import report_failure


def test_atomic_writer_leaves_nothing_on_failure(tmp_path):
    target = tmp_path / "match.txt"
    with pytest.raises(RuntimeError):
        with atomic_writer(str(target)) as handle:
            handle.write("partial\n")
            raise RuntimeError("interrupted")
    assert os.listdir(tmp_path) == []


def test_atomic_writer_replaces_existing(tmp_path):
    target = tmp_path / "match.txt"
    target.write_text("old\n")
    write_tsv(str(target), ["a", "b"], [["1", "2"]])
    assert target.read_text() == "a\tb\n1\t2\n"


def test_write_tsv_group_all_or_nothing(tmp_path):
    first = tmp_path / "match.naive.F.txt"
    blocked = tmp_path / "match.optimized.F.txt"
    blocked.mkdir()
    with pytest.raises(OSError):
        write_tsv_group(
            [
                (str(first), ["a"], [["1"]]),
                (str(blocked), ["a"], [["2"]]),
            ]
        )
    assert sorted(os.listdir(tmp_path)) == ["match.optimized.F.txt"]


def test_write_tsv_group_writes_every_file(tmp_path):
    paths = [str(tmp_path / name) for name in ("a.txt", "b.txt")]
    write_tsv_group([(paths[0], ["x"], [["1"]]), (paths[1], ["y"], [])])
    assert (tmp_path / "a.txt").read_text() == "x\n1\n"
    assert (tmp_path / "b.txt").read_text() == "y\n"
    assert sorted(os.listdir(tmp_path)) == ["a.txt", "b.txt"]


def test_read_header_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        read_header(str(tmp_path / "missing.txt"))
    empty = tmp_path / "empty.txt"
    empty.write_text("")
    with pytest.raises(DataIntegrityError, match="empty"):
        read_header(str(empty))


def test_read_sample_table_keeps_strings(write_tsv):
    path = write_tsv("s.txt", ["id", "status", "x"], [["007", "1", "NA"], ["8", "0", ""]])
    df = read_sample_table(path)
    assert list(df["id"]) == ["007", "8"]
    assert list(df["x"]) == ["NA", ""]


def test_read_sample_table_duplicate_header(write_tsv):
    path = write_tsv("s.txt", ["id", "status", "x", "x"], [["a", "1", "1", "2"]])
    with pytest.raises(DataIntegrityError, match="duplicated"):
        read_sample_table(path)


@pytest.mark.parametrize(
    "key, slug",
    [("", "all"), ("M", "M"), ("M_north", "M_north"), ("a/b c", "a_b_c"), ("..", "stratum")],
)
def test_stratum_slug(key, slug):
    assert stratum_slug(key) == slug


def test_format_decimal():
    assert format_decimal(2 / 3) == "0.66667"
    assert format_decimal(float("nan")) == "NA"
    assert format_decimal(None) == "NA"
    assert format_decimal(1.0, digits=2) == "1.00"


def test_error_hierarchy():
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(DataIntegrityError, RuntimeError)
    assert issubclass(OrphanedControlError, DataIntegrityError)
    error = CollaboratorFailure("no convergence", phase="optimization", stratum="M")
    assert isinstance(error, CCMatchError)
    assert str(error) == "[optimization, stratum 'M'] no convergence"


def test_report_failure(capsys):
    text = report_failure(ValueError("boom"), "optimization", stratum="F", hint="try again")
    assert text == "stratum 'F', optimization failed: ValueError: boom\n  hint: try again"
    assert "boom" in capsys.readouterr().err
