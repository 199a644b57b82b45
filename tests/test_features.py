"""
Tests for feature preparation (normalization and nominal expansion) in ccmatch.
"""

import os

import pandas as pd
import pytest

from ccmatch.errors import ConfigurationError, DataIntegrityError
from ccmatch.features import (
    NOMINALIZED_FILENAME,
    NORMALIZED_FILENAME,
    expand_nominal_columns,
    expand_nominal_variables,
    normalize_columns,
    normalize_factors,
)
from ccmatch.loadings import FactorLoadings
from ccmatch.utils import read_sample_table


def _frame(**columns):
    n = len(next(iter(columns.values())))
    data = {"id": [f"s{i}" for i in range(n)], "status": ["1"] * n}
    data.update(columns)
    return pd.DataFrame(data)


def test_zscore_normalization():
    df = _frame(x=["1", "2", "3"], y=["a", "b", "c"])
    out = normalize_columns(df, ["x"], method="zscore")

    assert [float(v) for v in out["x"]] == [-1.0, 0.0, 1.0]
    assert list(out["y"]) == ["a", "b", "c"]
    # input is not modified
    assert list(df["x"]) == ["1", "2", "3"]


def test_rank_normalization_preserves_order():
    df = _frame(x=["10", "30", "20", "20"])
    out = normalize_columns(df, ["x"], method="rank")
    values = [float(v) for v in out["x"]]

    assert values[1] == 1.0
    assert values[0] < values[2] == values[3] < values[1]
    assert all(0 < v <= 1 for v in values)


def test_zero_variance_column_warns():
    df = _frame(x=["5", "5", "5"])
    with pytest.warns(UserWarning, match="zero variance"):
        out = normalize_columns(df, ["x"])
    assert [float(v) for v in out["x"]] == [0.0, 0.0, 0.0]


def test_non_numeric_value_raises():
    df = _frame(x=["1", "two", "3"])
    with pytest.raises(DataIntegrityError, match="s1"):
        normalize_columns(df, ["x"])


def test_unknown_method_raises():
    with pytest.raises(ConfigurationError):
        normalize_columns(_frame(x=["1"]), ["x"], method="minmax")


def test_normalize_factors_writes_file(tmp_path, sample_file):
    loadings = FactorLoadings("age:1,bmi:2,sex:force,site:nominal")
    path = normalize_factors(tmp_path, sample_file, loadings, verbose=False)

    assert path == os.path.join(str(tmp_path), NORMALIZED_FILENAME)
    original = read_sample_table(sample_file)
    normalized = read_sample_table(path)

    assert list(normalized.columns) == list(original.columns)
    assert list(normalized["id"]) == list(original["id"])
    for col in ["status", "sex", "site"]:
        assert list(normalized[col]) == list(original[col])

    ages = normalized["age"].astype(float)
    assert abs(ages.mean()) < 1e-9
    assert abs(ages.std(ddof=1) - 1.0) < 1e-9


def test_normalize_factors_missing_column(tmp_path, sample_file):
    loadings = FactorLoadings("height:1")
    with pytest.raises(ConfigurationError, match="height"):
        normalize_factors(tmp_path, sample_file, loadings, verbose=False)


def test_expand_nominal_columns():
    df = _frame(site=["north", "south", "east", "north"], z=["1", "2", "3", "4"])
    expanded, indicator_map = expand_nominal_columns(df, ["site"])

    # last value in first-appearance order is the reference level
    assert indicator_map == {"site": ["site_north", "site_south"]}
    assert list(expanded.columns) == ["id", "status", "site_north", "site_south", "z"]
    assert list(expanded["site_north"]) == ["1", "0", "0", "1"]
    assert list(expanded["site_south"]) == ["0", "1", "0", "0"]
    assert list(expanded["z"]) == ["1", "2", "3", "4"]


def test_expand_nominal_values_compared_exactly():
    df = _frame(site=["North", "north"])
    _, indicator_map = expand_nominal_columns(df, ["site"])
    assert indicator_map == {"site": ["site_North"]}


def test_expand_without_nominal_columns_is_noop():
    df = _frame(x=["1", "2"])
    expanded, indicator_map = expand_nominal_columns(df, [])
    assert expanded is df
    assert indicator_map == {}


def test_expand_indicator_clash_raises():
    df = _frame(site=["a", "b"], site_a=["1", "0"])
    with pytest.raises(ConfigurationError, match="clash"):
        expand_nominal_columns(df, ["site"])


def test_expand_nominal_variables_writes_file(tmp_path, sample_file):
    loadings = FactorLoadings("age:1,site:nominal")
    path, indicator_map = expand_nominal_variables(tmp_path, sample_file, loadings, verbose=False)

    assert path == os.path.join(str(tmp_path), NOMINALIZED_FILENAME)
    assert indicator_map == {"site": ["site_north", "site_south"]}
    expanded = read_sample_table(path)
    assert "site" not in expanded.columns
    assert list(expanded["site_south"][:3]) == ["0", "1", "0"]


def test_expand_nominal_variables_noop_returns_input(tmp_path, sample_file):
    loadings = FactorLoadings("age:1,bmi:1")
    path, indicator_map = expand_nominal_variables(tmp_path, sample_file, loadings, verbose=False)

    assert path == sample_file
    assert indicator_map == {}
    assert not os.path.exists(os.path.join(str(tmp_path), NOMINALIZED_FILENAME))
