"""
Feature preparation for ccmatch cohort matching.

This module rewrites the sample table before matching:
1. Normalizes numeric factor columns (z-score or rank)
2. Expands nominal factor columns into 0/1 indicator columns

Both steps read a sample TSV and write a new one into the working directory,
keeping row order and every column they do not touch.
"""

import os
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .errors import ConfigurationError
from .loadings import FactorLoadings
from .utils import _to_float, read_sample_table, write_frame
from .warnings_util import warn

NORMALIZED_FILENAME = "normalized.txt"
NOMINALIZED_FILENAME = "nominalized_samples.txt"

NORMALIZE_METHODS = ("zscore", "rank")


def normalize_columns(
    df: pd.DataFrame,
    columns: Sequence[str],
    method: str = "zscore",
) -> pd.DataFrame:
    """
    Rescale each selected column independently with an order-preserving transform.

    Parameters
    ----------
    df : pd.DataFrame
        Sample table of strings (column 0 is the sample id)
    columns : Sequence[str]
        Columns to normalize; all others are passed through unchanged
    method : str
        "zscore" (subtract mean, divide by sample standard deviation) or
        "rank" (average ranks scaled to (0, 1])

    Returns
    -------
    pd.DataFrame
        Copy of df with the selected columns replaced by their normalized values
    """
    if method not in NORMALIZE_METHODS:
        raise ConfigurationError(
            f"normalize method must be one of {NORMALIZE_METHODS}, got {method!r}"
        )

    id_col = df.columns[0]
    out = df.copy()
    for col in columns:
        values = np.array(
            [_to_float(v, col, sid) for v, sid in zip(df[col], df[id_col])],
            dtype=float,
        )
        if len(values) == 0:
            continue

        if method == "rank":
            normalized = rankdata(values, method="average") / len(values)
        else:
            std = np.std(values, ddof=1) if len(values) > 1 else 0.0
            if not std > 0:
                warn(
                    f"Column {col!r} has zero variance; its normalized values are all 0.0"
                )
                normalized = np.zeros_like(values)
            else:
                normalized = (values - values.mean()) / std

        out[col] = [repr(float(v)) for v in normalized]
    return out


def normalize_factors(
    working_dir,
    sample_path,
    factor_loadings: FactorLoadings,
    method: str = "zscore",
    verbose: bool = True,
) -> str:
    """
    Normalize the numeric (non-forced, non-nominal) factor columns of a sample file.

    Weights are not applied here; the stratifier applies them when it builds
    distance vectors.

    Parameters
    ----------
    working_dir : str or Path
        Directory the normalized file is written to
    sample_path : str or Path
        Input sample TSV
    factor_loadings : FactorLoadings
        Parsed factor configuration
    method : str
        Normalization method, see normalize_columns()
    verbose : bool
        If True, print which columns were normalized

    Returns
    -------
    str
        Path of the normalized sample file
    """
    df = read_sample_table(sample_path)
    factor_loadings.validate_header(list(df.columns))
    numeric_cols = factor_loadings.numeric_factor_names()

    normalized = normalize_columns(df, numeric_cols, method=method)

    output_path = os.path.join(str(working_dir), NORMALIZED_FILENAME)
    write_frame(output_path, normalized)
    if verbose:
        print(f"normalized ({method}) columns {numeric_cols}, wrote {output_path}")
    return output_path


def _nominal_levels(df: pd.DataFrame, nominal_cols: Sequence[str]) -> Dict[str, List[str]]:
    """Distinct values of each nominal column, in order of first appearance."""
    return {col: list(dict.fromkeys(df[col])) for col in nominal_cols}


def expand_nominal_columns(
    df: pd.DataFrame,
    nominal_cols: Sequence[str],
) -> Tuple[pd.DataFrame, Dict[str, List[str]]]:
    """
    Replace each nominal column by k-1 indicator columns.

    For a column with k distinct values (first-appearance order), indicator
    columns ``<column>_<value>`` are emitted for the first k-1 values; the
    last value is the reference level and gets no column. Each row holds "1"
    in the indicator of its own value and "0" elsewhere.

    Parameters
    ----------
    df : pd.DataFrame
        Sample table of strings
    nominal_cols : Sequence[str]
        Nominal columns present in df

    Returns
    -------
    Tuple[pd.DataFrame, Dict[str, List[str]]]
        The expanded table (df itself when there is nothing to expand) and a
        mapping of each nominal column to its indicator column names
    """
    nominal_cols = [c for c in df.columns if c in set(nominal_cols)]
    if not nominal_cols:
        return df, {}

    levels = _nominal_levels(df, nominal_cols)
    indicator_map: Dict[str, List[str]] = {}
    pieces = []
    for col in df.columns:
        if col not in levels:
            pieces.append(df[[col]])
            continue
        kept = levels[col][:-1]
        names = [f"{col}_{value}" for value in kept]
        indicator_map[col] = names
        pieces.append(
            pd.DataFrame(
                {
                    name: np.where(df[col] == value, "1", "0")
                    for name, value in zip(names, kept)
                },
                index=df.index,
                columns=names,
            )
        )

    expanded = pd.concat(pieces, axis=1)
    if expanded.columns.duplicated().any():
        clashes = sorted(set(expanded.columns[expanded.columns.duplicated()]))
        raise ConfigurationError(
            f"Indicator columns clash with existing columns: {clashes}"
        )
    return expanded, indicator_map


def expand_nominal_variables(
    working_dir,
    sample_path,
    factor_loadings: FactorLoadings,
    verbose: bool = True,
) -> Tuple[str, Dict[str, List[str]]]:
    """
    Expand the nominal factor columns of a sample file into indicator columns.

    Parameters
    ----------
    working_dir : str or Path
        Directory the expanded file is written to
    sample_path : str or Path
        Input sample TSV
    factor_loadings : FactorLoadings
        Parsed factor configuration
    verbose : bool
        If True, print the indicator columns created

    Returns
    -------
    Tuple[str, Dict[str, List[str]]]
        Path of the expanded sample file (sample_path unchanged when no
        nominal columns are configured) and the nominal column -> indicator
        columns mapping
    """
    nominal_cols = factor_loadings.nominal_factor_names()
    if not nominal_cols:
        return str(sample_path), {}

    df = read_sample_table(sample_path)
    expanded, indicator_map = expand_nominal_columns(df, nominal_cols)
    if not indicator_map and expanded is df:
        return str(sample_path), {}

    output_path = os.path.join(str(working_dir), NOMINALIZED_FILENAME)
    write_frame(output_path, expanded)
    if verbose:
        for col, names in indicator_map.items():
            print(f"nominal column {col!r} -> {names}")
    return output_path, indicator_map
