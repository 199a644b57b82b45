"""
Stratification of samples for ccmatch.

This module turns the prepared sample table into Sample records (weighted
distance vector plus exact-match group key) and partitions them into strata
of cases and controls that share the same forced factor values.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .errors import DataIntegrityError
from .loadings import FactorLoadings
from .utils import (
    CASE_STATUS,
    CONTROL_STATUS,
    ID_COLUMN,
    STATUS_COLUMN,
    _discover_column,
    _to_float,
    read_sample_table,
)

GROUP_SEPARATOR = "_"

CASE = 1
CONTROL = 0


@dataclass(frozen=True)
class Sample:
    """One subject: identity is the id alone."""

    id: str
    status: int = field(compare=False)
    vector: Tuple[float, ...] = field(compare=False)
    group: str = field(compare=False, default="")

    @property
    def is_case(self) -> bool:
        return self.status == CASE

    @property
    def is_control(self) -> bool:
        return self.status == CONTROL


@dataclass(frozen=True)
class Match:
    """A candidate control for a case; rank is the control's naive rank for that case (1 = nearest)."""

    case_id: str
    control_id: str
    distance: float
    rank: int


@dataclass
class Stratum:
    """Cases and controls sharing one exact-match group key."""

    key: str
    cases: List[Sample] = field(default_factory=list)
    controls: List[Sample] = field(default_factory=list)


@dataclass
class StratifiedSamples:
    """Result of stratify_samples()."""

    strata: Dict[str, Stratum]
    distance_columns: List[str]
    weights: List[float]
    forced_columns: List[str]
    n_dropped: int = 0

    def samples(self) -> List[Sample]:
        """Every stratified sample, cases then controls, stratum by stratum."""
        out = []
        for stratum in self.strata.values():
            out.extend(stratum.cases)
            out.extend(stratum.controls)
        return out

    def to_pandas(self) -> pd.DataFrame:
        """One row per sample with id, status, group and vector columns."""
        return pd.DataFrame(
            [
                {"id": s.id, "status": s.status, "group": s.group, "vector": list(s.vector)}
                for s in self.samples()
            ],
            columns=["id", "status", "group", "vector"],
        )


def distance_columns(
    factor_loadings: FactorLoadings,
    indicator_map: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[Tuple[str, float]]:
    """
    Columns making up the distance vector, with their weights, in configuration order.

    Numeric factors contribute their own column; nominal factors contribute
    each of their indicator columns, all carrying the nominal weight.
    """
    indicator_map = indicator_map or {}
    columns = []
    for loading in factor_loadings:
        if loading.is_numeric:
            columns.append((loading.name, loading.weight))
        elif loading.is_nominal:
            for indicator in indicator_map.get(loading.name, []):
                columns.append((indicator, loading.weight))
    return columns


def parse_status(value: str) -> Optional[int]:
    """Map a status cell to CASE or CONTROL; anything else is unrecognized."""
    value = value.strip()
    if value == CASE_STATUS:
        return CASE
    if value == CONTROL_STATUS:
        return CONTROL
    return None


def stratify_samples(
    samples,
    factor_loadings: FactorLoadings,
    indicator_map: Optional[Mapping[str, Sequence[str]]] = None,
) -> StratifiedSamples:
    """
    Build Sample records and partition them into strata.

    Parameters
    ----------
    samples : str, Path or pd.DataFrame
        Prepared (normalized and nominal-expanded) sample table or its path
    factor_loadings : FactorLoadings
        Parsed factor configuration
    indicator_map : Optional[Mapping[str, Sequence[str]]]
        Nominal column -> indicator columns, from expand_nominal_variables()

    Returns
    -------
    StratifiedSamples
        Strata keyed by group key in order of first appearance

    Notes
    -----
    Rows whose status is neither "1" (case) nor "0" (control) are dropped
    without error. The group key joins forced column values with "_" in
    header order; without forced factors every sample is in stratum "".
    """
    df = samples if isinstance(samples, pd.DataFrame) else read_sample_table(samples)
    header = list(df.columns)

    weighted = distance_columns(factor_loadings, indicator_map)
    dist_idx = [_discover_column(header, name) for name, _ in weighted]
    weights = [w for _, w in weighted]

    forced = set(factor_loadings.forced_factor_names())
    for name in forced:
        _discover_column(header, name)
    forced_cols = [c for c in header if c in forced]
    forced_idx = [header.index(c) for c in forced_cols]

    strata: Dict[str, Stratum] = {}
    seen_ids = set()
    n_dropped = 0
    for row in df.itertuples(index=False, name=None):
        sample_id = row[ID_COLUMN]
        if sample_id in seen_ids:
            raise DataIntegrityError(f"Found the same sample ID twice: {sample_id!r}")
        seen_ids.add(sample_id)

        status = parse_status(row[STATUS_COLUMN])
        if status is None:
            n_dropped += 1
            continue

        vector = tuple(
            _to_float(row[i], header[i], sample_id) * w for i, w in zip(dist_idx, weights)
        )
        group = GROUP_SEPARATOR.join(row[i] for i in forced_idx)
        sample = Sample(sample_id, status, vector, group)

        stratum = strata.setdefault(group, Stratum(group))
        if sample.is_case:
            stratum.cases.append(sample)
        else:
            stratum.controls.append(sample)

    return StratifiedSamples(
        strata=strata,
        distance_columns=[name for name, _ in weighted],
        weights=weights,
        forced_columns=forced_cols,
        n_dropped=n_dropped,
    )
