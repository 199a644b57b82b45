"""
Match-quality statistics for ccmatch.

DataBox stores the values of every matching variable for every case and
control of a match, and derives from them:

- concordance (binary variables): fraction of controls whose value equals
  their paired case's value
- case and control averages (continuous variables)
- univariate p-values: one logistic model of case status per variable
- multivariate p-values: one joint logistic model of all variables

Each derived metric is computed on first read and cached.
"""

import threading
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import (
    CollaboratorFailure,
    ConfigurationError,
    DataIntegrityError,
    OrphanedControlError,
    TypeMisuseError,
)
from .regression import fit_logistic as default_fit_logistic
from .variables import MatchingVariable
from .warnings_util import warn


class MetricState(Enum):
    EMPTY = "empty"
    COMPUTED = "computed"


CONCORDANCE = "concordance"
AVERAGES = "averages"
UNIVARIATE_P = "univariate_p"
MULTIVARIATE_P = "multivariate_p"


class DataBox:
    """
    Per-(sample, variable) value store for one evaluation run.

    Parameters
    ----------
    matching_variables : Sequence[MatchingVariable]
        Variables to evaluate; their classification must be final (explicit or
        frozen) before the first record_data() call
    control_case_pairings : Mapping[str, str]
        Control id -> paired case id
    case_ids : Optional[Iterable[str]]
        Extra case ids to accept (cases without any paired control)
    fit_logistic : Callable
        Regression collaborator, see ccmatch.regression.fit_logistic
    """

    def __init__(
        self,
        matching_variables: Sequence[MatchingVariable],
        control_case_pairings: Mapping[str, str],
        case_ids: Optional[Iterable[str]] = None,
        fit_logistic: Callable = default_fit_logistic,
    ):
        names = [mv.header_name for mv in matching_variables]
        if not names:
            raise ConfigurationError("A DataBox needs at least one matching variable")
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Matching variable names must be unique, got {names}")
        self.variables: List[MatchingVariable] = list(matching_variables)
        self._position: Dict[str, int] = {name: i for i, name in enumerate(names)}

        self.pairings: Dict[str, str] = dict(control_case_pairings)
        self.control_ids = set(self.pairings)
        self.case_ids = set(self.pairings.values()) | set(case_ids or ())
        both = self.case_ids & self.control_ids
        if both:
            raise DataIntegrityError(
                f"Sample ids listed as both case and control: {sorted(both)[:10]}"
            )
        self.total_sample_count = len(self.case_ids) + len(self.control_ids)
        self.fit_logistic = fit_logistic

        self._values: Optional[Dict[str, np.ndarray]] = None
        self._sample_ids: List[str] = []
        self._row_by_id: Dict[str, int] = {}

        self._lock = threading.Lock()
        self._state = {m: MetricState.EMPTY for m in (CONCORDANCE, AVERAGES, UNIVARIATE_P, MULTIVARIATE_P)}
        self._results: Dict[str, Dict[str, np.ndarray]] = {}

    @property
    def n_recorded(self) -> int:
        return len(self._sample_ids)

    def _allocate(self) -> None:
        for mv in self.variables:
            if not mv.is_frozen:
                raise TypeMisuseError(
                    f"Classification of {mv.header_name!r} must be frozen before "
                    f"recording data"
                )
            if mv.header_index is None:
                raise DataIntegrityError(
                    f"Matching variable {mv.header_name!r} is not bound to a header "
                    f"column; call find_index_in_header() first"
                )
        self._values = {
            mv.header_name: np.zeros(
                self.total_sample_count, dtype=np.int64 if mv.is_binary else np.float64
            )
            for mv in self.variables
        }

    def _parse(self, mv: MatchingVariable, row: Sequence[str], sample_id: str):
        if mv.header_index >= len(row):
            raise DataIntegrityError(
                f"Row for sample {sample_id!r} has {len(row)} values; expected a value for "
                f"{mv.header_name!r} at column {mv.header_index}"
            )
        raw = row[mv.header_index]
        try:
            value = float(raw)
        except ValueError:
            raise DataIntegrityError(
                f"Expected a numeric value for {mv.header_name!r} in sample "
                f"{sample_id!r}, found {raw!r}"
            ) from None
        if mv.is_binary:
            if not value.is_integer():
                raise DataIntegrityError(
                    f"Binary variable {mv.header_name!r} expects integer values, found "
                    f"{raw!r} for sample {sample_id!r}"
                )
            return int(value)
        return value

    def record_data(self, row: Sequence[str]) -> bool:
        """
        Record one phenotype row (column 0 is the sample id).

        Returns
        -------
        bool
            True if the row belonged to a case or control and was stored,
            False if the sample id is not part of the match
        """
        sample_id = row[0]
        if sample_id not in self.case_ids and sample_id not in self.control_ids:
            return False
        if sample_id in self._row_by_id:
            raise DataIntegrityError(f"Found the same sample ID twice: {sample_id!r}")
        if self._values is None:
            self._allocate()

        parsed = [self._parse(mv, row, sample_id) for mv in self.variables]
        index = len(self._sample_ids)
        for mv, value in zip(self.variables, parsed):
            self._values[mv.header_name][index] = value
        self._row_by_id[sample_id] = index
        self._sample_ids.append(sample_id)
        return True

    def _column(self, mv: MatchingVariable) -> np.ndarray:
        if self._values is None:
            return np.zeros(0)
        return self._values[mv.header_name][: self.n_recorded]

    def _is_case(self) -> np.ndarray:
        return np.array([sid in self.case_ids for sid in self._sample_ids], dtype=bool)

    def _lookup(self, mv: MatchingVariable) -> int:
        if mv.header_name not in self._position:
            raise ConfigurationError(
                f"{mv.header_name!r} is not one of this DataBox's matching variables"
            )
        return self._position[mv.header_name]

    def _case_row(self, control_id: str) -> int:
        case_id = self.pairings[control_id]
        if case_id not in self._row_by_id:
            raise OrphanedControlError(control_id, case_id)
        return self._row_by_id[case_id]

    def _require_case_coverage(self) -> None:
        missing = self.case_ids - set(self._row_by_id)
        if missing:
            raise DataIntegrityError(
                f"{len(missing)} of {len(self.case_ids)} cases have no recorded values, "
                f"e.g. {sorted(missing)[:5]}"
            )

    def _compute_concordances(self) -> Dict[str, np.ndarray]:
        binary = [mv for mv in self.variables if mv.is_binary]
        match_counts = np.zeros(len(binary), dtype=np.int64)
        for row, sample_id in enumerate(self._sample_ids):
            if sample_id not in self.control_ids:
                continue
            case_row = self._case_row(sample_id)
            for vi, mv in enumerate(binary):
                values = self._values[mv.header_name]
                if values[row] == values[case_row]:
                    match_counts[vi] += 1

        concordances = np.full(len(self.variables), np.nan)
        n_controls = len(self.pairings)
        for vi, mv in enumerate(binary):
            # directional: divided by the number of controls, not of pairs compared
            concordances[self._position[mv.header_name]] = (
                match_counts[vi] / n_controls if n_controls else np.nan
            )
        return {CONCORDANCE: concordances}

    def _compute_averages(self) -> Dict[str, np.ndarray]:
        self._require_case_coverage()
        is_case = self._is_case()
        case_avg = np.full(len(self.variables), np.nan)
        control_avg = np.full(len(self.variables), np.nan)
        for i, mv in enumerate(self.variables):
            if mv.is_binary:
                continue
            column = self._column(mv)
            if is_case.any():
                case_avg[i] = column[is_case].mean()
            if (~is_case).any():
                control_avg[i] = column[~is_case].mean()
        return {"case_avg": case_avg, "control_avg": control_avg}

    def _outcome(self) -> np.ndarray:
        self._require_case_coverage()
        return self._is_case().astype(float)

    def _compute_univariate_p(self) -> Dict[str, np.ndarray]:
        y = self._outcome()
        p_values = np.full(len(self.variables), np.nan)
        for i, mv in enumerate(self.variables):
            fit = self.fit_logistic(y, self._column(mv).astype(float), [mv.header_name])
            if fit.dropped:
                warn(
                    f"{mv.header_name!r} was dropped from its univariate model "
                    f"(constant values); univariate p is NaN"
                )
            p_values[i] = fit.overall_p
        return {UNIVARIATE_P: p_values}

    def _compute_multivariate_p(self) -> Dict[str, np.ndarray]:
        y = self._outcome()
        names = [mv.header_name for mv in self.variables]
        X = np.column_stack([self._column(mv).astype(float) for mv in self.variables])
        fit = self.fit_logistic(y, X, names)
        if fit.dropped:
            warn(
                f"Dropped from the multivariate model (constant or collinear), "
                f"p-values reported as NaN: {fit.dropped}"
            )
        return {MULTIVARIATE_P: np.array([fit.p_values[n] for n in names], dtype=float)}

    def _ensure(self, metric: str) -> Dict[str, np.ndarray]:
        """Compute a metric family once; later calls return the cached result."""
        with self._lock:
            if self._state[metric] is MetricState.EMPTY:
                compute = {
                    CONCORDANCE: self._compute_concordances,
                    AVERAGES: self._compute_averages,
                    UNIVARIATE_P: self._compute_univariate_p,
                    MULTIVARIATE_P: self._compute_multivariate_p,
                }[metric]
                try:
                    self._results[metric] = compute()
                except np.linalg.LinAlgError as exc:
                    raise CollaboratorFailure(str(exc), phase=metric) from exc
                self._state[metric] = MetricState.COMPUTED
            return self._results[metric]

    def compute_concordances(self) -> None:
        self._ensure(CONCORDANCE)

    def compute_averages(self) -> None:
        self._ensure(AVERAGES)

    def compute_univariate_p(self) -> None:
        self._ensure(UNIVARIATE_P)

    def compute_multivariate_p(self) -> None:
        self._ensure(MULTIVARIATE_P)

    def state(self, metric: str) -> MetricState:
        return self._state[metric]

    def concordance(self, mv: MatchingVariable) -> float:
        mv.must_be_binary()
        i = self._lookup(mv)
        return float(self._ensure(CONCORDANCE)[CONCORDANCE][i])

    def case_avg(self, mv: MatchingVariable) -> float:
        mv.cant_be_binary()
        i = self._lookup(mv)
        return float(self._ensure(AVERAGES)["case_avg"][i])

    def control_avg(self, mv: MatchingVariable) -> float:
        mv.cant_be_binary()
        i = self._lookup(mv)
        return float(self._ensure(AVERAGES)["control_avg"][i])

    def univariate_p(self, mv: MatchingVariable) -> float:
        i = self._lookup(mv)
        return float(self._ensure(UNIVARIATE_P)[UNIVARIATE_P][i])

    def multivariate_p(self, mv: MatchingVariable) -> float:
        i = self._lookup(mv)
        return float(self._ensure(MULTIVARIATE_P)[MULTIVARIATE_P][i])

    def to_frame(self) -> pd.DataFrame:
        """Recorded values, one row per sample, indexed by sample id."""
        data = {"status": [1 if sid in self.case_ids else 0 for sid in self._sample_ids]}
        for mv in self.variables:
            data[mv.header_name] = self._column(mv)
        return pd.DataFrame(data, index=pd.Index(self._sample_ids, name="id"))
