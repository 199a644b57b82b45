"""
Logistic regression of case/control status on matching variables.

fit_logistic() fits ``outcome ~ 1 + predictors`` with statsmodels and reports
the likelihood-ratio p-value of the whole model and the Wald p-value of each
predictor. Predictors that are constant or linearly dependent on earlier
predictors are dropped before fitting and reported with a NaN p-value.
"""

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import numpy as np
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationError

from .errors import CollaboratorFailure, ConfigurationError
from .warnings_util import warn

PHASE = "logistic regression"


@dataclass
class LogisticFit:
    """Significance results of one logistic model."""

    overall_p: float
    p_values: Dict[str, float]
    dropped: List[str] = field(default_factory=list)


def _independent_columns(X: np.ndarray) -> List[int]:
    """Indices of columns kept after removing constant and collinear columns."""
    n = X.shape[0]
    kept: List[int] = []
    design = np.ones((n, 1))
    for j in range(X.shape[1]):
        column = X[:, j]
        if np.ptp(column) == 0:
            continue
        candidate = np.column_stack([design, column])
        if np.linalg.matrix_rank(candidate) == candidate.shape[1]:
            design = candidate
            kept.append(j)
    return kept


def fit_logistic(
    outcome: Sequence[float],
    predictors,
    names: Sequence[str],
) -> LogisticFit:
    """
    Fit a logistic model of outcome (1 = case, 0 = control) on predictors.

    Parameters
    ----------
    outcome : Sequence[float]
        0/1 outcome per sample
    predictors : array-like
        Matrix of shape (n_samples, n_predictors)
    names : Sequence[str]
        Predictor names, one per predictor column

    Returns
    -------
    LogisticFit
        overall_p: likelihood-ratio test p-value against the intercept-only model
        p_values: per-predictor Wald p-value (NaN for dropped predictors)
        dropped: names of dropped predictors
    """
    y = np.asarray(outcome, dtype=float)
    X = np.asarray(predictors, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.shape[0] != y.shape[0]:
        raise ConfigurationError(
            f"Outcome has {y.shape[0]} values but predictors have {X.shape[0]} rows"
        )
    if X.shape[1] != len(names):
        raise ConfigurationError(
            f"Got {len(names)} predictor names for {X.shape[1]} predictor columns"
        )
    if len(np.unique(y)) != 2:
        raise CollaboratorFailure(
            f"Outcome needs both cases and controls, found values {sorted(set(y.tolist()))}",
            phase=PHASE,
        )

    kept = _independent_columns(X)
    dropped = [names[j] for j in range(len(names)) if j not in kept]
    p_values = {name: float("nan") for name in names}
    if not kept:
        return LogisticFit(float("nan"), p_values, dropped)

    design = sm.add_constant(X[:, kept], has_constant="add")
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            result = sm.Logit(y, design).fit(disp=False)
        except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as exc:
            raise CollaboratorFailure(
                f"Logit fit on {[names[j] for j in kept]} failed: {exc}", phase=PHASE
            ) from exc

    for w in caught:
        if issubclass(w.category, (ConvergenceWarning, RuntimeWarning)) or "separation" in str(
            w.message
        ).lower():
            warn(f"{PHASE} on {[names[j] for j in kept]}: {w.message}")

    # result.pvalues[0] is the intercept
    for position, j in enumerate(kept, start=1):
        p_values[names[j]] = float(result.pvalues[position])
    return LogisticFit(float(result.llr_pvalue), p_values, dropped)
