"""
ccmatch: stratified case/control matching and match-quality evaluation.

ccmatch selects, for every case in an observational study, a fixed number of
covariate-matched controls within exact-match strata (nearest-neighbor search
followed by duplicate resolution), then evaluates how well matched the result
is (concordance, case/control averages, logistic-regression p-values).
"""

from .databox import DataBox
from .errors import (
    CCMatchError,
    CollaboratorFailure,
    ConfigurationError,
    DataIntegrityError,
    OrphanedControlError,
    TypeMisuseError,
)
from .features import expand_nominal_variables, normalize_factors
from .loadings import FactorLoadings
from .matching import MatchResult, StratumResult, run_matching
from .optimize import optimize
from .stratify import Match, Sample, stratify_samples
from .summary import REval, evaluate_matches, read_pairings
from .variables import MatchingVariable, parse_matching_variables

__version__ = "0.1.0"
__all__ = [
    "FactorLoadings",
    "normalize_factors",
    "expand_nominal_variables",
    "stratify_samples",
    "Sample",
    "Match",
    "run_matching",
    "MatchResult",
    "StratumResult",
    "optimize",
    "MatchingVariable",
    "parse_matching_variables",
    "DataBox",
    "REval",
    "read_pairings",
    "evaluate_matches",
    "CCMatchError",
    "ConfigurationError",
    "DataIntegrityError",
    "OrphanedControlError",
    "CollaboratorFailure",
    "TypeMisuseError",
]
