"""
Factor loading configuration for ccmatch.

A factor loading string lists the sample-file columns used for matching and
how each one is used, e.g. ``"PC1:4,PC2:4,sex:force,site:nominal:2"``:

- ``name:force``            exact-match stratification column
- ``name:nominal[:weight]`` categorical column, one-hot encoded and weighted
                            (default weight 1.0)
- ``name:<number>``         numeric column, weighted by the number
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

from .errors import ConfigurationError
from .utils import _discover_column

FORCE = "force"
NOMINAL = "nominal"
NUMERIC = "numeric"

DEFAULT_NOMINAL_WEIGHT = 1.0


@dataclass(frozen=True)
class FactorLoading:
    """How one sample-file column takes part in matching."""

    name: str
    kind: str
    weight: Optional[float] = None

    @property
    def is_forced(self) -> bool:
        return self.kind == FORCE

    @property
    def is_nominal(self) -> bool:
        return self.kind == NOMINAL

    @property
    def is_numeric(self) -> bool:
        return self.kind == NUMERIC


def _parse_weight(text: str, entry: str) -> float:
    try:
        weight = float(text)
    except ValueError:
        raise ConfigurationError(
            f"Loading {text!r} not recognized in factor entry {entry!r}; expected "
            f"'force', 'nominal', 'nominal:<weight>' or a numeric weight"
        ) from None
    if not math.isfinite(weight):
        raise ConfigurationError(f"Loading weight must be finite, got {text!r} in {entry!r}")
    return weight


def parse_loading(entry: str) -> FactorLoading:
    """Parse one ``name:setting`` entry of a factor loading string."""
    parts = [p.strip() for p in entry.split(":")]
    if len(parts) < 2 or not parts[0]:
        raise ConfigurationError(
            f"Factor entry {entry!r} is not of the form 'name:setting'"
        )
    name, keyword = parts[0], parts[1].lower()

    if keyword == NOMINAL:
        if len(parts) == 2:
            return FactorLoading(name, NOMINAL, DEFAULT_NOMINAL_WEIGHT)
        if len(parts) == 3:
            return FactorLoading(name, NOMINAL, _parse_weight(parts[2], entry))
    elif len(parts) == 2:
        if keyword == FORCE:
            return FactorLoading(name, FORCE)
        return FactorLoading(name, NUMERIC, _parse_weight(parts[1], entry))

    raise ConfigurationError(
        f"Factor entry {entry!r} has {len(parts)} ':'-separated fields; only "
        f"'name:nominal:<weight>' may have three"
    )


class FactorLoadings:
    """
    Ordered mapping of column name to FactorLoading, parsed from a loading string.

    Parsing is all-or-nothing: any bad entry raises ConfigurationError from
    the constructor, so a partially valid configuration never exists.

    Parameters
    ----------
    factors_arg : str
        Comma-separated ``name:setting`` entries
    """

    def __init__(self, factors_arg: str):
        self.factors_arg = factors_arg
        self._loadings: Dict[str, FactorLoading] = {}
        for entry in factors_arg.split(","):
            if not entry.strip():
                continue
            loading = parse_loading(entry)
            if loading.name in self._loadings:
                raise ConfigurationError(
                    f"Factor {loading.name!r} is listed more than once in {factors_arg!r}"
                )
            self._loadings[loading.name] = loading
        if not self._loadings:
            raise ConfigurationError(f"No factors found in {factors_arg!r}")

    def __iter__(self) -> Iterator[FactorLoading]:
        return iter(self._loadings.values())

    def __len__(self) -> int:
        return len(self._loadings)

    def __contains__(self, name: str) -> bool:
        return name in self._loadings

    def __repr__(self) -> str:
        return f"FactorLoadings({self.factors_arg!r})"

    def loading(self, name: str) -> FactorLoading:
        """Look up the loading configured for ``name``."""
        if name not in self._loadings:
            raise ConfigurationError(
                f"No loading configured for {name!r}; configured: {list(self._loadings)}"
            )
        return self._loadings[name]

    def numeric_factor_names(self, include_nominal: bool = False) -> List[str]:
        """Weighted (distance) factors in configuration order."""
        return [
            f.name for f in self
            if f.is_numeric or (include_nominal and f.is_nominal)
        ]

    def nominal_factor_names(self) -> List[str]:
        return [f.name for f in self if f.is_nominal]

    def forced_factor_names(self) -> List[str]:
        """Stratification (exact match) factors in configuration order."""
        return [f.name for f in self if f.is_forced]

    def weights(self, include_nominal: bool = False) -> List[float]:
        """Weights aligned with ``numeric_factor_names(include_nominal)``."""
        return [self._loadings[n].weight for n in self.numeric_factor_names(include_nominal)]

    def validate_header(self, header: Sequence[str]) -> Dict[str, int]:
        """
        Check that every configured name matches exactly one header column.

        Returns
        -------
        Dict[str, int]
            Column index of each configured factor
        """
        return {f.name: _discover_column(header, f.name) for f in self}
