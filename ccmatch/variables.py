"""
Matching variables evaluated after matching.

A MatchingVariable names one phenotype column and carries its binary or
continuous classification. The classification is either given explicitly or
inferred in a scan pass over the data:

- it starts as binary
- it becomes continuous once more than two distinct values are seen or the
  observed range exceeds 1, and never goes back

After the scan the classification is frozen, and the statistics that only make
sense for one kind of variable refuse to run for the other kind.
"""

from typing import TYPE_CHECKING, List, Optional, Sequence

from .errors import ConfigurationError, TypeMisuseError
from .utils import format_decimal, read_header

if TYPE_CHECKING:
    from .databox import DataBox

BINARY = "binary"
CONTINUOUS = "continuous"

VARIABLE_FILE_HEADER = ["header_name", "is_binary"]


class MatchingVariable:
    """
    One phenotype column used to judge match quality.

    Parameters
    ----------
    header_name : str
        Column name in the phenotype file
    is_binary : Optional[bool]
        Explicit classification; None to infer it from the data with
        observe() and freeze()
    """

    def __init__(self, header_name: str, is_binary: Optional[bool] = None):
        self.header_name = header_name
        self.pretty_name = header_name
        self.header_index: Optional[int] = None

        self._explicit = is_binary is not None
        self._is_binary = True if is_binary is None else bool(is_binary)
        self._frozen = self._explicit
        self._distinct = set()
        self._min: Optional[float] = None
        self._max: Optional[float] = None

    def __repr__(self) -> str:
        how = "explicit" if self._explicit else ("inferred" if self._frozen else "inferring")
        return f"MatchingVariable({self.header_name!r}, {self.classification}, {how})"

    @property
    def is_binary(self) -> bool:
        return self._is_binary

    @property
    def classification(self) -> str:
        return BINARY if self._is_binary else CONTINUOUS

    @property
    def is_explicit(self) -> bool:
        return self._explicit

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def observe(self, value: float) -> None:
        """Feed one value to classification inference (scan pass only)."""
        if self._explicit:
            return
        if self._frozen:
            raise TypeMisuseError(
                f"Classification of {self.header_name!r} is frozen; observe() is only "
                f"allowed during the scan pass"
            )
        if not self._is_binary:
            return

        self._distinct.add(value)
        self._min = value if self._min is None else min(self._min, value)
        self._max = value if self._max is None else max(self._max, value)
        if len(self._distinct) > 2 or self._max - self._min > 1:
            self._is_binary = False
            self._distinct = set()

    def freeze(self) -> None:
        """End the scan pass; the classification is fixed from here on."""
        self._frozen = True

    def find_index_in_header(self, header: Sequence[str]) -> Optional[int]:
        """Bind this variable to its column; None when the column is absent."""
        try:
            self.header_index = list(header).index(self.header_name)
        except ValueError:
            self.header_index = None
        return self.header_index

    def must_be_binary(self) -> None:
        if not self._is_binary:
            raise TypeMisuseError(
                f"This operation is not supported for non-binary matching variables "
                f"({self.header_name!r} is {self.classification})"
            )

    def cant_be_binary(self) -> None:
        if self._is_binary:
            raise TypeMisuseError(
                f"This operation is not supported for binary matching variables "
                f"({self.header_name!r} is {self.classification})"
            )

    def concordance(self, box: "DataBox") -> float:
        self.must_be_binary()
        return box.concordance(self)

    def case_avg(self, box: "DataBox") -> float:
        self.cant_be_binary()
        return box.case_avg(self)

    def control_avg(self, box: "DataBox") -> float:
        self.cant_be_binary()
        return box.control_avg(self)

    def univariate_p(self, box: "DataBox") -> float:
        return box.univariate_p(self)

    def multivariate_p(self, box: "DataBox") -> float:
        return box.multivariate_p(self)

    def table_line(self, box: "DataBox") -> str:
        """Tab-separated report line; NA where a statistic does not apply."""
        if self._is_binary:
            case_avg = control_avg = None
            concordance = self.concordance(box)
        else:
            case_avg = self.case_avg(box)
            control_avg = self.control_avg(box)
            concordance = None
        return "\t".join(
            [
                self.header_name,
                format_decimal(case_avg),
                format_decimal(control_avg),
                format_decimal(concordance),
                format_decimal(self.univariate_p(box)),
                format_decimal(self.multivariate_p(box)),
            ]
        )

    @classmethod
    def from_string(cls, line: str) -> "MatchingVariable":
        """Parse a ``header_name<TAB>is_binary`` line."""
        values = line.strip().split("\t")
        if len(values) != 2:
            raise ConfigurationError(
                f"Matching variable line should have 2 tab-separated values, "
                f"found {len(values)}: {line!r}"
            )
        name, flag = values[0].strip(), values[1].strip().lower()
        if flag not in ("true", "false"):
            raise ConfigurationError(
                f"is_binary for {name!r} must be 'true' or 'false', got {values[1]!r}"
            )
        return cls(name, flag == "true")

    @classmethod
    def from_file(cls, path) -> List["MatchingVariable"]:
        """Read matching variables from a ``header_name<TAB>is_binary`` TSV."""
        header = read_header(path)
        if [h.strip() for h in header] != VARIABLE_FILE_HEADER:
            raise ConfigurationError(
                f"Matching variable file {path} has header {header}, "
                f"expected {VARIABLE_FILE_HEADER}"
            )
        with open(path) as handle:
            next(handle)
            return [cls.from_string(line) for line in handle if line.strip()]


def parse_matching_variables(arg: str) -> List[MatchingVariable]:
    """
    Parse ``"age;sex:binary;bmi:continuous"`` into matching variables.

    Names without a classification are inferred from the data.
    """
    variables = []
    for entry in arg.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        name, _, kind = entry.partition(":")
        kind = kind.strip().lower()
        if kind == "":
            variables.append(MatchingVariable(name.strip()))
        elif kind in (BINARY, CONTINUOUS):
            variables.append(MatchingVariable(name.strip(), kind == BINARY))
        else:
            raise ConfigurationError(
                f"Matching variable {entry!r}: classification must be "
                f"'{BINARY}' or '{CONTINUOUS}'"
            )
    if not variables:
        raise ConfigurationError(f"No matching variables found in {arg!r}")
    return variables
