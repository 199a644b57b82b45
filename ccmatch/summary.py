"""
Match-quality evaluation for ccmatch.

REval reads a status file written by run_matching() together with a
phenotype file, fills a DataBox with the values of the matching variables
for every case and control, and reports per variable:

- case and control averages (continuous variables)
- concordance between each control and its case (binary variables)
- univariate and multivariate logistic-regression p-values for case status
"""

import os
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .databox import DataBox
from .errors import ConfigurationError, DataIntegrityError
from .regression import fit_logistic as default_fit_logistic
from .utils import (
    CASE_STATUS,
    ID_COLUMN,
    STATUS_FILE_HEADER,
    _to_float,
    atomic_writer,
    read_header,
    read_sample_table,
)
from .variables import MatchingVariable, parse_matching_variables
from .warnings_util import warn

REPORT_HEADER = [
    "variable_name",
    "case_avg",
    "control_avg",
    "concordance",
    "univariate_p",
    "multivariate_p",
]


def read_pairings(status_path) -> Tuple[Dict[str, str], List[str]]:
    """
    Read control -> case pairings from a status file.

    Parameters
    ----------
    status_path : str or Path
        TSV with header ``id, status, matched_case_id``

    Returns
    -------
    Tuple[Dict[str, str], List[str]]
        Control id -> case id, and the case ids in file order

    Raises
    ------
    DataIntegrityError
        Wrong header, a control paired to two different cases, or a control
        whose case has no case row
    """
    header = read_header(status_path)
    if [h.strip() for h in header] != STATUS_FILE_HEADER:
        raise DataIntegrityError(
            f"Status file {status_path} has header {header}, expected {STATUS_FILE_HEADER}"
        )
    status = read_sample_table(status_path)

    pairings: Dict[str, str] = {}
    case_ids: List[str] = []
    for sample_id, role, case_id in status.itertuples(index=False, name=None):
        if role.strip() == CASE_STATUS:
            case_ids.append(sample_id)
            continue
        previous = pairings.setdefault(sample_id, case_id)
        if previous != case_id:
            raise DataIntegrityError(
                f"Control {sample_id!r} is paired to two cases ({previous!r} and "
                f"{case_id!r}); evaluation needs matches made without control reuse"
            )

    known_cases = set(case_ids)
    orphans = sorted({c for c in pairings.values() if c not in known_cases})
    if orphans:
        raise DataIntegrityError(
            f"Status file {status_path} pairs controls to cases with no case row: {orphans[:10]}"
        )
    return pairings, case_ids


class REval:
    """
    Evaluate a finished match against phenotype data.

    Parameters
    ----------
    matching_variables : Sequence[MatchingVariable] or str
        Variables to evaluate, or a string for parse_matching_variables()
    status_path : str or Path
        Status file from run_matching()
    phenotype_path : str or Path
        Phenotype TSV: column 0 is the sample id, then one column per variable
    verbose : bool
        If True, print progress and the report table
    """

    def __init__(
        self,
        matching_variables: Union[Sequence[MatchingVariable], str],
        status_path,
        phenotype_path,
        verbose: bool = True,
        fit_logistic=default_fit_logistic,
    ):
        if isinstance(matching_variables, str):
            matching_variables = parse_matching_variables(matching_variables)
        names = [mv.header_name for mv in matching_variables]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise ConfigurationError(f"Matching variables listed more than once: {duplicated}")
        for path in (status_path, phenotype_path):
            if not os.path.isfile(str(path)):
                raise ConfigurationError(f"File {path} not found")

        self.matching_variables: List[MatchingVariable] = list(matching_variables)
        self.status_path = str(status_path)
        self.phenotype_path = str(phenotype_path)
        self.verbose = verbose

        self.pairings, self.case_ids = read_pairings(self.status_path)
        self.box = DataBox(
            self.matching_variables,
            self.pairings,
            case_ids=self.case_ids,
            fit_logistic=fit_logistic,
        )
        self._loaded = False

    def read_phenotype_file(self) -> None:
        """
        Load phenotype values into the DataBox.

        The file is read in two phases: a scan pass over case and control rows
        settles the classification of every inferred variable, then the
        classifications are frozen and the values are recorded.
        """
        if self._loaded:
            return
        header = read_header(self.phenotype_path)
        missing = [
            mv.header_name
            for mv in self.matching_variables
            if mv.find_index_in_header(header) is None
        ]
        if missing:
            raise DataIntegrityError(
                f"Phenotype file {self.phenotype_path} is missing columns {missing}; "
                f"expected a header containing {[mv.header_name for mv in self.matching_variables]}, "
                f"found {header}"
            )

        phenotypes = read_sample_table(self.phenotype_path)
        universe = set(self.case_ids) | set(self.pairings)

        inferred = [mv for mv in self.matching_variables if not mv.is_explicit]
        if inferred:
            for row in phenotypes.itertuples(index=False, name=None):
                sample_id = row[ID_COLUMN]
                if sample_id not in universe:
                    continue
                for mv in inferred:
                    mv.observe(_to_float(row[mv.header_index], mv.header_name, sample_id))
        for mv in self.matching_variables:
            mv.freeze()

        n_recorded = 0
        for row in phenotypes.itertuples(index=False, name=None):
            if self.box.record_data(row):
                n_recorded += 1
        self._loaded = True

        if self.verbose:
            print(
                f"Recorded {n_recorded} of {len(universe)} matched samples "
                f"({len(self.case_ids)} cases, {len(self.pairings)} controls)"
            )
            for mv in self.matching_variables:
                print(f"  {mv.header_name}: {mv.classification}")

    def report(self, threshold_p: Optional[float] = 0.05) -> pd.DataFrame:
        """
        Per-variable match-quality statistics.

        Parameters
        ----------
        threshold_p : Optional[float]
            Warn about variables whose multivariate p-value falls below this
            value (None to disable)

        Returns
        -------
        pd.DataFrame
            Columns variable_name, case_avg, control_avg, concordance,
            univariate_p, multivariate_p; NaN where a statistic does not apply
        """
        self.read_phenotype_file()
        rows = []
        for mv in self.matching_variables:
            if mv.is_binary:
                case_avg = control_avg = np.nan
                concordance = mv.concordance(self.box)
            else:
                case_avg = mv.case_avg(self.box)
                control_avg = mv.control_avg(self.box)
                concordance = np.nan
            rows.append(
                {
                    "variable_name": mv.header_name,
                    "case_avg": case_avg,
                    "control_avg": control_avg,
                    "concordance": concordance,
                    "univariate_p": mv.univariate_p(self.box),
                    "multivariate_p": mv.multivariate_p(self.box),
                }
            )
        report_df = pd.DataFrame(rows, columns=REPORT_HEADER)

        if self.verbose:
            _print_report_table(report_df)
        if threshold_p is not None:
            _check_p_thresholds(report_df, threshold_p)
        return report_df

    def write_table_output(self, output_path) -> str:
        """Write the report as TSV; an existing output file is never overwritten."""
        output_path = str(output_path)
        if os.path.exists(output_path):
            raise ConfigurationError(
                f"Output file {output_path} already exists; remove it or choose another path"
            )
        self.read_phenotype_file()
        lines = [mv.table_line(self.box) for mv in self.matching_variables]
        with atomic_writer(output_path) as handle:
            handle.write("\t".join(REPORT_HEADER) + "\n")
            for line in lines:
                handle.write(line + "\n")
        if self.verbose:
            print(f"wrote {output_path}")
        return output_path


def evaluate_matches(
    matching_variables: Union[Sequence[MatchingVariable], str],
    status_path,
    phenotype_path,
    output_path=None,
    verbose: bool = True,
    fit_logistic=default_fit_logistic,
) -> pd.DataFrame:
    """
    Read, report and (optionally) write the evaluation of a match in one call.

    Returns
    -------
    pd.DataFrame
        The report, see REval.report()
    """
    evaluation = REval(
        matching_variables, status_path, phenotype_path, verbose=verbose, fit_logistic=fit_logistic
    )
    evaluation.read_phenotype_file()
    report_df = evaluation.report()
    if output_path is not None:
        evaluation.write_table_output(output_path)
    return report_df


def _print_report_table(report_df: pd.DataFrame) -> None:
    """Print formatted match-quality table."""
    print("\nMatch Quality Summary")
    print("=" * 90)

    display_df = report_df.copy()
    display_df.columns = [
        "Variable", "Case Avg", "Control Avg", "Concordance", "Univariate p", "Multivariate p"
    ]
    for col in display_df.columns[1:]:
        display_df[col] = display_df[col].apply(
            lambda x: f"{x:.5f}" if pd.notna(x) and not np.isinf(x) else "-"
        )

    print(display_df.to_string(index=False))
    print("=" * 90)


def _check_p_thresholds(report_df: pd.DataFrame, threshold_p: float) -> None:
    """Warn about variables that still predict case status after matching."""
    poor = report_df[report_df["multivariate_p"] < threshold_p]
    if len(poor) > 0:
        warn(
            f"Residual imbalance: {len(poor)} variable(s) predict case status with "
            f"multivariate p < {threshold_p}: {', '.join(poor['variable_name'].tolist())}"
        )
