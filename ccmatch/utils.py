"""
Shared utility functions for ccmatch.

This module contains header/column discovery and the TSV reading and writing
helpers used across the matching and evaluation modules.
"""

import csv
import os
import re
import tempfile
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, TextIO, Tuple

import pandas as pd

from .errors import ConfigurationError, DataIntegrityError

# Sample file layout: column 0 holds the id, column 1 the case/control status
ID_COLUMN = 0
STATUS_COLUMN = 1
CASE_STATUS = "1"
CONTROL_STATUS = "0"

STATUS_FILE_HEADER = ["id", "status", "matched_case_id"]
NA = "NA"


def read_header(path) -> List[str]:
    """Read the tab-separated header row of a file."""
    try:
        with open(path) as handle:
            line = handle.readline()
    except OSError as exc:
        raise ConfigurationError(f"Unable to read file {path}: {exc}") from exc
    if not line.strip():
        raise DataIntegrityError(f"File {path} is empty; expected a header row")
    return line.rstrip("\r\n").split("\t")


def read_sample_table(path) -> pd.DataFrame:
    """
    Load a tab-separated sample file with every value kept as a string.

    Parameters
    ----------
    path : str or Path
        Sample file with a header row

    Returns
    -------
    pd.DataFrame
        One row per sample, columns in header order, no NA conversion
    """
    header = read_header(path)
    if len(set(header)) != len(header):
        duplicated = sorted({c for c in header if header.count(c) > 1})
        raise DataIntegrityError(
            f"Sample file {path} has duplicated header columns: {duplicated}"
        )
    try:
        df = pd.read_csv(
            path,
            sep="\t",
            dtype=str,
            keep_default_na=False,
            na_filter=False,
            quoting=csv.QUOTE_NONE,
        )
    except (OSError, pd.errors.ParserError) as exc:
        raise ConfigurationError(f"Unable to read sample file {path}: {exc}") from exc
    if df.shape[1] < 2:
        raise DataIntegrityError(
            f"Sample file {path} needs an id column and a status column, "
            f"found columns: {list(df.columns)}"
        )
    return df


def _discover_column(header: Sequence[str], name: str, source: str = "sample file") -> int:
    """Find the single header column called ``name``."""
    matches = [i for i, c in enumerate(header) if c == name]
    if len(matches) != 1:
        raise ConfigurationError(
            f"Expected exactly one column named {name!r} in the {source}, "
            f"found {len(matches)} in header: {list(header)}"
        )
    return matches[0]


def _to_float(value: str, column: str, sample_id: str) -> float:
    """Parse one cell as a float, naming the cell on failure."""
    try:
        return float(value)
    except (TypeError, ValueError):
        raise DataIntegrityError(
            f"Expected a numeric value in column {column!r} for sample "
            f"{sample_id!r}, found {value!r}"
        ) from None


def stratum_slug(key: str) -> str:
    """Make a stratum key safe to use in a file name."""
    if key == "":
        return "all"
    slug = re.sub(r"[^A-Za-z0-9.=-]+", "_", key).strip("._")
    return slug or "stratum"


@contextmanager
def atomic_writer(path) -> Iterator[TextIO]:
    """
    Open a temporary file next to ``path`` and move it into place on success.

    If the body raises, the temporary file is removed and ``path`` is left
    untouched, so a failed write never leaves a partial output behind.
    """
    fd, tmp_path = _temp_file_for(path)
    try:
        with os.fdopen(fd, "w", newline="") as handle:
            yield handle
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _temp_file_for(path) -> Tuple[int, str]:
    directory = os.path.dirname(os.path.abspath(path))
    return tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)


def _write_rows(handle: TextIO, header: Sequence[str], rows) -> None:
    handle.write("\t".join(header) + "\n")
    for row in rows:
        handle.write("\t".join(str(v) for v in row) + "\n")


def write_tsv(path, header: Sequence[str], rows) -> None:
    """Write a header and rows of string cells as TSV, atomically."""
    with atomic_writer(path) as handle:
        _write_rows(handle, header, rows)


def write_tsv_group(files: Sequence[Tuple[str, Sequence[str], list]]) -> None:
    """
    Write several TSV files so that either all of them end up in place or none.

    Parameters
    ----------
    files : Sequence[Tuple[str, Sequence[str], list]]
        (path, header, rows) per file

    Every file is first written to a temporary file next to its target, then
    the temporaries are moved into place. If any step fails, the temporaries
    and the targets already moved into place are removed before re-raising.
    """
    staged: List[Tuple[str, str]] = []
    placed: List[str] = []
    try:
        for path, header, rows in files:
            fd, tmp_path = _temp_file_for(path)
            staged.append((tmp_path, path))
            with os.fdopen(fd, "w", newline="") as handle:
                _write_rows(handle, header, rows)
        for tmp_path, path in staged:
            os.replace(tmp_path, path)
            placed.append(path)
    except BaseException:
        for tmp_path, _ in staged:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
        for path in placed:
            if os.path.isfile(path):
                os.unlink(path)
        raise


def write_frame(path, df: pd.DataFrame) -> None:
    """Write a DataFrame of strings as TSV (no index), atomically."""
    with atomic_writer(path) as handle:
        df.to_csv(
            handle, sep="\t", index=False, quoting=csv.QUOTE_NONE,
            escapechar="\\", lineterminator="\n",
        )


def format_decimal(value: Optional[float], digits: int = 5) -> str:
    """Format a statistic for a report cell; NaN and None render as NA."""
    if value is None or value != value:
        return NA
    return f"{value:.{digits}f}"
