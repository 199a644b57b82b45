"""
Stratified nearest-neighbor matching for ccmatch.

For each stratum (cases and controls sharing the same forced factor values)
this module:
1. Indexes the stratum's control vectors
2. Retrieves final_num_select * multiplier nearest controls for every case
   (the "naive" match set, in which a control may serve several cases)
3. Hands the naive set to the duplicate-resolution optimizer, which keeps at
   most final_num_select controls per case
4. Writes match and status files for the stratum

Strata are isolated from each other: a failing stratum is reported and
recorded in the result while the others proceed.
"""

import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

import pandas as pd
from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import (
    ArrayType,
    DoubleType,
    IntegerType,
    LongType,
    StringType,
    StructField,
    StructType,
)

from .errors import CCMatchError, CollaboratorFailure, ConfigurationError
from .features import NORMALIZE_METHODS, expand_nominal_variables, normalize_factors
from .loadings import FactorLoadings
from .neighbors import build_index as default_build_index
from .neighbors import nearest as default_nearest
from .optimize import optimize as default_optimize
from .stratify import CASE, CONTROL, Match, StratifiedSamples, Stratum, stratify_samples
from .utils import (
    CASE_STATUS,
    CONTROL_STATUS,
    NA,
    STATUS_FILE_HEADER,
    read_header,
    stratum_slug,
    write_tsv,
    write_tsv_group,
)
from .warnings_util import report_failure, warn

NAIVE = "naive"
OPTIMIZED = "optimized"

NN_PHASE = "nearest-neighbor search"
OPTIMIZE_PHASE = "optimization"
WRITE_PHASE = "writing outputs"

RECURSION_HINT = (
    "the optimizer exhausted the stack; rerun with a larger stack_size_mb "
    "and/or recursion_limit"
)


@dataclass
class StratumResult:
    """Outcome of matching one stratum."""

    key: str
    slug: str
    n_cases: int = 0
    n_controls: int = 0
    naive: List[Match] = field(default_factory=list)
    optimized: Optional[List[Match]] = None
    paths: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def final(self) -> List[Match]:
        """Optimized matches when optimization ran, naive matches otherwise."""
        return self.naive if self.optimized is None else self.optimized


@dataclass
class MatchResult:
    """Outcome of run_matching()."""

    strata: List[StratumResult]
    sample_path: str
    naive_status_path: Optional[str] = None
    optimized_status_path: Optional[str] = None
    n_dropped: int = 0

    @property
    def failed(self) -> List[StratumResult]:
        return [s for s in self.strata if not s.ok]

    @property
    def succeeded(self) -> List[StratumResult]:
        return [s for s in self.strata if s.ok]

    @property
    def status_path(self) -> Optional[str]:
        """Combined status file to evaluate: optimized if written, naive otherwise."""
        return self.optimized_status_path or self.naive_status_path

    def matches(self) -> pd.DataFrame:
        """Final matches of every successful stratum as a DataFrame."""
        rows = [
            {
                "stratum": s.key,
                "case_id": m.case_id,
                "control_id": m.control_id,
                "distance": m.distance,
                "rank": m.rank,
            }
            for s in self.succeeded
            for m in s.final
        ]
        return pd.DataFrame(rows, columns=["stratum", "case_id", "control_id", "distance", "rank"])


def output_filename(kind: str, stage: str, slug: Optional[str] = None) -> str:
    """``match.naive.<slug>.txt``; without a slug the combined ``status.naive.txt``."""
    if slug is None:
        return f"{kind}.{stage}.txt"
    return f"{kind}.{stage}.{slug}.txt"


def _existing_outputs(working_dir: str) -> List[str]:
    return sorted(
        name
        for name in os.listdir(working_dir)
        if (name.startswith("match.") or name.startswith("status.")) and name.endswith(".txt")
    )


def naive_matches(
    stratum: Stratum,
    initial_num_select: int,
    build_index: Callable = default_build_index,
    nearest: Callable = default_nearest,
) -> List[Match]:
    """
    Find the initial_num_select nearest controls of every case in a stratum.

    Returns
    -------
    List[Match]
        Matches grouped by case in stratum order, ascending by distance within
        a case (rank 1 = nearest); empty when the stratum has no controls
    """
    if not stratum.cases or not stratum.controls:
        return []
    try:
        index = build_index([c.vector for c in stratum.controls])
        matches = []
        for case in stratum.cases:
            found = nearest(index, case.vector, initial_num_select)
            for rank, (position, distance) in enumerate(found, start=1):
                matches.append(
                    Match(case.id, stratum.controls[position].id, float(distance), rank)
                )
    except CCMatchError:
        raise
    except Exception as exc:
        raise CollaboratorFailure(str(exc), phase=NN_PHASE, stratum=stratum.key) from exc
    return matches


def naive_matches_spark(
    spark: SparkSession,
    stratified: StratifiedSamples,
    initial_num_select: int,
    build_index: Callable = default_build_index,
    nearest: Callable = default_nearest,
) -> Tuple[Dict[str, List[Match]], Dict[str, CollaboratorFailure]]:
    """
    Run the naive nearest-neighbor search with one Spark task per stratum.

    Each stratum is handed to ``find_neighbors`` through
    ``groupBy("group").applyInPandas``; the candidate lists are collected back
    to the driver. A stratum whose search fails returns a single row carrying
    the error instead of its candidates, so the other strata are unaffected.

    Returns
    -------
    Dict[str, List[Match]]
        Stratum key -> naive matches, ordered as naive_matches() orders them
    Dict[str, CollaboratorFailure]
        Stratum key -> failure, for the strata whose search failed
    """
    samples = stratified.to_pandas()
    samples["status"] = samples["status"].astype("int32")
    samples["position"] = samples.groupby(["group", "status"]).cumcount()

    input_schema = StructType(
        [
            StructField("id", StringType()),
            StructField("status", IntegerType()),
            StructField("group", StringType()),
            StructField("vector", ArrayType(DoubleType())),
            StructField("position", LongType()),
        ]
    )
    schema_candidates = StructType(
        [
            StructField("group", StringType()),
            StructField("case_position", LongType()),
            StructField("case_id", StringType()),
            StructField("control_id", StringType()),
            StructField("distance", DoubleType()),
            StructField("rank", IntegerType()),
            StructField("error", StringType()),
        ]
    )

    def search(group_df):
        cases = group_df.loc[group_df["status"] == CASE]
        controls = group_df.loc[group_df["status"] == CONTROL]
        if len(cases) == 0 or len(controls) == 0:
            return []

        group = group_df["group"].iloc[0]
        control_ids = list(controls["id"])
        index = build_index([list(v) for v in controls["vector"]])
        rows = []
        for case_position, case_id, vector in zip(cases["position"], cases["id"], cases["vector"]):
            found = nearest(index, list(vector), initial_num_select)
            for rank, (position, distance) in enumerate(found, start=1):
                rows.append(
                    {
                        "group": group,
                        "case_position": case_position,
                        "case_id": case_id,
                        "control_id": control_ids[position],
                        "distance": float(distance),
                        "rank": rank,
                        "error": None,
                    }
                )
        return rows

    def find_neighbors(group_df):
        """
        Given the rows of one stratum, return its naive case-control candidates.
        """
        group_df = group_df.sort_values("position", kind="mergesort")
        try:
            rows = search(group_df)
        except Exception as exc:
            rows = [
                {
                    "group": group_df["group"].iloc[0],
                    "case_position": -1,
                    "case_id": "",
                    "control_id": "",
                    "distance": float("nan"),
                    "rank": 0,
                    "error": f"{type(exc).__name__}: {exc}",
                }
            ]
        return pd.DataFrame(rows, columns=schema_candidates.fieldNames())

    samples_df: DataFrame = spark.createDataFrame(samples, schema=input_schema)
    try:
        candidates = (
            samples_df.groupBy("group")
            .applyInPandas(find_neighbors, schema=schema_candidates)
            .toPandas()
        )
    except Exception as exc:
        raise CollaboratorFailure(str(exc), phase=f"{NN_PHASE} (spark)") from exc

    failed = candidates["error"].notna()
    failures = {
        group: CollaboratorFailure(error, phase=f"{NN_PHASE} (spark)", stratum=group)
        for group, error in zip(candidates.loc[failed, "group"], candidates.loc[failed, "error"])
    }

    candidates = candidates.loc[~failed].sort_values(
        ["group", "case_position", "rank"], kind="mergesort"
    )
    out: Dict[str, List[Match]] = {key: [] for key in stratified.strata}
    for group, case_id, control_id, distance, rank in zip(
        candidates["group"],
        candidates["case_id"],
        candidates["control_id"],
        candidates["distance"],
        candidates["rank"],
    ):
        out[group].append(Match(case_id, control_id, float(distance), int(rank)))
    return out, failures


def _check_optimized(
    optimized: Sequence[Match], naive: Sequence[Match], final_count: int, stratum: str
) -> List[Match]:
    """Hold a (possibly user supplied) optimizer to its contract."""
    candidates = {(m.case_id, m.control_id) for m in naive}
    per_case: Dict[str, int] = {}
    for m in optimized:
        if (m.case_id, m.control_id) not in candidates:
            raise CollaboratorFailure(
                f"Optimizer returned pair ({m.case_id!r}, {m.control_id!r}) that is not "
                f"a naive candidate",
                phase=OPTIMIZE_PHASE,
                stratum=stratum,
            )
        per_case[m.case_id] = per_case.get(m.case_id, 0) + 1
        if per_case[m.case_id] > final_count:
            raise CollaboratorFailure(
                f"Optimizer kept more than {final_count} controls for case {m.case_id!r}",
                phase=OPTIMIZE_PHASE,
                stratum=stratum,
            )
    return list(optimized)


def run_optimizer(
    optimizer: Callable,
    naive: List[Match],
    final_count: int,
    threads: int,
    reuse_max: Optional[int] = None,
    stack_size_mb: Optional[int] = None,
    recursion_limit: Optional[int] = None,
    stratum: str = "",
) -> List[Match]:
    """
    Call the optimizer, optionally on a dedicated thread with a larger stack.

    RecursionError propagates unchanged so the caller can report it as a
    stack configuration problem; any other failure becomes a
    CollaboratorFailure. KeyboardInterrupt and SystemExit are never turned
    into a stratum failure: they propagate unchanged, also from the
    dedicated thread.
    """
    kwargs = {} if reuse_max is None else {"reuse_max": reuse_max}
    outcome: Dict[str, object] = {}

    def target():
        previous_limit = sys.getrecursionlimit()
        if recursion_limit is not None:
            sys.setrecursionlimit(recursion_limit)
        try:
            outcome["result"] = optimizer(naive, final_count, threads, **kwargs)
        except Exception as exc:
            outcome["error"] = exc
        finally:
            if recursion_limit is not None:
                sys.setrecursionlimit(previous_limit)

    def threaded_target():
        try:
            target()
        except BaseException as exc:
            outcome["interrupt"] = exc

    if stack_size_mb is not None:
        previous_size = threading.stack_size(stack_size_mb * 1024 * 1024)
        try:
            worker = threading.Thread(target=threaded_target, name=f"ccmatch-optimize-{stratum}")
            worker.start()
        finally:
            threading.stack_size(previous_size)
        worker.join()
        if "interrupt" in outcome:
            raise outcome["interrupt"]
    else:
        target()

    error = outcome.get("error")
    if isinstance(error, (RecursionError, CCMatchError)):
        raise error
    if error is not None:
        raise CollaboratorFailure(str(error), phase=OPTIMIZE_PHASE, stratum=stratum) from error
    return _check_optimized(outcome["result"], naive, final_count, stratum)


def match_table(stratum: Stratum, matches: Sequence[Match], width: int) -> Tuple[List[str], List[List[str]]]:
    """
    Build the rows of a match file: one row per case, up to ``width`` controls.

    Header is ``case_id`` followed by ``control_<i>_id`` and
    ``control_<i>_distance`` per rank; absent ranks are NA.
    """
    header = ["case_id"]
    for i in range(1, width + 1):
        header += [f"control_{i}_id", f"control_{i}_distance"]

    by_case: Dict[str, List[Match]] = {}
    for m in matches:
        by_case.setdefault(m.case_id, []).append(m)

    rows = []
    for case in stratum.cases:
        row = [case.id]
        found = by_case.get(case.id, [])[:width]
        for m in found:
            row += [m.control_id, repr(m.distance)]
        row += [NA, NA] * (width - len(found))
        rows.append(row)
    return header, rows


def status_rows(stratum: Stratum, matches: Sequence[Match]) -> List[List[str]]:
    """
    Rows of a status file: every case pointing at itself, followed by one
    row per control matched to it. Unmatched controls are not listed.
    """
    by_case: Dict[str, List[Match]] = {}
    for m in matches:
        by_case.setdefault(m.case_id, []).append(m)

    rows = []
    for case in stratum.cases:
        rows.append([case.id, CASE_STATUS, case.id])
        for m in by_case.get(case.id, []):
            rows.append([m.control_id, CONTROL_STATUS, case.id])
    return rows


def _write_stratum(working_dir: str, result: StratumResult, stratum: Stratum, widths: Dict[str, int]) -> None:
    """Write all match and status files of a stratum, or none of them."""
    stages = [(NAIVE, result.naive)]
    if result.optimized is not None:
        stages.append((OPTIMIZED, result.optimized))

    files = []
    paths = {}
    for stage, matches in stages:
        header, rows = match_table(stratum, matches, widths[stage])
        match_path = os.path.join(working_dir, output_filename("match", stage, result.slug))
        files.append((match_path, header, rows))
        paths[f"match.{stage}"] = match_path

        status_path = os.path.join(working_dir, output_filename("status", stage, result.slug))
        files.append((status_path, STATUS_FILE_HEADER, status_rows(stratum, matches)))
        paths[f"status.{stage}"] = status_path

    write_tsv_group(files)
    result.paths = paths


def _discard_stratum_outputs(working_dir: str, slug: str) -> None:
    """Remove match and status files left under a failed stratum's slug by an earlier run."""
    for kind in ("match", "status"):
        for stage in (NAIVE, OPTIMIZED):
            path = os.path.join(working_dir, output_filename(kind, stage, slug))
            if os.path.isfile(path):
                os.unlink(path)


def _unique_slug(key: str, used: Set[str]) -> str:
    base = stratum_slug(key)
    slug = base
    n = 1
    while slug in used:
        n += 1
        slug = f"{base}-{n}"
    used.add(slug)
    return slug


def run_matching(
    working_dir,
    sample_path,
    factor_loadings: Union[str, FactorLoadings],
    final_num_select: int = 4,
    multiplier: int = 5,
    threads: Optional[int] = None,
    normalize: bool = True,
    normalize_method: str = "zscore",
    optimize: bool = True,
    reuse_max: Optional[int] = None,
    stack_size_mb: Optional[int] = None,
    recursion_limit: Optional[int] = None,
    overwrite: bool = False,
    verbose: bool = True,
    spark: Optional[SparkSession] = None,
    build_index: Callable = default_build_index,
    nearest: Callable = default_nearest,
    optimizer: Callable = default_optimize,
) -> MatchResult:
    """
    Match every case to its nearest controls, stratum by stratum.

    Parameters
    ----------
    working_dir : str or Path
        Existing directory receiving the intermediate and output files
    sample_path : str or Path
        Sample TSV: column 0 id, column 1 status (1 case, 0 control), then
        factor columns
    factor_loadings : str or FactorLoadings
        Factor configuration, e.g. "PC1:4,PC2:4,sex:force,site:nominal"
    final_num_select : int
        Controls kept per case after optimization
    multiplier : int
        Oversampling factor: the naive search keeps
        final_num_select * multiplier controls per case
    threads : Optional[int]
        Worker threads given to the optimizer (default: os.cpu_count())
    normalize : bool
        If True, normalize the numeric factor columns before matching
    normalize_method : str
        "zscore" or "rank", see ccmatch.features.normalize_columns
    optimize : bool
        If False, stop after the naive match set
    reuse_max : Optional[int]
        Forwarded to the optimizer: None means each control serves at most
        one case, r means at most r cases
    stack_size_mb : Optional[int]
        Run the optimizer on a dedicated thread with this stack size
    recursion_limit : Optional[int]
        Interpreter recursion limit while the optimizer runs
    overwrite : bool
        If False, refuse to run when match or status files already exist
        in working_dir
    verbose : bool
        If True, print progress and a summary
    spark : Optional[SparkSession]
        If given, the naive search runs as one Spark task per stratum
    build_index, nearest : Callable
        Nearest-neighbor collaborator, see ccmatch.neighbors
    optimizer : Callable
        Duplicate-resolution collaborator, see ccmatch.optimize

    Returns
    -------
    MatchResult
        Per-stratum results (failed strata carry their error report), the
        prepared sample path and the combined status file paths
    """
    working_dir = str(working_dir)
    if threads is None:
        threads = os.cpu_count() or 1

    # Validate parameters before any side effect
    if final_num_select < 1:
        raise ConfigurationError(f"final_num_select must be >= 1, got {final_num_select}")
    if multiplier < 1:
        raise ConfigurationError(f"multiplier must be >= 1, got {multiplier}")
    if threads < 1:
        raise ConfigurationError(f"threads must be >= 1, got {threads}")
    if normalize_method not in NORMALIZE_METHODS:
        raise ConfigurationError(
            f"normalize_method must be one of {NORMALIZE_METHODS}, got {normalize_method!r}"
        )
    if reuse_max is not None and reuse_max < 1:
        raise ConfigurationError(f"reuse_max must be >= 1, got {reuse_max}")
    if stack_size_mb is not None and stack_size_mb < 1:
        raise ConfigurationError(f"stack_size_mb must be >= 1, got {stack_size_mb}")
    if recursion_limit is not None and recursion_limit < 1:
        raise ConfigurationError(f"recursion_limit must be >= 1, got {recursion_limit}")
    if not os.path.isdir(working_dir):
        raise ConfigurationError(f"Working directory {working_dir} does not exist")
    if not os.path.isfile(str(sample_path)):
        raise ConfigurationError(f"Sample file {sample_path} not found")
    if reuse_max is not None and not optimize:
        warn("reuse_max is ignored when optimize=False")

    if isinstance(factor_loadings, str):
        factor_loadings = FactorLoadings(factor_loadings)
    factor_loadings.validate_header(read_header(sample_path))

    existing = _existing_outputs(working_dir)
    if existing and not overwrite:
        raise ConfigurationError(
            f"Match outputs already exist in {working_dir} ({existing[:4]}); "
            f"pass overwrite=True or choose another directory"
        )

    initial_num_select = final_num_select * multiplier

    # Prepare the sample table
    prepared = str(sample_path)
    if normalize:
        prepared = normalize_factors(
            working_dir, prepared, factor_loadings, method=normalize_method, verbose=verbose
        )
    prepared, indicator_map = expand_nominal_variables(
        working_dir, prepared, factor_loadings, verbose=verbose
    )
    stratified = stratify_samples(prepared, factor_loadings, indicator_map)

    if verbose:
        print(f"Strata: {len(stratified.strata)}")
        print(f" - distance columns: {stratified.distance_columns}")
        if stratified.n_dropped:
            print(f" - rows with unrecognized status dropped: {stratified.n_dropped}")

    precomputed: Optional[Dict[str, List[Match]]] = None
    spark_failures: Dict[str, CollaboratorFailure] = {}
    if spark is not None:
        precomputed, spark_failures = naive_matches_spark(
            spark, stratified, initial_num_select, build_index=build_index, nearest=nearest
        )

    widths = {NAIVE: initial_num_select, OPTIMIZED: final_num_select}
    used_slugs: Set[str] = set()
    results: List[StratumResult] = []
    for key, stratum in stratified.strata.items():
        result = StratumResult(
            key=key,
            slug=_unique_slug(key, used_slugs),
            n_cases=len(stratum.cases),
            n_controls=len(stratum.controls),
        )
        results.append(result)
        start = time.perf_counter()
        phase = NN_PHASE
        try:
            if precomputed is not None:
                if key in spark_failures:
                    raise spark_failures[key]
                result.naive = precomputed.get(key, [])
            else:
                result.naive = naive_matches(
                    stratum, initial_num_select, build_index=build_index, nearest=nearest
                )

            if optimize:
                phase = OPTIMIZE_PHASE
                result.optimized = run_optimizer(
                    optimizer,
                    result.naive,
                    final_num_select,
                    threads,
                    reuse_max=reuse_max,
                    stack_size_mb=stack_size_mb,
                    recursion_limit=recursion_limit,
                    stratum=key,
                )

            phase = WRITE_PHASE
            _write_stratum(working_dir, result, stratum, widths)
        except RecursionError as exc:
            result.error = report_failure(exc, phase, stratum=key, hint=RECURSION_HINT)
        except (CollaboratorFailure, OSError) as exc:
            result.error = report_failure(exc, phase, stratum=key)
        if not result.ok:
            result.paths = {}
            _discard_stratum_outputs(working_dir, result.slug)
        result.seconds = time.perf_counter() - start

        if verbose and result.ok:
            print(
                f"stratum {key!r}: {result.n_cases} cases, {result.n_controls} controls, "
                f"{len(result.naive)} naive / "
                f"{len(result.optimized) if result.optimized is not None else NA} optimized "
                f"matches ({result.seconds:.2f}s)"
            )

    match_result = MatchResult(strata=results, sample_path=prepared, n_dropped=stratified.n_dropped)
    succeeded = [(r, stratified.strata[r.key]) for r in results if r.ok]
    match_result.naive_status_path = os.path.join(working_dir, output_filename("status", NAIVE))
    write_tsv(
        match_result.naive_status_path,
        STATUS_FILE_HEADER,
        [row for r, s in succeeded for row in status_rows(s, r.naive)],
    )
    if optimize:
        match_result.optimized_status_path = os.path.join(
            working_dir, output_filename("status", OPTIMIZED)
        )
        write_tsv(
            match_result.optimized_status_path,
            STATUS_FILE_HEADER,
            [row for r, s in succeeded for row in status_rows(s, r.optimized)],
        )

    if verbose:
        _print_match_summary(match_result, final_num_select, multiplier, optimize, reuse_max)
    return match_result


def _print_match_summary(
    result: MatchResult,
    final_num_select: int,
    multiplier: int,
    optimize: bool,
    reuse_max: Optional[int] = None,
    warn_threshold: float = 0.5,
) -> None:
    """Print MatchIt-style summary of matching results."""
    print(f"\nccmatch: 1:{final_num_select} nearest neighbor matching within strata")
    print(f" - naive candidates per case: {final_num_select * multiplier}")
    if not optimize:
        print(" - optimization: skipped (naive matches only)")
    elif reuse_max is None:
        print(" - optimization: without reuse (round-robin)")
    else:
        print(f" - optimization: reuse_max={reuse_max}")

    n_cases = sum(s.n_cases for s in result.strata)
    n_controls = sum(s.n_controls for s in result.strata)
    print(" - sample sizes:")
    print(f"     cases: {n_cases}")
    print(f"     controls: {n_controls}")
    print(f" - strata: {len(result.strata)} ({len(result.failed)} failed)")

    final = [m for s in result.succeeded for m in s.final]
    matched_cases = {m.case_id for m in final}
    match_rate = (len(matched_cases) / n_cases) if n_cases > 0 else 0
    print(
        f" - matched: {len(final)} pairs across {len(matched_cases)} cases "
        f"({match_rate * 100:.1f}% of cases)"
    )
    print(
        f"     unique controls used: {len({m.control_id for m in final})} "
        f"(of {n_controls} available)"
    )
    for failed in result.failed:
        print(f" - FAILED stratum {failed.key!r}: {failed.error}")

    if n_cases > 0 and match_rate < warn_threshold:
        warn(
            f"Low match rate: only {match_rate * 100:.1f}% of cases were matched. "
            f"Check that every stratum has controls."
        )
