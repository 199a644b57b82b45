"""
Duplicate resolution for ccmatch naive matches.

The naive match set gives every case its nearest controls independently, so
one control can be a candidate for several cases. optimize() keeps at most
``final_count`` controls per case and resolves contested controls:

- Without reuse (default) every control ends up with at most one case
- With ``reuse_max=r`` a control can serve up to r different cases

Selection is round-robin: every case gets its best available control before
any case gets its second, and a contested control goes to the case it is
nearest to. Cases that share no candidate controls cannot affect each other,
so they are split into independent components and resolved on a thread pool
of the given size.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

import pandas as pd

from .errors import ConfigurationError
from .stratify import Match


def _components(candidates: pd.DataFrame) -> List[List[str]]:
    """Group case ids that are connected through shared candidate controls."""
    parent: Dict[str, str] = {}

    def find(x: str) -> str:
        root = x
        while parent[root] != root:
            root = parent[root]
        while parent[x] != root:
            parent[x], x = root, parent[x]
        return root

    for case_id in candidates["case_id"].unique():
        parent[case_id] = case_id
    for _, group in candidates.groupby("control_id", sort=False)["case_id"]:
        cases = list(group.unique())
        root = find(cases[0])
        for other in cases[1:]:
            other_root = find(other)
            if other_root != root:
                parent[other_root] = root

    components: Dict[str, List[str]] = {}
    for case_id in parent:
        components.setdefault(find(case_id), []).append(case_id)
    return list(components.values())


def _resolve(candidates: pd.DataFrame, final_count: int, capacity: int) -> List[int]:
    """
    Round-robin selection within one component.

    Returns the row labels of the selected candidates.
    """
    remaining = {c: capacity for c in candidates["control_id"].unique()}
    selected: List[int] = []
    taken = pd.Series(False, index=candidates.index)

    for _round_num in range(1, final_count + 1):
        has_capacity = candidates["control_id"].map(remaining) > 0
        round_candidates = candidates[has_capacity & ~taken].copy()
        if round_candidates.empty:
            break

        # Re-rank within available controls for this round
        round_candidates["_round_case_rank"] = round_candidates.groupby("case_id")[
            "distance"
        ].rank(method="first")
        round_candidates["_round_control_rank"] = round_candidates.groupby("control_id")[
            "distance"
        ].rank(method="first")

        # Sort by case's preference, then control's preference for tie-breaking
        round_candidates = round_candidates.sort_values(
            ["_round_case_rank", "_round_control_rank", "_order"], kind="mergesort"
        )

        used_cases_this_round = set()
        for label, case_id, control_id in zip(
            round_candidates.index,
            round_candidates["case_id"],
            round_candidates["control_id"],
        ):
            if case_id in used_cases_this_round or remaining[control_id] <= 0:
                continue
            selected.append(label)
            taken[label] = True
            used_cases_this_round.add(case_id)
            remaining[control_id] -= 1

        if not used_cases_this_round:
            break

    return selected


def optimize(
    naive_matches: Sequence[Match],
    final_count: int,
    threads: int = 1,
    reuse_max: Optional[int] = None,
) -> List[Match]:
    """
    Reduce naive matches to at most final_count controls per case.

    Parameters
    ----------
    naive_matches : Sequence[Match]
        Candidate (case, control, distance) records for one stratum
    final_count : int
        Maximum number of controls kept per case
    threads : int
        Worker threads used to resolve independent components
    reuse_max : Optional[int]
        If None, each control is kept for at most one case; otherwise the
        number of different cases a control may serve

    Returns
    -------
    List[Match]
        Selected matches, grouped by case in input order, ascending by
        distance within a case
    """
    if final_count < 1:
        raise ConfigurationError(f"final_count must be >= 1, got {final_count}")
    if threads < 1:
        raise ConfigurationError(f"threads must be >= 1, got {threads}")
    if reuse_max is not None and reuse_max < 1:
        raise ConfigurationError(f"reuse_max must be >= 1, got {reuse_max}")
    if not naive_matches:
        return []

    capacity = 1 if reuse_max is None else reuse_max

    candidates = pd.DataFrame(
        {
            "case_id": [m.case_id for m in naive_matches],
            "control_id": [m.control_id for m in naive_matches],
            "distance": [m.distance for m in naive_matches],
            "rank": [m.rank for m in naive_matches],
        }
    ).drop_duplicates(subset=["case_id", "control_id"], keep="first")
    case_order = {c: i for i, c in enumerate(candidates["case_id"].unique())}
    candidates["_case_order"] = candidates["case_id"].map(case_order)
    candidates = candidates.sort_values(
        ["_case_order", "distance", "rank"], kind="mergesort"
    ).reset_index(drop=True)
    candidates["_order"] = range(len(candidates))

    components = _components(candidates)
    parts = [candidates[candidates["case_id"].isin(set(cases))] for cases in components]

    if threads > 1 and len(parts) > 1:
        with ThreadPoolExecutor(max_workers=threads) as pool:
            results = list(pool.map(lambda p: _resolve(p, final_count, capacity), parts))
    else:
        results = [_resolve(p, final_count, capacity) for p in parts]

    chosen = candidates.loc[sorted(label for labels in results for label in labels)]
    return [
        Match(case_id, control_id, float(distance), int(rank))
        for case_id, control_id, distance, rank in zip(
            chosen["case_id"], chosen["control_id"], chosen["distance"], chosen["rank"]
        )
    ]
