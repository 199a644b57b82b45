"""
Example usage of ccmatch with a generated cohort.

This script demonstrates the full ccmatch pipeline:
1. Generate a sample file and a phenotype file
2. Match cases to controls within sex strata
3. Evaluate the match on the phenotype variables
4. Write the evaluation report
"""

import os
import sys
import tempfile

import numpy as np
import pandas as pd

from ccmatch import CCMatchError, evaluate_matches, run_matching


def make_cohort(directory: str, n_cases: int = 200, n_controls: int = 2000, seed: int = 7):
    """Write samples.txt and phenotypes.txt into directory; return their paths."""
    rng = np.random.default_rng(seed)
    n = n_cases + n_controls
    status = np.array([1] * n_cases + [0] * n_controls)

    samples = pd.DataFrame(
        {
            "id": [f"S{i:05d}" for i in range(n)],
            "status": status,
            "PC1": rng.normal(loc=0.3 * status, scale=1.0),
            "PC2": rng.normal(size=n),
            "age": rng.normal(loc=50 + 5 * status, scale=10).round(1),
            "sex": rng.choice(["M", "F"], size=n),
            "site": rng.choice(["north", "south", "east"], size=n),
        }
    )
    phenotypes = pd.DataFrame(
        {
            "id": samples["id"],
            "age": samples["age"],
            "smoker": rng.integers(0, 2, size=n),
            "bmi": rng.normal(loc=27, scale=4, size=n).round(1),
        }
    )

    sample_path = os.path.join(directory, "samples.txt")
    phenotype_path = os.path.join(directory, "phenotypes.txt")
    samples.to_csv(sample_path, sep="\t", index=False)
    phenotypes.to_csv(phenotype_path, sep="\t", index=False)
    return sample_path, phenotype_path


def main():
    """Run ccmatch example on generated data."""
    directory = sys.argv[1] if len(sys.argv) > 1 else tempfile.mkdtemp(prefix="ccmatch-example-")
    os.makedirs(directory, exist_ok=True)

    print(f"Writing example data to {directory}...")
    sample_path, phenotype_path = make_cohort(directory)

    try:
        # 1. Match
        print("\n1. Matching...")
        result = run_matching(
            directory,
            sample_path,
            "PC1:4,PC2:4,age:1,sex:force,site:nominal",
            final_num_select=4,
            multiplier=5,
            overwrite=True,
        )
        if result.failed:
            print(f"{len(result.failed)} strata failed; see the errors above")

        # 2. Evaluate
        print("\n2. Evaluating match quality...")
        report_path = os.path.join(directory, "match_quality.txt")
        if os.path.exists(report_path):
            os.remove(report_path)
        evaluate_matches(
            "age;smoker;bmi",
            result.status_path,
            phenotype_path,
            output_path=report_path,
        )
    except CCMatchError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print("\nExample completed successfully!")
    sys.exit(1 if result.failed else 0)


if __name__ == "__main__":
    main()
