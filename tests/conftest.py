"""
Pytest fixtures for ccmatch testing.
"""

import os
import shutil

import pytest


@pytest.fixture(scope="session")
def spark():
    """Create a SparkSession for testing (skipped without a Java runtime)."""
    if shutil.which("java") is None and not os.environ.get("JAVA_HOME"):
        pytest.skip("Spark tests need a Java runtime")

    import warnings
    warnings.filterwarnings("ignore")

    from pyspark.sql import SparkSession

    # Set Java options for compatibility with Java 17+
    os.environ["SPARK_LOCAL_IP"] = "127.0.0.1"

    session = (
        SparkSession.builder.master("local[*]")
        .appName("ccmatch-test")
        .config("spark.sql.shuffle.partitions", "4")
        .config("spark.driver.memory", "2g")
        .config("spark.ui.enabled", "false")
        .config("spark.sql.execution.arrow.pyspark.enabled", "false")
        .config("spark.driver.extraJavaOptions", "-Djava.security.manager=allow")
        .config("spark.executor.extraJavaOptions", "-Djava.security.manager=allow")
        .getOrCreate()
    )
    yield session
    session.stop()


@pytest.fixture
def write_tsv(tmp_path):
    """Return a helper writing a header and rows to a TSV file in tmp_path."""

    def _write(name, header, rows):
        path = tmp_path / name
        lines = ["\t".join(header)] + ["\t".join(str(v) for v in row) for row in rows]
        path.write_text("\n".join(lines) + "\n")
        return str(path)

    return _write


SAMPLE_HEADER = ["id", "status", "age", "bmi", "sex", "site"]

# Two strata by sex; site is nominal. Controls are placed so that the nearest
# control of each case is unambiguous.
SAMPLE_ROWS = [
    ["case1", "1", "50", "25.0", "M", "north"],
    ["case2", "1", "30", "22.0", "M", "south"],
    ["case3", "1", "60", "30.0", "F", "north"],
    ["ctl1", "0", "51", "25.1", "M", "north"],
    ["ctl2", "0", "49", "24.8", "M", "north"],
    ["ctl3", "0", "31", "22.2", "M", "south"],
    ["ctl4", "0", "29", "21.9", "M", "south"],
    ["ctl5", "0", "45", "28.0", "M", "east"],
    ["ctl6", "0", "61", "30.2", "F", "north"],
    ["ctl7", "0", "59", "29.7", "F", "north"],
    ["ctl8", "0", "40", "26.0", "F", "south"],
    ["unk1", "2", "55", "27.0", "F", "north"],
]


@pytest.fixture
def sample_file(write_tsv):
    """Small sample file with two sex strata and a nominal site column."""
    return write_tsv("samples.txt", SAMPLE_HEADER, SAMPLE_ROWS)
