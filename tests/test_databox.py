"""
Tests for the DataBox statistics store in ccmatch.
"""

import math
import threading

import pytest

from ccmatch.databox import CONCORDANCE, MULTIVARIATE_P, UNIVARIATE_P, DataBox, MetricState
from ccmatch.errors import (
    CollaboratorFailure,
    ConfigurationError,
    DataIntegrityError,
    OrphanedControlError,
    TypeMisuseError,
)
from ccmatch.regression import LogisticFit
from ccmatch.variables import MatchingVariable

HEADER = ["id", "smoker", "age"]


def _variables():
    smoker = MatchingVariable("smoker", is_binary=True)
    age = MatchingVariable("age", is_binary=False)
    for mv in (smoker, age):
        mv.find_index_in_header(HEADER)
    return smoker, age


class CountingFit:
    """Stub regression collaborator recording how often it is called."""

    def __init__(self, overall_p=0.25, dropped=()):
        self.calls = 0
        self.overall_p = overall_p
        self.dropped = list(dropped)
        self._lock = threading.Lock()

    def __call__(self, outcome, predictors, names):
        with self._lock:
            self.calls += 1
        p_values = {
            name: (float("nan") if name in self.dropped else 0.5) for name in names
        }
        dropped = [n for n in names if n in self.dropped]
        return LogisticFit(self.overall_p, p_values, dropped)


@pytest.fixture
def box():
    """Pairings c1 -> A, c2 -> A with smoker A=0, c1=1, c2=0 and age A=-3.4, c1=2.5, c2=1.3."""
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A", "c2": "A"}, fit_logistic=CountingFit())
    box.record_data(["A", "0", "-3.4"])
    box.record_data(["c1", "1", "2.5"])
    box.record_data(["c2", "0", "1.3"])
    return box


def test_concordance(box):
    smoker, _ = box.variables
    assert box.concordance(smoker) == 0.5
    assert smoker.concordance(box) == 0.5


def test_averages(box):
    _, age = box.variables
    assert box.control_avg(age) == pytest.approx(1.9)
    assert box.case_avg(age) == pytest.approx(-3.4)


def test_concordance_independent_of_case_count():
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A", "c2": "A"}, case_ids=["B"])
    for row in (["A", "0", "1"], ["B", "1", "1"], ["c1", "1", "1"], ["c2", "0", "1"]):
        box.record_data(row)
    assert box.concordance(smoker) == 0.5


def test_concordance_in_unit_interval():
    smoker, age = _variables()
    pairings = {f"k{i}": f"C{i % 3}" for i in range(10)}
    box = DataBox([smoker, age], pairings)
    for i in range(3):
        box.record_data([f"C{i}", str(i % 2), "1"])
    for i in range(10):
        box.record_data([f"k{i}", str(i % 2), "1"])
    assert 0.0 <= box.concordance(smoker) <= 1.0


def test_continuous_concordance_is_nan_internally(box):
    smoker, age = box.variables
    box.compute_concordances()
    assert math.isnan(box._results[CONCORDANCE][CONCORDANCE][1])


def test_type_misuse(box):
    smoker, age = box.variables
    with pytest.raises(TypeMisuseError):
        box.concordance(age)
    with pytest.raises(TypeMisuseError):
        box.case_avg(smoker)
    with pytest.raises(TypeMisuseError):
        age.concordance(box)


def test_duplicate_id_keeps_first_value(box):
    _, age = box.variables
    with pytest.raises(DataIntegrityError, match="twice"):
        box.record_data(["c1", "0", "100"])
    assert box.to_frame().loc["c1", "age"] == 2.5
    assert box.n_recorded == 3


def test_unknown_ids_ignored(box):
    assert box.record_data(["stranger", "1", "5"]) is False
    assert "stranger" not in box.to_frame().index


def test_orphaned_control():
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A", "c2": "B"})
    box.record_data(["A", "0", "1"])
    box.record_data(["c1", "0", "1"])
    box.record_data(["c2", "0", "1"])

    with pytest.raises(OrphanedControlError) as excinfo:
        box.concordance(smoker)
    assert excinfo.value.control_id == "c2"
    assert excinfo.value.case_id == "B"
    assert isinstance(excinfo.value, DataIntegrityError)


def test_averages_require_case_coverage():
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A", "c2": "B"})
    box.record_data(["A", "0", "1"])
    box.record_data(["c1", "0", "2"])
    with pytest.raises(DataIntegrityError, match="cases have no recorded values"):
        box.case_avg(age)


def test_binary_value_must_be_integer():
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A"})
    with pytest.raises(DataIntegrityError, match="smoker"):
        box.record_data(["A", "0.5", "1"])
    assert box.n_recorded == 0


def test_non_numeric_value():
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A"})
    with pytest.raises(DataIntegrityError, match="'age'"):
        box.record_data(["A", "1", "old"])


def test_recording_requires_frozen_classification():
    inferred = MatchingVariable("age")
    inferred.find_index_in_header(HEADER)
    box = DataBox([inferred], {"c1": "A"})
    with pytest.raises(TypeMisuseError, match="frozen"):
        box.record_data(["A", "1", "3"])


def test_case_and_control_overlap():
    smoker, age = _variables()
    with pytest.raises(DataIntegrityError):
        DataBox([smoker, age], {"c1": "A", "A": "c1"})


def test_duplicate_variable_names():
    smoker, _ = _variables()
    with pytest.raises(ConfigurationError):
        DataBox([smoker, MatchingVariable("smoker", is_binary=True)], {"c1": "A"})


def test_no_variables():
    with pytest.raises(ConfigurationError, match="at least one"):
        DataBox([], {"c1": "A"})


def test_p_values_memoized(box):
    smoker, age = box.variables
    fit = box.fit_logistic
    assert box.state(UNIVARIATE_P) is MetricState.EMPTY

    assert box.univariate_p(smoker) == 0.25
    assert box.univariate_p(age) == 0.25
    box.compute_univariate_p()
    assert fit.calls == 2  # one model per variable, fitted once
    assert box.state(UNIVARIATE_P) is MetricState.COMPUTED

    assert box.multivariate_p(age) == 0.5
    box.compute_multivariate_p()
    assert fit.calls == 3


def test_memoized_under_concurrent_reads(box):
    _, age = box.variables
    results = []

    def read():
        results.append(box.multivariate_p(age))

    threads = [threading.Thread(target=read) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [0.5] * 8
    assert box.fit_logistic.calls == 1
    assert box.state(MULTIVARIATE_P) is MetricState.COMPUTED


def test_dropped_predictor_warns_and_is_nan():
    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A"}, fit_logistic=CountingFit(dropped=["age"]))
    box.record_data(["A", "0", "1"])
    box.record_data(["c1", "1", "1"])

    with pytest.warns(UserWarning, match="age"):
        assert math.isnan(box.multivariate_p(age))
    assert box.multivariate_p(smoker) == 0.5


def test_regression_failure_propagates():
    def failing_fit(outcome, predictors, names):
        raise CollaboratorFailure("singular matrix", phase="logistic regression")

    smoker, age = _variables()
    box = DataBox([smoker, age], {"c1": "A"}, fit_logistic=failing_fit)
    box.record_data(["A", "0", "1"])
    box.record_data(["c1", "1", "2"])

    with pytest.raises(CollaboratorFailure, match="singular"):
        box.univariate_p(smoker)
    assert box.state(UNIVARIATE_P) is MetricState.EMPTY


def test_real_regression_on_separable_free_data():
    smoker, age = _variables()
    pairings = {f"k{i}": f"C{i % 10}" for i in range(30)}
    box = DataBox([smoker, age], pairings)
    for i in range(10):
        box.record_data([f"C{i}", str(i % 2), str(40 + (i * 7) % 13)])
    for i in range(30):
        box.record_data([f"k{i}", str((i // 2) % 2), str(38 + (i * 5) % 17)])

    p = box.univariate_p(age)
    assert 0.0 <= p <= 1.0
    assert 0.0 <= box.multivariate_p(smoker) <= 1.0


def test_to_frame(box):
    frame = box.to_frame()
    assert list(frame.index) == ["A", "c1", "c2"]
    assert list(frame["status"]) == [1, 0, 0]
    assert list(frame["smoker"]) == [0, 1, 0]
