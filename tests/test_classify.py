import numpy as np
import pytest

from app_energy.classify import (
    Breakpoints,
    bucket_masks,
    classify_severity,
    compute_breakpoints,
)
from app_energy.provider import RasterProvider


@pytest.fixture
def provider():
    return RasterProvider()


def test_breakpoints_follow_percentiles(provider):
    score = np.linspace(0, 1, 101).reshape(1, 101)
    bp = compute_breakpoints(score, np.ones(score.shape, bool), provider)
    assert not bp.degenerate
    assert bp.as_list() == pytest.approx([0.1, 0.3, 0.5, 0.7])


def test_degenerate_distribution_uses_equal_bands(provider):
    score = np.full((1, 100), 0.5)
    score[0, -1] = 1.0
    bp = compute_breakpoints(score, np.ones(score.shape, bool), provider)
    assert bp.degenerate
    assert bp.as_list() == pytest.approx([0.6, 0.7, 0.8, 0.9])


def test_ties_go_to_lower_class():
    bp = Breakpoints(0.2, 0.4, 0.6, 0.8)
    score = np.array([[0.2, 0.2000001, 0.4, 0.8, 0.81]])
    severity = classify_severity(score, np.ones(score.shape, bool), bp)
    assert severity.tolist() == [[0, 1, 1, 3, 4]]
    assert severity.dtype == np.int8


def test_outside_mask_is_minus_one():
    bp = Breakpoints(0.2, 0.4, 0.6, 0.8)
    score = np.array([[0.9, 0.9, np.nan]])
    mask = np.array([[True, False, True]])
    assert classify_severity(score, mask, bp).tolist() == [[4, -1, -1]]


def test_classes_are_monotone_in_score(provider):
    rng = np.random.default_rng(7)
    score = rng.uniform(size=(20, 20))
    mask = np.ones(score.shape, bool)
    bp = compute_breakpoints(score, mask, provider)
    severity = classify_severity(score, mask, bp)
    order = np.argsort(score, axis=None)
    assert np.all(np.diff(severity.ravel()[order]) >= 0)


def test_buckets():
    severity = np.array([[0, 1, 2, 3, 4, -1]])
    buckets = bucket_masks(severity)
    assert buckets["normal"].tolist() == [[True, True, True, False, False, False]]
    assert buckets["near_critical"].sum() == 1
    assert buckets["critical"].sum() == 1
