import numpy as np
import pandas as pd
import pytest

from amplicon_tools.errors import (
    EmptyCandidateSetError,
    InvalidDepthError,
    MalformedCountsError,
)
from amplicon_tools.rarefaction import (
    candidate_distances,
    exclude_below_depth,
    rarefy,
    rarefy_representative,
    repeat_rarefy,
    representative_index,
    sample_seed,
    select_representative,
    split_malformed,
)


COUNTS = np.array([10, 0, 3, 7, 0, 25])


@pytest.mark.parametrize('seed', range(10))
def test_rarefy_conserves_depth_and_support(seed):
    rarefied = rarefy(COUNTS, 15, seed=seed)

    assert rarefied.sum() == 15
    assert np.all(rarefied <= COUNTS)
    assert np.all(rarefied[COUNTS == 0] == 0)
    assert len(rarefied) == len(COUNTS)


def test_rarefy_to_full_depth_returns_input():
    np.testing.assert_array_equal(rarefy(COUNTS, COUNTS.sum(), seed=1), COUNTS)


def test_rarefy_keeps_series_index():
    counts = pd.Series([4, 6, 0], index=['a', 'b', 'c'], name='S1')
    rarefied = rarefy(counts, 5, seed=3)

    assert isinstance(rarefied, pd.Series)
    assert list(rarefied.index) == ['a', 'b', 'c']
    assert rarefied.name == 'S1'
    assert rarefied.sum() == 5


def test_rarefy_same_seed_same_draw():
    np.testing.assert_array_equal(rarefy(COUNTS, 20, seed=7), rarefy(COUNTS, 20, seed=7))


@pytest.mark.parametrize('depth', [46, 0, -3, 2.5])
def test_rarefy_invalid_depth(depth):
    with pytest.raises(InvalidDepthError):
        rarefy(COUNTS, depth, seed=0)


@pytest.mark.parametrize('counts', [[1, -1, 5], [1.5, 2, 3], [np.nan, 2, 3], [[1, 2], [3, 4]]])
def test_rarefy_malformed_counts(counts):
    with pytest.raises(MalformedCountsError):
        rarefy(counts, 1, seed=0)


def test_errors_are_value_errors():
    with pytest.raises(ValueError):
        rarefy(COUNTS, 1000, seed=0)


def test_sample_seed_formula():
    assert sample_seed(500, 0) == 500
    assert sample_seed(500, 2) == 502


def test_repeat_rarefy_shape_and_determinism():
    first = repeat_rarefy(COUNTS, 12, reps=25, seed=sample_seed(500, 1))
    second = repeat_rarefy(COUNTS, 12, reps=25, seed=sample_seed(500, 1))

    assert first.shape == (25, len(COUNTS))
    assert np.all(first.sum(axis=1) == 12)
    np.testing.assert_array_equal(first, second)


def test_repeat_rarefy_draws_differ_within_a_sample():
    counts = np.full(50, 100)
    candidates = repeat_rarefy(counts, 500, reps=5, seed=11)

    assert len({tuple(row) for row in candidates}) > 1


def test_repeat_rarefy_different_seeds_differ():
    counts = np.full(50, 100)
    first = repeat_rarefy(counts, 500, reps=5, seed=1)
    second = repeat_rarefy(counts, 500, reps=5, seed=2)

    assert not np.array_equal(first, second)


def test_repeat_rarefy_zero_reps():
    with pytest.raises(EmptyCandidateSetError):
        repeat_rarefy(COUNTS, 5, reps=0, seed=1)


def test_exclude_below_depth(depth_table):
    original = depth_table.copy()
    kept, excluded = exclude_below_depth(depth_table, 1000)

    assert excluded == ['low']
    assert list(kept.index) == ['mid', 'high']
    pd.testing.assert_frame_equal(depth_table, original)


def test_exclude_below_depth_keeps_exact_total(depth_table):
    kept, excluded = exclude_below_depth(depth_table, 500)

    assert excluded == []
    assert list(kept.index) == ['low', 'mid', 'high']


def test_candidate_distances_square():
    candidates = np.array([[2, 2, 0], [2, 2, 0], [4, 0, 0]])
    distances = candidate_distances(candidates)

    assert distances.shape == (3, 3)
    np.testing.assert_allclose(np.diag(distances), 0)
    assert distances[0, 1] == 0
    assert distances[0, 2] == pytest.approx(0.5)


def test_selector_prefers_central_candidate():
    candidates = np.array([[4, 0, 0], [2, 2, 0], [2, 2, 0], [1, 3, 0], [2, 2, 0]])

    np.testing.assert_array_equal(select_representative(candidates), [2, 2, 0])
    assert representative_index(candidates) == 1


def test_selector_tie_returns_first_identical_candidate():
    candidates = np.array([[2, 2, 0], [2, 2, 0], [4, 0, 0]])

    for _ in range(10):
        assert representative_index(candidates) == 0


def test_selector_tie_between_distinct_candidates_uses_generation_order():
    # With two candidates both have the same mean distance
    candidates = np.array([[3, 1], [1, 3]])

    for _ in range(10):
        np.testing.assert_array_equal(select_representative(candidates), [3, 1])
        np.testing.assert_array_equal(select_representative(candidates[::-1]), [1, 3])


def test_selector_custom_dissimilarity_and_centrality():
    candidates = np.array([[0, 4], [1, 3], [2, 2], [4, 0]])

    def manhattan(u, v):
        return float(np.abs(u - v).sum())

    # Mean distances: 4.67, 3.33, 3.33, 6 -> first of the tied pair
    assert representative_index(candidates, dissimilarity=manhattan) == 1
    # Max distances: 8, 6, 4, 8
    assert representative_index(candidates, dissimilarity=manhattan, centrality=np.max) == 2


def test_selector_single_candidate():
    np.testing.assert_array_equal(select_representative(np.array([[1, 2, 3]])), [1, 2, 3])


def test_selector_empty_candidates():
    with pytest.raises(EmptyCandidateSetError):
        select_representative(np.empty((0, 3)))


def test_rarefy_representative_end_to_end(small_table):
    rarefied, report = rarefy_representative(small_table, depth=4, reps=50, seed=500)

    assert report.empty
    assert list(rarefied.index) == ['S1', 'S2', 'S3']
    assert list(rarefied.columns) == ['T1', 'T2', 'T3', 'T4']
    assert np.all(rarefied.sum(axis=1) == 4)
    assert list(rarefied.loc['S1']) == [4, 0, 0, 0]
    assert np.all(rarefied.values <= small_table.values)

    again, _ = rarefy_representative(small_table, depth=4, reps=50, seed=500)
    pd.testing.assert_frame_equal(rarefied, again)


def test_rarefy_representative_excludes_low_samples(depth_table):
    rarefied, report = rarefy_representative(depth_table, depth=1000, reps=5, seed=1)

    assert list(rarefied.index) == ['mid', 'high']
    assert np.all(rarefied.sum(axis=1) == 1000)
    assert report['sample_id'].tolist() == ['low']
    assert report['reason'].tolist() == ['below_depth']
    assert report['depth'].tolist() == [1000]


def test_rarefy_representative_reports_malformed_sample(small_table):
    table = small_table.astype(float)
    table.loc['S2', 'T3'] = 0.5

    rarefied, report = rarefy_representative(table, depth=4, reps=5, seed=500)

    assert list(rarefied.index) == ['S1', 'S3']
    assert report['sample_id'].tolist() == ['S2']
    assert report['reason'].tolist() == ['failed']
    assert 'non-integer' in report['detail'].iloc[0]


def test_rarefy_representative_seeds_follow_table_position(small_table):
    full, _ = rarefy_representative(small_table, depth=4, reps=10, seed=500)
    # S3 keeps its position when S1 is too shallow to be rarefied
    shallow = small_table.copy()
    shallow.loc['S1'] = [1, 0, 0, 0]
    partial, report = rarefy_representative(shallow, depth=4, reps=10, seed=500)

    assert report['sample_id'].tolist() == ['S1']
    pd.testing.assert_series_equal(full.loc['S3'], partial.loc['S3'])


def test_rarefy_representative_fails_fast_on_zero_reps(small_table):
    calls = []
    with pytest.raises(EmptyCandidateSetError):
        rarefy_representative(small_table, depth=4, reps=0,
                              progress=lambda *args: calls.append(args))
    assert calls == []


def test_rarefy_representative_progress(small_table):
    calls = []
    rarefy_representative(small_table, depth=4, reps=3, seed=1,
                          progress=lambda *args: calls.append(args))

    assert calls == [('S1', 1, 3), ('S2', 2, 3), ('S3', 3, 3)]


def test_rarefy_representative_parallel_matches_serial(depth_table):
    serial, _ = rarefy_representative(depth_table, depth=400, reps=10, seed=3)
    parallel, _ = rarefy_representative(depth_table, depth=400, reps=10, seed=3, n_jobs=2)

    pd.testing.assert_frame_equal(serial, parallel)


def test_rarefy_representative_reports_non_numeric_sample(small_table):
    table = small_table.astype(object)
    table.loc['S2', 'T1'] = 'n/a'

    rarefied, report = rarefy_representative(table, depth=4, reps=5, seed=500)
    expected, _ = rarefy_representative(small_table, depth=4, reps=5, seed=500)

    assert list(rarefied.index) == ['S1', 'S3']
    assert report[['sample_id', 'reason']].values.tolist() == [['S2', 'failed']]
    pd.testing.assert_frame_equal(rarefied, expected.loc[['S1', 'S3']])


def test_rarefy_representative_negative_counts_fail_before_depth_check(small_table):
    table = small_table.copy()
    # Total of 0 is below depth but the sample is malformed first
    table.loc['S2'] = [5, -5, 0, 0]

    _, report = rarefy_representative(table, depth=4, reps=5, seed=500)

    assert report[['sample_id', 'reason']].values.tolist() == [['S2', 'failed']]
    assert 'negative' in report['detail'].iloc[0]


@pytest.mark.parametrize('n_jobs', [0, -2])
def test_rarefy_representative_rejects_invalid_n_jobs(small_table, n_jobs):
    calls = []
    with pytest.raises(ValueError, match='n_jobs'):
        rarefy_representative(small_table, depth=4, reps=3, n_jobs=n_jobs,
                              progress=lambda *args: calls.append(args))
    assert calls == []


def test_split_malformed(small_table):
    table = small_table.astype(float)
    table.loc['S1', 'T2'] = np.nan

    valid, malformed = split_malformed(table)

    assert list(valid.index) == ['S2', 'S3']
    assert valid.dtypes.unique().tolist() == [np.dtype(np.int64)]
    assert [sample_id for sample_id, _ in malformed] == ['S1']
