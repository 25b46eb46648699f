import numpy as np
import pandas as pd
import pytest

from amplicon_tools.amplicon_stats import (
    assess_batch_effect,
    calculate_beta_diversity,
    compare_alpha_diversity,
    perform_permanova,
    perform_permdisp,
)
from amplicon_tools.errors import MissingTreeError


@pytest.fixture
def grouped_dm(grouped_table):
    return calculate_beta_diversity(grouped_table)


def test_beta_diversity_braycurtis(small_table):
    dm = calculate_beta_diversity(small_table)

    assert list(dm.ids) == ['S1', 'S2', 'S3']
    assert dm['S1', 'S2'] == pytest.approx(0.5)


def test_unifrac_requires_tree(small_table):
    with pytest.raises(MissingTreeError):
        calculate_beta_diversity(small_table, metric='unweighted_unifrac')


def test_permanova_separates_groups(grouped_dm, grouped_metadata):
    result = perform_permanova(grouped_dm, grouped_metadata, 'Group', permutations=99)

    assert result['note'] == 'Successful test'
    assert result['sample size'] == 8
    assert result['test-statistic'] > 0
    assert result['p-value'] < 0.2


def test_permanova_insufficient_samples(grouped_dm, grouped_metadata):
    result = perform_permanova(grouped_dm, grouped_metadata.iloc[:3], 'Group', permutations=99)

    assert result['note'] == 'Insufficient samples for test'
    assert np.isnan(result['p-value'])


def test_permdisp_single_group(grouped_dm, grouped_metadata):
    metadata_df = grouped_metadata.assign(Group='A')
    result = perform_permdisp(grouped_dm, metadata_df, 'Group', permutations=99)

    assert result['note'].startswith('Only one group')


def test_assess_batch_effect(grouped_dm, grouped_metadata):
    batch_df = assess_batch_effect(grouped_dm, grouped_metadata, ['Run', 'Group'], permutations=99)

    assert len(batch_df) == 4
    assert batch_df['Test'].tolist() == ['PERMANOVA', 'PERMDISP'] * 2
    assert batch_df['Variable'].tolist() == ['Run', 'Run', 'Group', 'Group']


def test_assess_batch_effect_missing_variable(grouped_dm, grouped_metadata):
    with pytest.raises(ValueError, match='Plate'):
        assess_batch_effect(grouped_dm, grouped_metadata, 'Plate')


def test_compare_alpha_diversity(grouped_metadata):
    alpha_df = pd.DataFrame(
        {'observed_mean': [3, 4, 3, 4, 6, 6, 5, 6],
         'observed_sd': [0.1] * 8,
         'shannon_mean': [0.5, 0.6, 0.5, 0.7, 1.5, 1.4, 1.6, 1.5]},
        index=[f'S{i}' for i in range(8)],
    )

    results = compare_alpha_diversity(alpha_df, grouped_metadata, 'Group')

    assert set(results['Metric']) == {'observed_mean', 'shannon_mean'}
    assert set(results['Test']) == {'Mann-Whitney U'}
    assert (results['Adjusted P-value'] >= results['P-value']).all()
    shannon = results.set_index('Metric').loc['shannon_mean']
    assert shannon['Median in A'] == pytest.approx(0.55)
    assert shannon['Median in B'] == pytest.approx(1.5)


def test_compare_alpha_diversity_single_group(grouped_metadata):
    alpha_df = pd.DataFrame({'observed_mean': [1.0] * 8}, index=[f'S{i}' for i in range(8)])

    assert compare_alpha_diversity(alpha_df, grouped_metadata.assign(Group='A'), 'Group').empty


def test_compare_alpha_diversity_constant_metric_keeps_other_adjustments():
    metadata_df = pd.DataFrame(
        {'Group': ['A'] * 3 + ['B'] * 3 + ['C'] * 3},
        index=[f'S{i}' for i in range(9)],
    )
    alpha_df = pd.DataFrame(
        {'observed_mean': [1, 2, 3, 4, 5, 6, 7, 8, 9],
         'shannon_mean': [0.1, 0.3, 0.2, 0.9, 1.1, 1.0, 1.9, 2.1, 2.0],
         'evenness_mean': [1.0] * 9},
        index=metadata_df.index,
    )

    results = compare_alpha_diversity(alpha_df, metadata_df, 'Group').set_index('Metric')

    assert set(results['Test']) == {'Kruskal-Wallis'}
    assert np.isfinite(results.loc['observed_mean', 'Adjusted P-value'])
    assert np.isfinite(results.loc['shannon_mean', 'Adjusted P-value'])
    assert np.isnan(results.loc['evenness_mean', 'Adjusted P-value'])
    assert results.loc['evenness_mean', 'note'] != 'Successful test'


def test_compare_alpha_diversity_small_group(grouped_metadata):
    alpha_df = pd.DataFrame(
        {'observed_mean': [3, 4, 3, 4, 6, 6, 5, 6],
         'chao1_mean': [3, 4, 3, 4, 6, np.nan, np.nan, 6]},
        index=[f'S{i}' for i in range(8)],
    )

    results = compare_alpha_diversity(alpha_df, grouped_metadata, 'Group').set_index('Metric')

    assert results.loc['chao1_mean', 'note'] == 'Group size < 3'
    assert np.isnan(results.loc['chao1_mean', 'P-value'])
    # A single testable metric is left unadjusted
    assert results.loc['observed_mean', 'Adjusted P-value'] == results.loc['observed_mean', 'P-value']
