"""
Statistical analysis functions for rarefied amplicon data.
"""

import logging

import pandas as pd
import numpy as np
from scipy import stats
from skbio.diversity import beta_diversity
from skbio.stats.distance import permanova, permdisp
from statsmodels.stats.multitest import multipletests

from .errors import MissingTreeError

logger = logging.getLogger(__name__)

PHYLOGENETIC_BETA_METRICS = ('unweighted_unifrac', 'weighted_unifrac')
# Smallest group compared by the alpha diversity rank tests
MIN_GROUP_SIZE = 3


def calculate_beta_diversity(rarefied_df, metric='braycurtis', tree=None):
    """
    Calculate a beta diversity distance matrix between samples.

    Parameters:
    -----------
    rarefied_df : pandas.DataFrame
        Rarefied count table with samples as rows, taxa as columns
    metric : str
        Distance metric ('braycurtis', 'jaccard', 'unweighted_unifrac',
        'weighted_unifrac', ...)
    tree : skbio.TreeNode, optional
        Rooted tree, required for UniFrac metrics

    Returns:
    --------
    skbio.DistanceMatrix
        Beta diversity distance matrix
    """
    sample_ids = [str(s) for s in rarefied_df.index]
    counts = rarefied_df.values.astype(np.int64)

    if metric in PHYLOGENETIC_BETA_METRICS:
        if tree is None:
            raise MissingTreeError(f"Metric '{metric}' requires a rooted phylogenetic tree")
        taxa = [str(t) for t in rarefied_df.columns]
        return beta_diversity(metric, counts, sample_ids, taxa=taxa, tree=tree)

    return beta_diversity(metric, counts, sample_ids)


def _grouping_problem(grouping, variable):
    """Reason a grouping cannot be tested, or None if it can."""
    unique_groups = np.unique(grouping)
    if len(unique_groups) < 2:
        return f'Only one group found in {variable}'

    for group in unique_groups:
        if np.sum(grouping == group) < 2:
            return f'At least one group in {variable} has fewer than 2 samples'
    return None


def _distance_test(test, distance_matrix, metadata_df, variable, permutations):
    """Run a skbio permutation test with the toolkit's result dictionary."""
    common_samples = [s for s in distance_matrix.ids if s in metadata_df.index]

    result = {
        'test-statistic': np.nan,
        'p-value': np.nan,
        'sample size': len(common_samples),
    }

    if len(common_samples) < 5:
        result['note'] = 'Insufficient samples for test'
        return result

    filtered_dm = distance_matrix.filter(common_samples)
    grouping = metadata_df.loc[common_samples, variable].astype(str).values

    problem = _grouping_problem(grouping, variable)
    if problem:
        result['note'] = problem
        return result

    try:
        results = test(filtered_dm, grouping, permutations=permutations)
    except ValueError as e:
        logger.warning(f"Test on {variable} failed: {str(e)}")
        result['note'] = f'Error: {str(e)}'
        return result

    result['test-statistic'] = results['test statistic']
    result['p-value'] = results['p-value']
    result['note'] = 'Successful test'
    return result


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999):
    """
    Perform PERMANOVA test to see if grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use

    Returns:
    --------
    dict
        PERMANOVA results
    """
    return _distance_test(permanova, distance_matrix, metadata_df, variable, permutations)


def perform_permdisp(distance_matrix, metadata_df, variable, permutations=999):
    """
    Test homogeneity of group dispersions (PERMDISP).

    A significant PERMANOVA alongside a significant PERMDISP may reflect
    differences in spread rather than location.
    """
    return _distance_test(permdisp, distance_matrix, metadata_df, variable, permutations)


def assess_batch_effect(distance_matrix, metadata_df, batch_variables, permutations=999):
    """
    Test each batch variable (sequencing run, extraction plate, ...) for
    an effect on community composition.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    batch_variables : list
        Metadata columns describing technical batches
    permutations : int
        Number of permutations per test

    Returns:
    --------
    pandas.DataFrame
        One PERMANOVA and one PERMDISP row per batch variable
    """
    if isinstance(batch_variables, str):
        batch_variables = [batch_variables]

    rows = []
    for variable in batch_variables:
        if variable not in metadata_df.columns:
            raise ValueError(f"Batch variable '{variable}' not found in metadata")

        for test_name, test in (('PERMANOVA', perform_permanova), ('PERMDISP', perform_permdisp)):
            result = test(distance_matrix, metadata_df, variable, permutations)
            rows.append({'Variable': variable, 'Test': test_name, **result})
            logger.info(f"{test_name} on {variable}: p={result['p-value']}")

    return pd.DataFrame(rows)


def compare_alpha_diversity(alpha_df, metadata_df, group_var, metrics=None):
    """
    Compare alpha diversity between groups.

    Uses Mann-Whitney U for two groups and Kruskal-Wallis otherwise, with
    Benjamini-Hochberg correction across metrics. Metrics that cannot be
    tested (a group smaller than MIN_GROUP_SIZE, a constant metric) keep a
    NaN p-value, are left out of the correction and explain why in ``note``.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Wide alpha diversity table with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable in metadata
    metrics : list, optional
        Columns of ``alpha_df`` to test (default: every ``*_mean`` column)

    Returns:
    --------
    pandas.DataFrame
        Test results per metric
    """
    if metrics is None:
        metrics = [col for col in alpha_df.columns if col.endswith('_mean')]

    common_samples = [s for s in alpha_df.index if s in metadata_df.index]
    groups = metadata_df.loc[common_samples, group_var].astype(str)
    unique_groups = sorted(groups.unique())

    if len(unique_groups) < 2:
        logger.warning(f"Need at least 2 groups in {group_var} to compare alpha diversity")
        return pd.DataFrame()

    test_name = 'Mann-Whitney U' if len(unique_groups) == 2 else 'Kruskal-Wallis'

    results = []
    for metric in metrics:
        values = [alpha_df.loc[groups[groups == g].index, metric].dropna() for g in unique_groups]

        result = {'Metric': metric, 'Test': test_name, 'Statistic': np.nan, 'P-value': np.nan}
        for group, group_values in zip(unique_groups, values):
            result[f'Median in {group}'] = group_values.median()
        results.append(result)

        if any(len(group_values) < MIN_GROUP_SIZE for group_values in values):
            result['note'] = f'Group size < {MIN_GROUP_SIZE}'
            continue

        try:
            if len(unique_groups) == 2:
                stat, p_value = stats.mannwhitneyu(values[0], values[1], alternative='two-sided')
            else:
                stat, p_value = stats.kruskal(*values)
        except ValueError as e:
            logger.warning(f"{test_name} on {metric} failed: {str(e)}")
            result['note'] = f'Error: {str(e)}'
            continue

        result['Statistic'] = stat
        result['P-value'] = p_value
        # Constant metrics give an undefined statistic
        result['note'] = 'Successful test' if np.isfinite(p_value) else 'Undefined test statistic'

    results_df = pd.DataFrame(results)

    # Benjamini-Hochberg over the metrics that could be tested
    tested = np.isfinite(results_df['P-value'].astype(float))
    results_df['Adjusted P-value'] = np.nan
    if tested.sum() > 1:
        results_df.loc[tested, 'Adjusted P-value'] = multipletests(
            results_df.loc[tested, 'P-value'], method='fdr_bh'
        )[1]
    else:
        results_df.loc[tested, 'Adjusted P-value'] = results_df.loc[tested, 'P-value']

    return results_df.sort_values('Adjusted P-value')
