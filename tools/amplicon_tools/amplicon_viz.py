"""
Visualization functions for rarefied amplicon data.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS


def plot_rarefaction_curve(sweep_df, metric, metadata_df=None, group_var=None):
    """
    Plot a rarefaction curve: mean metric value (± sd) against depth.

    Parameters:
    -----------
    sweep_df : pandas.DataFrame
        Long-format output of ``amplicon_tools.alpha.sweep``
    metric : str
        Metric label to plot (e.g. 'observed', 'shannon')
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index
    group_var : str, optional
        Metadata variable for coloring curves

    Returns:
    --------
    matplotlib.figure.Figure
        Rarefaction curve figure
    """
    plot_data = sweep_df[sweep_df['metric'] == metric].sort_values(['sample_id', 'depth'])
    if plot_data.empty:
        raise ValueError(f"Metric '{metric}' not found in rarefaction results")

    fig, ax = plt.subplots(figsize=(10, 6))

    colors = {}
    if metadata_df is not None and group_var is not None:
        groups = metadata_df[group_var].astype(str)
        palette = sns.color_palette(n_colors=groups.nunique())
        colors = dict(zip(sorted(groups.unique()), palette))

    for sample_id, sample_data in plot_data.groupby('sample_id', sort=False):
        color = None
        if colors and sample_id in metadata_df.index:
            color = colors[str(metadata_df.loc[sample_id, group_var])]

        ax.errorbar(
            sample_data['depth'], sample_data['mean'], yerr=sample_data['sd'],
            color=color, alpha=0.6, linewidth=1, capsize=2
        )

    # One legend entry per group
    for group, color in colors.items():
        ax.plot([], [], color=color, label=group)
    if colors:
        ax.legend(title=group_var, bbox_to_anchor=(1.05, 1), loc='upper left')

    ax.set_xlabel('Rarefaction depth (reads)')
    ax.set_ylabel(metric)
    ax.set_title(f'Rarefaction curve ({metric})')

    plt.tight_layout()

    return fig


def plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var, metric=None):
    """
    Create a boxplot of alpha diversity by group.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Wide alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    metric : str, optional
        Column to plot (if None, plots every ``*_mean`` column)

    Returns:
    --------
    matplotlib.figure.Figure or dict
        Boxplot figure(s)
    """
    common_samples = [s for s in alpha_df.index if s in metadata_df.index]
    alpha_subset = alpha_df.loc[common_samples]
    metadata_subset = metadata_df.loc[common_samples]

    if metric is None:
        return {
            m: _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, m)
            for m in alpha_df.columns if m.endswith('_mean')
        }

    if metric not in alpha_df.columns:
        raise ValueError(f"Metric '{metric}' not found in alpha diversity data")

    return _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, metric)


def _create_diversity_boxplot(alpha_df, metadata_df, group_var, metric):
    """Helper function to create a diversity boxplot."""
    fig, ax = plt.subplots(figsize=(10, 6))

    plot_data = pd.DataFrame({
        metric: alpha_df[metric],
        group_var: metadata_df[group_var]
    })

    sns.boxplot(x=group_var, y=metric, data=plot_data, ax=ax)

    # Add individual points
    sns.stripplot(x=group_var, y=metric, data=plot_data,
                  color='black', size=4, alpha=0.5, ax=ax)

    ax.set_title(f'{metric} by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel(metric)

    plt.tight_layout()

    return fig


def plot_beta_diversity_ordination(beta_dm, metadata_df, variable, method='PCoA'):
    """
    Create ordination plot from beta diversity distance matrix.

    Parameters:
    -----------
    beta_dm : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    method : str
        Ordination method ('PCoA' or 'NMDS')

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    if method.upper() == 'PCOA':
        pcoa_results = pcoa(beta_dm)

        variance_explained = np.asarray(pcoa_results.proportion_explained) * 100
        x_label = f'PC1 ({variance_explained[0]:.1f}% variance explained)'
        y_label = f'PC2 ({variance_explained[1]:.1f}% variance explained)'

        plot_df = pd.DataFrame({
            'Axis1': pcoa_results.samples.iloc[:, 0].values,
            'Axis2': pcoa_results.samples.iloc[:, 1].values,
        }, index=list(beta_dm.ids))
        title = f'PCoA of Beta Diversity ({variable})'
        stress = None

    elif method.upper() == 'NMDS':
        # Non-metric MDS on the precomputed distances
        mds = MDS(n_components=2, dissimilarity='precomputed', random_state=42,
                  metric=False, n_init=10, max_iter=500)
        coords = mds.fit_transform(beta_dm.data)

        plot_df = pd.DataFrame({
            'Axis1': coords[:, 0],
            'Axis2': coords[:, 1],
        }, index=list(beta_dm.ids))
        x_label, y_label = 'NMDS1', 'NMDS2'
        title = f'NMDS of Beta Diversity ({variable})'
        stress = getattr(mds, 'stress_', None)

    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    plot_df[variable] = metadata_df[variable].reindex(plot_df.index).astype(str)

    fig, ax = plt.subplots(figsize=(10, 8))

    sns.scatterplot(data=plot_df, x='Axis1', y='Axis2', hue=variable, s=100, ax=ax)

    ax.set_xlabel(x_label)
    ax.set_ylabel(y_label)
    ax.set_title(title)
    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')

    if stress is not None:
        ax.text(0.02, 0.98, f"Stress: {stress:.3f}",
                transform=ax.transAxes, va='top', ha='left',
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    plt.tight_layout()

    return fig
