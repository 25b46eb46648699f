#!/usr/bin/env python3
"""
Alpha diversity rarefaction curves and group comparisons.

This script:
1. Loads the ASV count table, metadata and (optionally) the phylogenetic tree
2. Removes control samples and flagged contaminant taxa
3. Rarefies every sample repeatedly at each depth of the sweep
4. Saves mean and standard deviation of each alpha metric per sample and depth
5. Plots rarefaction curves per metric
6. Compares alpha diversity between groups at the deepest depth

Usage:
    python scripts/02_alpha_rarefaction.py [--config CONFIG_FILE] [--depths 500 1000 5000]
"""

import os
import sys
import argparse
import logging
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from pathlib import Path
from skbio import TreeNode

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from amplicon_tools import (
    setup_logger,
    load_config,
    prepare_count_table,
    load_metadata,
    parse_metrics,
    sweep,
    pivot_alpha_results,
    compare_alpha_diversity,
    plot_rarefaction_curve,
    plot_alpha_diversity_boxplot
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Alpha diversity rarefaction curves')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--count-table', type=str, default=None,
                        help='Path to ASV count table (override config)')
    parser.add_argument('--metadata-file', type=str, default=None,
                        help='Path to metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default='results/alpha_diversity',
                        help='Directory to save analysis results')
    parser.add_argument('--depths', type=int, nargs='+', default=None,
                        help='Rarefaction depths (override config)')
    parser.add_argument('--reps', type=int, default=None,
                        help='Rarefactions per sample per depth (override config)')
    parser.add_argument('--metrics', type=str, nargs='+', default=None,
                        help='Alpha diversity metrics (override config)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Base random seed (override config)')
    parser.add_argument('--n-jobs', type=int, default=None,
                        help='Worker processes, -1 for all CPUs (override config)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Optional log file')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    return parser.parse_args()


def main():
    """Main function for alpha diversity rarefaction."""
    args = parse_args()

    logger = setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))
    logger.info("Starting alpha diversity rarefaction")

    # Load configuration and apply command line overrides
    config = load_config(project_root / args.config)
    if args.count_table:
        config['input']['count_table'] = args.count_table
    if args.metadata_file:
        config['metadata']['filename'] = args.metadata_file
    alpha_cfg = config['alpha']
    for key in ('depths', 'reps', 'metrics'):
        value = getattr(args, key)
        if value is not None:
            alpha_cfg[key] = value
    seed = args.seed if args.seed is not None else config['rarefaction']['seed']
    n_jobs = args.n_jobs if args.n_jobs is not None else config['rarefaction']['n_jobs']

    # Set up output directories
    output_dir = Path(args.output_dir)
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [output_dir, figures_dir, tables_dir]:
        os.makedirs(dir_path, exist_ok=True)

    try:
        metrics = parse_metrics(alpha_cfg['metrics'])
        tree = None
        if config['input']['tree']:
            tree = TreeNode.read(config['input']['tree'])

        table = prepare_count_table(config)
        metadata_df = load_metadata(config['metadata']['filename'],
                                    config['metadata']['sample_id_column'])

        sweep_df, report_df = sweep(
            table,
            alpha_cfg['depths'],
            reps=alpha_cfg['reps'],
            metrics=metrics,
            seed=seed,
            tree=tree,
            n_jobs=n_jobs
        )
    except (ValueError, OSError) as e:
        logger.error(f"Alpha rarefaction failed: {str(e)}")
        sys.exit(1)

    sweep_file = tables_dir / 'alpha_rarefaction.csv'
    sweep_df.to_csv(sweep_file, index=False)
    report_df.to_csv(tables_dir / 'alpha_rarefaction_report.csv', index=False)
    logger.info(f"Rarefaction results saved to {sweep_file}")

    if sweep_df.empty:
        logger.warning("No samples reached any rarefaction depth")
        return

    dpi = config['visualization']['figure_dpi']
    group_vars = [v for v in config['metadata']['group_variables'] if v in metadata_df.columns]
    group_var = group_vars[0] if group_vars else None

    # Rarefaction curves
    for metric in metrics:
        fig = plot_rarefaction_curve(sweep_df, metric.label, metadata_df=metadata_df, group_var=group_var)
        curve_file = figures_dir / f"rarefaction_curve_{metric.label}.png"
        fig.savefig(curve_file, dpi=dpi, bbox_inches='tight')
        plt.close(fig)

    # Group comparisons at the deepest depth
    deepest = sweep_df['depth'].max()
    alpha_df = pivot_alpha_results(sweep_df[sweep_df['depth'] == deepest])
    alpha_df.to_csv(tables_dir / f"alpha_diversity_{deepest}.csv")

    for var in group_vars:
        results_df = compare_alpha_diversity(alpha_df, metadata_df, var)
        results_df.to_csv(tables_dir / f"alpha_diversity_{var}_stats.csv", index=False)

        figures = plot_alpha_diversity_boxplot(alpha_df, metadata_df, var)
        for column, fig in figures.items():
            fig.savefig(figures_dir / f"alpha_{column}_{var}.png", dpi=dpi, bbox_inches='tight')
            plt.close(fig)

    logger.info("Alpha diversity rarefaction complete")


if __name__ == "__main__":
    main()
