#!/usr/bin/env python3
"""
Rarefy the ASV table to a single depth and analyze beta diversity.

This script:
1. Loads the ASV count table, metadata and (optionally) the phylogenetic tree
2. Removes control samples and flagged contaminant taxa
3. Rarefies every sample repeatedly and keeps the most central draw
4. Calculates the beta diversity distance matrix of the rarefied table
5. Tests batch and group variables with PERMANOVA / PERMDISP
6. Creates ordination plots

Usage:
    python scripts/01_rarefy_beta.py [--config CONFIG_FILE] [--depth DEPTH]
"""

import os
import sys
import argparse
import logging
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from pathlib import Path
from skbio import TreeNode

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from amplicon_tools import (
    RarefactionError,
    setup_logger,
    load_config,
    prepare_count_table,
    load_metadata,
    summarize_depths,
    rarefy_representative,
    calculate_beta_diversity,
    perform_permanova,
    assess_batch_effect,
    plot_beta_diversity_ordination
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Representative rarefaction and beta diversity')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--count-table', type=str, default=None,
                        help='Path to ASV count table (override config)')
    parser.add_argument('--metadata-file', type=str, default=None,
                        help='Path to metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default='results/beta_diversity',
                        help='Directory to save analysis results')
    parser.add_argument('--depth', type=int, default=None,
                        help='Rarefaction depth (override config)')
    parser.add_argument('--reps', type=int, default=None,
                        help='Rarefactions per sample (override config)')
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
    """Main function for representative rarefaction and beta diversity."""
    args = parse_args()

    logger = setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))
    logger.info("Starting representative rarefaction")

    # Load configuration and apply command line overrides
    config = load_config(project_root / args.config)
    if args.count_table:
        config['input']['count_table'] = args.count_table
    if args.metadata_file:
        config['metadata']['filename'] = args.metadata_file
    rare_cfg = config['rarefaction']
    for key in ('depth', 'reps', 'seed', 'n_jobs'):
        value = getattr(args, key)
        if value is not None:
            rare_cfg[key] = value

    # Set up output directories
    output_dir = Path(args.output_dir)
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [output_dir, figures_dir, tables_dir]:
        os.makedirs(dir_path, exist_ok=True)

    try:
        table = prepare_count_table(config)
        metadata_df = load_metadata(config['metadata']['filename'],
                                    config['metadata']['sample_id_column'])
        summarize_depths(table).to_csv(tables_dir / 'sample_depths.csv')

        rarefied_df, report_df = rarefy_representative(
            table,
            depth=rare_cfg['depth'],
            reps=rare_cfg['reps'],
            seed=rare_cfg['seed'],
            dissimilarity=rare_cfg['dissimilarity'],
            n_jobs=rare_cfg['n_jobs']
        )
    except (ValueError, OSError) as e:
        logger.error(f"Rarefaction failed: {str(e)}")
        sys.exit(1)

    rarefied_file = tables_dir / f"rarefied_table_{rare_cfg['depth']}.csv"
    rarefied_df.to_csv(rarefied_file)
    report_df.to_csv(tables_dir / 'rarefaction_report.csv', index=False)
    logger.info(f"Rarefied table with {len(rarefied_df)} samples saved to {rarefied_file}")
    if not report_df.empty:
        logger.info(f"{len(report_df)} samples excluded or failed; see rarefaction_report.csv")

    # Beta diversity
    beta_cfg = config['beta']
    tree = None
    if config['input']['tree']:
        tree = TreeNode.read(config['input']['tree'])

    try:
        beta_dm = calculate_beta_diversity(rarefied_df, metric=beta_cfg['metric'], tree=tree)
    except RarefactionError as e:
        logger.error(f"Beta diversity failed: {str(e)}")
        sys.exit(1)
    beta_dm.to_data_frame().to_csv(tables_dir / f"distance_matrix_{beta_cfg['metric']}.csv")

    # Batch effects
    if beta_cfg['batch_variables']:
        batch_df = assess_batch_effect(beta_dm, metadata_df, beta_cfg['batch_variables'],
                                       permutations=beta_cfg['permutations'])
        batch_df.to_csv(tables_dir / 'batch_effect_tests.csv', index=False)

    # Group comparisons and ordination
    permanova_results = {}
    for var in config['metadata']['group_variables']:
        if var not in metadata_df.columns:
            logger.warning(f"Variable '{var}' not found in metadata")
            continue

        permanova_results[var] = perform_permanova(beta_dm, metadata_df, var,
                                                   permutations=beta_cfg['permutations'])
        logger.info(f"PERMANOVA {var}: {permanova_results[var]}")

        fig = plot_beta_diversity_ordination(beta_dm, metadata_df, var, method=beta_cfg['ordination'])
        ordination_file = figures_dir / f"beta_{beta_cfg['ordination'].lower()}_{var}.png"
        fig.savefig(ordination_file, dpi=config['visualization']['figure_dpi'], bbox_inches='tight')
        plt.close(fig)

    if permanova_results:
        permanova_df = pd.DataFrame.from_dict(permanova_results, orient='index')
        permanova_df.to_csv(tables_dir / 'permanova_results.csv')

    logger.info("Representative rarefaction complete")


if __name__ == "__main__":
    main()
