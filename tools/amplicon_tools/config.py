"""
Analysis parameters: YAML configuration merged over built-in defaults.
"""

import copy
import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'input': {
        'count_table': 'data/processed/asv_table.tsv',
        'samples_as_rows': False,
        'tree': None,
    },
    'metadata': {
        'filename': 'data/metadata.tsv',
        'sample_id_column': 'SampleID',
        'group_variables': ['Group'],
        'control_samples': [],
    },
    'qc': {
        'contaminant_table': None,
        'contaminant_column': 'contaminant',
        'min_prevalence': 0.0,
        'min_abundance': 0.0,
    },
    'rarefaction': {
        'depth': 1000,
        'reps': 100,
        'seed': 42,
        'dissimilarity': 'braycurtis',
        'n_jobs': 1,
    },
    'alpha': {
        'depths': [100, 250, 500, 1000, 2500, 5000],
        'reps': 10,
        'metrics': ['observed', 'chao1', 'shannon', 'simpson', 'evenness'],
    },
    'beta': {
        'metric': 'braycurtis',
        'permutations': 999,
        'batch_variables': [],
        'ordination': 'PCoA',
    },
    'visualization': {
        'figure_dpi': 300,
    },
}


def _merge(defaults, overrides):
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path=None):
    """
    Load analysis parameters from a YAML file.

    Sections and keys missing from the file keep their default values. If
    the file does not exist the defaults are returned unchanged.

    Parameters:
    -----------
    config_path : str or Path, optional
        Path to the YAML configuration file

    Returns:
    --------
    dict
        Configuration dictionary
    """
    if config_path is None or not os.path.exists(config_path):
        logger.warning(f"Config file not found at {config_path}; using default parameters")
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    logger.info(f"Loaded configuration from {config_path}")
    return _merge(DEFAULT_CONFIG, user_config)
