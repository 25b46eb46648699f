"""
Utility functions for loading, orienting and cleaning amplicon count tables.
"""

import logging

import pandas as pd
import numpy as np

logger = logging.getLogger(__name__)

# Header tokens written by biom/QIIME2 exports ahead of the feature table
QIIME_HEADER_TOKENS = (
    "#OTU ID", "#OTUID", "#OTU_ID", "#Feature ID", "#FEATURE ID",
    "feature-id", "feature id", "OTU ID", "Feature ID"
)


def load_metadata(filepath, sample_id_column='SampleID'):
    """
    Load metadata from a CSV or TSV file.

    Parameters:
    -----------
    filepath : str
        Path to the metadata file
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    sep = '\t' if str(filepath).endswith(('.tsv', '.txt')) else ','
    metadata_df = pd.read_csv(filepath, sep=sep)

    # Check if the sample ID column exists
    if sample_id_column not in metadata_df.columns:
        raise ValueError(f"Sample ID column '{sample_id_column}' not found in metadata")

    # Set index and remove any duplicate sample IDs
    metadata_df = metadata_df.set_index(sample_id_column)
    metadata_df.index = metadata_df.index.astype(str)
    if metadata_df.index.duplicated().any():
        logger.warning(f"Found {metadata_df.index.duplicated().sum()} duplicate sample IDs in metadata")
        metadata_df = metadata_df[~metadata_df.index.duplicated(keep='first')]

    # Convert categorical variables to string
    for col in metadata_df.columns:
        if metadata_df[col].dtype == 'object' or metadata_df[col].dtype.name == 'category':
            metadata_df[col] = metadata_df[col].astype(str)

    return metadata_df


def _count_preamble_lines(filepath):
    """Number of comment lines preceding the header row of a QIIME export."""
    skiprows = 0
    with open(filepath, 'r') as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                skiprows += 1
                continue
            if stripped.startswith('#') and not stripped.startswith(QIIME_HEADER_TOKENS):
                skiprows += 1
                continue
            break
    return skiprows


def load_count_table(filepath, samples_as_rows=False):
    """
    Load an ASV count table and return it with samples as rows.

    Handles the "# Constructed from biom file" preamble of QIIME2 exports and
    drops a trailing taxonomy column if present.

    Parameters:
    -----------
    filepath : str or Path
        Path to a CSV or TSV count table
    samples_as_rows : bool
        True if the file stores samples as rows, False if samples are columns

    Returns:
    --------
    pandas.DataFrame
        Count table with samples as index, taxa as columns
    """
    sep = ',' if str(filepath).endswith('.csv') else '\t'
    skiprows = _count_preamble_lines(filepath)
    abundance_df = pd.read_csv(filepath, sep=sep, skiprows=skiprows, index_col=0, low_memory=False)

    if abundance_df.index.name:
        abundance_df.index.name = abundance_df.index.name.lstrip('#')
    abundance_df.columns = [str(c).lstrip('#') for c in abundance_df.columns]
    if len(abundance_df.columns) and abundance_df.columns[-1].lower().startswith('taxonomy'):
        abundance_df = abundance_df.iloc[:, :-1]

    if abundance_df.shape[0] == 0 or abundance_df.shape[1] == 0:
        raise ValueError(f"Count table has {abundance_df.shape[0]} rows and {abundance_df.shape[1]} columns")

    # Convert to numeric where possible and handle NAs
    numeric_df = abundance_df.apply(pd.to_numeric, errors='coerce')
    coerced = int((numeric_df.isna() & abundance_df.notna()).to_numpy().sum())
    if coerced:
        logger.warning(f"Set {coerced} non-numeric cells in the count table to 0")
    abundance_df = numeric_df.fillna(0)
    abundance_df.index = abundance_df.index.astype(str)

    table = to_sample_table(abundance_df, samples_as_rows=samples_as_rows)
    logger.info(f"Loaded count table with {table.shape[0]} samples and {table.shape[1]} taxa")
    return table


def to_sample_table(abundance_df, samples_as_rows=False):
    """
    Normalize a count table to samples-as-rows orientation.

    This is the only place orientation is handled; every downstream function
    assumes samples are rows and taxa are columns.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Count table in either orientation
    samples_as_rows : bool
        Orientation of ``abundance_df``

    Returns:
    --------
    pandas.DataFrame
        Copy of the table with samples as index, taxa as columns
    """
    table = abundance_df.copy() if samples_as_rows else abundance_df.T.copy()

    if table.index.duplicated().any():
        dupes = table.index[table.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate sample identifiers in count table: {dupes}")
    if table.columns.duplicated().any():
        dupes = table.columns[table.columns.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate taxon identifiers in count table: {dupes}")

    table.index.name = 'sample_id'
    table.columns.name = 'taxon'
    return table


def summarize_depths(table):
    """
    Sequencing depth (total count) of each sample, shallowest first.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows

    Returns:
    --------
    pandas.Series
        Per-sample totals sorted ascending
    """
    depths = table.sum(axis=1).sort_values()
    depths.name = 'depth'

    if len(depths):
        logger.info(
            f"Sample depths: min={depths.min():.0f}, median={depths.median():.0f}, max={depths.max():.0f}"
        )
    return depths


def filter_low_abundance(table, min_prevalence=0.1, min_abundance=0.0001):
    """
    Filter out low abundance and low prevalence taxa.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows, taxa as columns
    min_prevalence : float
        Minimum fraction of samples in which a taxon must be present
    min_abundance : float
        Minimum mean relative abundance (fraction) a taxon must have

    Returns:
    --------
    pandas.DataFrame
        Filtered count table
    """
    # Calculate prevalence (fraction of samples where taxon is present)
    prevalence = (table > 0).mean(axis=0)

    # Mean relative abundance; empty samples contribute zeros
    totals = table.sum(axis=1)
    rel_abundance = table.div(totals.replace(0, np.nan), axis=0).fillna(0)
    mean_abundance = rel_abundance.mean(axis=0)

    keep_taxa = (prevalence >= min_prevalence) & (mean_abundance >= min_abundance)

    logger.info(f"Filtering from {table.shape[1]} to {int(keep_taxa.sum())} taxa")
    logger.debug(
        f"Prevalence threshold: {min_prevalence:.2f}, abundance threshold: {min_abundance:.4f}"
    )

    return table.loc[:, keep_taxa]


def remove_contaminants(table, contaminant_df, flag_column='contaminant'):
    """
    Drop taxa flagged as contaminants.

    The contaminant table comes from an external contaminant model and may
    carry several flag columns (e.g. a harsher and a gentler threshold); the
    caller chooses which one to apply.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows, taxa as columns
    contaminant_df : pandas.DataFrame
        Table indexed by taxon with boolean flag column(s)
    flag_column : str
        Column of ``contaminant_df`` to use

    Returns:
    --------
    tuple
        (filtered table, list of removed taxon IDs)
    """
    if flag_column not in contaminant_df.columns:
        raise ValueError(f"Contaminant flag column '{flag_column}' not found")

    flags = contaminant_df[flag_column].reindex(table.columns).fillna(False).astype(bool)
    removed = table.columns[flags.values].tolist()

    logger.info(f"Removing {len(removed)} contaminant taxa using '{flag_column}'")
    return table.loc[:, ~flags.values].copy(), removed


def remove_samples(table, sample_ids):
    """
    Drop samples (e.g. negative controls) from a count table.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows
    sample_ids : iterable
        Sample identifiers to drop

    Returns:
    --------
    pandas.DataFrame
        Table without the given samples
    """
    sample_ids = list(sample_ids)
    missing = [s for s in sample_ids if s not in table.index]
    if missing:
        logger.warning(f"{len(missing)} samples to remove are not in the table: {missing}")

    return table.drop(index=[s for s in sample_ids if s in table.index])


def prepare_count_table(config):
    """
    Load the count table named in ``config`` and apply the QC steps.

    Control samples are dropped, flagged contaminants are removed using the
    configured flag column, and the prevalence/abundance filter is applied
    when either threshold is positive.

    Parameters:
    -----------
    config : dict
        Configuration from ``amplicon_tools.config.load_config``

    Returns:
    --------
    pandas.DataFrame
        Count table with samples as rows, taxa as columns
    """
    table = load_count_table(config['input']['count_table'],
                             samples_as_rows=config['input']['samples_as_rows'])

    controls = config['metadata']['control_samples']
    if controls:
        table = remove_samples(table, controls)

    qc = config['qc']
    if qc['contaminant_table']:
        contaminant_df = pd.read_csv(qc['contaminant_table'], sep=None, engine='python', index_col=0)
        table, _ = remove_contaminants(table, contaminant_df, qc['contaminant_column'])

    if qc['min_prevalence'] > 0 or qc['min_abundance'] > 0:
        table = filter_low_abundance(table,
                                     min_prevalence=qc['min_prevalence'],
                                     min_abundance=qc['min_abundance'])
    return table
