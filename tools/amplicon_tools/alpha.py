"""
Alpha diversity over repeated rarefactions.

Each retained sample is rarefied ``reps`` times per depth; every requested
metric is computed on each draw and summarized as mean and sample standard
deviation. Running this over several depths gives the data behind a
rarefaction (collector's) curve.
"""

import logging
from enum import Enum

import numpy as np
import pandas as pd
from skbio.diversity.alpha import chao1, faith_pd, shannon, simpson

from .errors import (
    EmptyCandidateSetError,
    InvalidDepthError,
    MissingTreeError,
)
from .rarefaction import (
    DEFAULT_SEED,
    below_depth_rows,
    build_report,
    exclude_below_depth,
    failed_rows,
    map_samples,
    repeat_rarefy,
    sample_seed,
    split_malformed,
    validate_depth,
    validate_n_jobs,
    validate_reps,
)

logger = logging.getLogger(__name__)

DEFAULT_ALPHA_REPS = 10
# Value used for a draw whose statistic is undefined, e.g. the evenness of a
# draw with a single observed taxon (0 / log(1))
NAN_SENTINEL = 1.0
ALPHA_COLUMNS = ['sample_id', 'depth', 'metric', 'mean', 'sd']


def _observed(counts, taxa=None, tree=None):
    return float(np.count_nonzero(counts))


def _chao1(counts, taxa=None, tree=None):
    return float(chao1(counts))


def _shannon(counts, taxa=None, tree=None):
    return float(shannon(counts, base=np.e))


def _simpson(counts, taxa=None, tree=None):
    return float(simpson(counts))


def _evenness(counts, taxa=None, tree=None):
    # Pielou's evenness: natural-log Shannon entropy over log richness
    richness = np.count_nonzero(counts)
    with np.errstate(divide='ignore', invalid='ignore'):
        return float(np.divide(_shannon(counts), np.log(richness)))


def _faith_pd(counts, taxa, tree):
    return float(faith_pd(counts, taxa, tree))


class AlphaMetric(Enum):
    """Supported alpha diversity metrics: (label, function, needs a tree)."""

    OBSERVED = ('observed', _observed, False)
    CHAO1 = ('chao1', _chao1, False)
    SHANNON = ('shannon', _shannon, False)
    SIMPSON = ('simpson', _simpson, False)
    EVENNESS = ('evenness', _evenness, False)
    FAITH_PD = ('faith_pd', _faith_pd, True)

    def __init__(self, label, func, phylogenetic):
        self.label = label
        self.func = func
        self.phylogenetic = phylogenetic

    def compute(self, counts, taxa=None, tree=None):
        return self.func(counts, taxa, tree)

    @classmethod
    def parse(cls, metric):
        """Look up a metric by member, label or common alias (case-insensitive)."""
        if isinstance(metric, cls):
            return metric

        key = str(metric).strip().lower()
        key = METRIC_ALIASES.get(key, key)
        for member in cls:
            if member.label == key:
                return member

        valid = ', '.join(member.label for member in cls)
        raise ValueError(f"Unknown alpha diversity metric: {metric!r}. Choose from: {valid}")


METRIC_ALIASES = {
    'observed_otus': 'observed',
    'observed_features': 'observed',
    'richness': 'observed',
    'pielou_e': 'evenness',
    'pd': 'faith_pd',
}

DEFAULT_ALPHA_METRICS = (
    AlphaMetric.OBSERVED,
    AlphaMetric.CHAO1,
    AlphaMetric.SHANNON,
    AlphaMetric.SIMPSON,
    AlphaMetric.EVENNESS,
)


def parse_metrics(metrics=None):
    """Normalize requested metrics to a de-duplicated list of AlphaMetric members."""
    if metrics is None:
        return list(DEFAULT_ALPHA_METRICS)
    if isinstance(metrics, (str, AlphaMetric)):
        metrics = [metrics]

    parsed = []
    for metric in metrics:
        member = AlphaMetric.parse(metric)
        if member not in parsed:
            parsed.append(member)

    if not parsed:
        raise ValueError("At least one alpha diversity metric is required")
    return parsed


def check_tree(metrics, tree, taxa=None):
    """
    Fail fast when phylogenetic metrics cannot be computed.

    The tree must already be rooted; every taxon in ``taxa`` must be a tip.
    """
    phylogenetic = [metric.label for metric in metrics if metric.phylogenetic]
    if not phylogenetic:
        return

    if tree is None:
        raise MissingTreeError(f"Metrics {phylogenetic} require a rooted phylogenetic tree")

    if taxa is not None:
        tips = {tip.name for tip in tree.tips()}
        missing = [taxon for taxon in taxa if taxon not in tips]
        if missing:
            raise MissingTreeError(
                f"{len(missing)} taxa are not tips of the tree, e.g. {missing[:5]}"
            )


def aggregate_metrics(candidates, metrics=None, tree=None, taxa=None):
    """
    Mean and standard deviation of each metric across a candidate set.

    Parameters:
    -----------
    candidates : array-like
        Candidate set of shape (reps, n_taxa)
    metrics : iterable, optional
        Metric names or AlphaMetric members (default DEFAULT_ALPHA_METRICS)
    tree : skbio.TreeNode, optional
        Rooted tree, required for phylogenetic metrics
    taxa : list, optional
        Taxon IDs for the candidate columns, required with ``tree``

    Returns:
    --------
    dict
        AlphaMetric -> (mean, sd). The sd is the sample standard deviation
        and is 0.0 when there is a single candidate. Undefined per-draw
        values are replaced by NAN_SENTINEL before averaging.
    """
    metrics = parse_metrics(metrics)
    check_tree(metrics, tree)

    candidates = np.asarray(candidates)
    if candidates.ndim != 2 or candidates.shape[0] == 0:
        raise EmptyCandidateSetError("Candidate set is empty")

    if any(metric.phylogenetic for metric in metrics) and taxa is None:
        raise ValueError("Taxon identifiers are required for phylogenetic metrics")

    results = {}
    for metric in metrics:
        values = np.array(
            [metric.compute(candidate, taxa, tree) for candidate in candidates],
            dtype=float
        )
        values[np.isnan(values)] = NAN_SENTINEL

        mean = float(values.mean())
        sd = float(values.std(ddof=1)) if len(values) > 1 else 0.0
        results[metric] = (mean, sd)

    return results


def _alpha_task(task):
    sample_id, counts, depth, reps, seed, metrics, taxa, tree = task
    candidates = repeat_rarefy(counts, depth, reps, seed)
    return sample_id, aggregate_metrics(candidates, metrics, tree, taxa)


def sweep(table, depths, reps=DEFAULT_ALPHA_REPS, metrics=None, seed=DEFAULT_SEED,
          tree=None, n_jobs=1, progress=None):
    """
    Alpha diversity estimates over a sequence of rarefaction depths.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows, taxa as columns
    depths : iterable of int
        Rarefaction depths; processed in ascending order
    reps : int
        Rarefactions per sample per depth
    metrics : iterable, optional
        Metric names or AlphaMetric members
    seed : int
        Base seed; sample ``i`` of ``table`` uses ``seed + i`` at every depth
    tree : skbio.TreeNode, optional
        Rooted tree for phylogenetic metrics
    n_jobs : int
        Number of worker processes (1 runs in-process, -1 uses every CPU)
    progress : callable, optional
        Called as ``progress(sample_id, n_done, n_total)`` after each sample

    Returns:
    --------
    tuple
        (long-format DataFrame with columns sample_id, depth, metric, mean,
        sd; report DataFrame of excluded and failed samples)
    """
    metrics = parse_metrics(metrics)
    taxa = [str(taxon) for taxon in table.columns]
    check_tree(metrics, tree, taxa)
    reps = validate_reps(reps)
    n_jobs = validate_n_jobs(n_jobs)

    depths = sorted({validate_depth(depth) for depth in depths})
    if not depths:
        raise InvalidDepthError("At least one rarefaction depth is required")

    positions = {sample_id: i for i, sample_id in enumerate(table.index)}
    valid, malformed = split_malformed(table)
    records = []
    report_rows = []

    for depth in depths:
        kept, excluded = exclude_below_depth(valid, depth)
        report_rows.extend(failed_rows(malformed, depth))
        report_rows.extend(below_depth_rows(excluded, depth))
        logger.info(f"Depth {depth}: computing alpha diversity for {len(kept)} samples")

        tasks = (
            (sample_id, kept.loc[sample_id].to_numpy(), depth, reps,
             sample_seed(seed, positions[sample_id]), metrics, taxa, tree)
            for sample_id in kept.index
        )

        for done, (sample_id, stats) in enumerate(
                map_samples(_alpha_task, tasks, n_jobs), start=1):
            for metric in metrics:
                mean, sd = stats[metric]
                records.append({'sample_id': sample_id, 'depth': depth,
                                'metric': metric.label, 'mean': mean, 'sd': sd})
            if progress is not None:
                progress(sample_id, done, len(kept))
            else:
                logger.debug(f"Depth {depth}: processed sample {sample_id} ({done}/{len(kept)})")

    return pd.DataFrame(records, columns=ALPHA_COLUMNS), build_report(report_rows)


def alpha_rarefaction(table, depth, reps=DEFAULT_ALPHA_REPS, metrics=None, seed=DEFAULT_SEED,
                      tree=None, n_jobs=1, progress=None):
    """Alpha diversity estimates at a single rarefaction depth (see ``sweep``)."""
    return sweep(table, [depth], reps=reps, metrics=metrics, seed=seed,
                 tree=tree, n_jobs=n_jobs, progress=progress)


def pivot_alpha_results(alpha_long):
    """
    Convert long-format alpha results to one row per sample (and depth).

    Columns are named ``<metric>_mean`` and ``<metric>_sd``. When only one
    depth is present the index is the sample ID alone, so the table joins
    directly onto sample metadata.
    """
    metric_order = list(dict.fromkeys(alpha_long['metric']))

    wide = alpha_long.pivot(index=['sample_id', 'depth'], columns='metric', values=['mean', 'sd'])
    wide.columns = [f'{metric}_{stat}' for stat, metric in wide.columns]
    wide = wide[[f'{metric}_{stat}' for metric in metric_order for stat in ('mean', 'sd')]]

    if alpha_long['depth'].nunique() == 1:
        wide = wide.droplevel('depth')
    return wide
