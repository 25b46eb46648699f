"""
Repeated rarefaction of amplicon count tables.

A count vector is rarefied by drawing ``depth`` reads without replacement
(multivariate hypergeometric sampling). Each sample is rarefied ``reps``
times from a generator seeded with ``base_seed + sample_index``, and one
representative draw is kept per sample: the candidate with the smallest
mean dissimilarity to the other candidates.
"""

import logging
import os
from concurrent.futures import ProcessPoolExecutor

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform

from .errors import (
    EmptyCandidateSetError,
    InvalidDepthError,
    MalformedCountsError,
)

logger = logging.getLogger(__name__)

DEFAULT_SEED = 42
DEFAULT_BETA_REPS = 100
REPORT_COLUMNS = ['sample_id', 'depth', 'reason', 'detail']


def sample_seed(base_seed, sample_index):
    """Seed used for the sample at ``sample_index``: ``base_seed + sample_index``."""
    return int(base_seed) + int(sample_index)


def _as_count_array(counts):
    try:
        values = np.asarray(counts, dtype=float)
    except (TypeError, ValueError) as e:
        raise MalformedCountsError(f"Count vector contains non-numeric values: {str(e)}") from e

    if values.ndim != 1:
        raise MalformedCountsError(f"Expected a 1-D count vector, got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise MalformedCountsError("Count vector contains missing or infinite values")
    if np.any(values < 0):
        raise MalformedCountsError("Count vector contains negative values")
    if np.any(values != np.floor(values)):
        raise MalformedCountsError("Count vector contains non-integer values")

    return values.astype(np.int64)


def validate_depth(depth):
    """Return ``depth`` as an int, raising InvalidDepthError unless it is a positive integer."""
    if isinstance(depth, (bool, np.bool_)) or not float(depth).is_integer() or depth < 1:
        raise InvalidDepthError(f"Rarefaction depth must be a positive integer, got {depth!r}")
    return int(depth)


def validate_reps(reps):
    """Return ``reps`` as an int, raising EmptyCandidateSetError if no candidates would be drawn."""
    if reps is None or int(reps) < 1:
        raise EmptyCandidateSetError(f"Number of repetitions must be at least 1, got {reps!r}")
    return int(reps)


def validate_n_jobs(n_jobs):
    """Return the worker count: None and 1 run in-process, -1 uses every CPU."""
    if n_jobs is None:
        return 1
    if n_jobs == -1:
        return os.cpu_count() or 1
    if int(n_jobs) < 1:
        raise ValueError(f"n_jobs must be a positive integer or -1, got {n_jobs!r}")
    return int(n_jobs)


def rarefy(counts, depth, seed=None):
    """
    Subsample a count vector to ``depth`` reads without replacement.

    Parameters:
    -----------
    counts : array-like or pandas.Series
        Non-negative integer counts, one per taxon
    depth : int
        Number of reads to draw
    seed : int, numpy.random.Generator or None
        Seed or generator for the draw

    Returns:
    --------
    numpy.ndarray or pandas.Series
        Rarefied counts over the same taxa, summing to ``depth``
    """
    values = _as_count_array(counts)
    depth = validate_depth(depth)

    total = int(values.sum())
    if depth > total:
        raise InvalidDepthError(f"Cannot rarefy to depth {depth}: sample total is {total}")

    rng = np.random.default_rng(seed)
    rarefied = rng.multivariate_hypergeometric(values, depth)

    if isinstance(counts, pd.Series):
        return pd.Series(rarefied, index=counts.index, name=counts.name)
    return rarefied


def repeat_rarefy(counts, depth, reps, seed):
    """
    Rarefy one count vector ``reps`` times.

    The generator is seeded once and the draws are taken in sequence, so the
    same seed always reproduces the same candidate set.

    Returns:
    --------
    numpy.ndarray
        Candidate set of shape (reps, n_taxa)
    """
    reps = validate_reps(reps)
    values = _as_count_array(counts)
    rng = np.random.default_rng(seed)

    return np.vstack([rarefy(values, depth, seed=rng) for _ in range(reps)])


def split_malformed(table):
    """
    Separate samples whose counts cannot be rarefied.

    A sample is malformed when any of its cells is non-numeric, missing,
    infinite, negative or fractional. Malformed samples are set aside before
    depth exclusion, so they are reported as failures whatever their total.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows

    Returns:
    --------
    tuple
        (numeric table of well-formed samples, list of (sample ID, reason))
    """
    malformed = []
    for sample_id, row in table.iterrows():
        try:
            _as_count_array(row.to_numpy())
        except MalformedCountsError as e:
            malformed.append((sample_id, str(e)))

    for sample_id, reason in malformed:
        logger.warning(f"Skipping sample {sample_id}: {reason}")

    valid = table.drop(index=[sample_id for sample_id, _ in malformed])
    return valid.astype(float).astype(np.int64), malformed


def failed_rows(malformed, depth):
    return [
        {'sample_id': sample_id, 'depth': depth, 'reason': 'failed', 'detail': reason}
        for sample_id, reason in malformed
    ]


def exclude_below_depth(table, depth):
    """
    Split off samples whose total count is below ``depth``.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows
    depth : int
        Target rarefaction depth

    Returns:
    --------
    tuple
        (kept table, list of excluded sample IDs in table order)
    """
    totals = table.sum(axis=1)
    below = (totals < depth).to_numpy()
    excluded = table.index[below].tolist()

    if excluded:
        logger.info(f"Excluding {len(excluded)} samples with fewer than {depth} reads")
    return table.loc[~below], excluded


def candidate_distances(candidates, dissimilarity='braycurtis'):
    """
    Square matrix of pairwise dissimilarities between candidates.

    ``dissimilarity`` is a metric name understood by scipy or a callable
    taking two count vectors and returning a float.
    """
    candidates = np.asarray(candidates)
    if candidates.ndim != 2 or candidates.shape[0] == 0:
        raise EmptyCandidateSetError("Candidate set is empty")

    return squareform(pdist(candidates, metric=dissimilarity))


def representative_index(candidates, dissimilarity='braycurtis', centrality=np.mean):
    """
    Position of the most central candidate.

    Each candidate is scored by reducing its distances to every other
    candidate with ``centrality``; the lowest score wins and ties go to the
    candidate drawn first.
    """
    candidates = np.asarray(candidates)
    if candidates.ndim != 2 or candidates.shape[0] == 0:
        raise EmptyCandidateSetError("Candidate set is empty")

    n_candidates = candidates.shape[0]
    if n_candidates == 1:
        return 0

    distances = candidate_distances(candidates, dissimilarity)
    others = ~np.eye(n_candidates, dtype=bool)
    scores = np.array([centrality(distances[i][others[i]]) for i in range(n_candidates)])

    # argmin returns the first occurrence of the minimum
    return int(np.argmin(scores))


def select_representative(candidates, dissimilarity='braycurtis', centrality=np.mean):
    """
    Pick the representative rarefied profile from a candidate set.

    Parameters:
    -----------
    candidates : array-like
        Candidate set of shape (reps, n_taxa)
    dissimilarity : str or callable
        Pairwise dissimilarity between two candidates (default Bray-Curtis)
    centrality : callable
        Reduces a candidate's distances to the others to one score
        (default mean)

    Returns:
    --------
    numpy.ndarray
        The selected count vector
    """
    candidates = np.asarray(candidates)
    index = representative_index(candidates, dissimilarity, centrality)
    return candidates[index].copy()


def build_report(rows):
    """DataFrame of excluded or failed samples with the reason for each."""
    return pd.DataFrame(list(rows), columns=REPORT_COLUMNS)


def below_depth_rows(excluded, depth):
    return [
        {'sample_id': sample_id, 'depth': depth, 'reason': 'below_depth',
         'detail': f'total count below {depth}'}
        for sample_id in excluded
    ]


def map_samples(func, tasks, n_jobs=1):
    """
    Apply ``func`` to each per-sample task, yielding results in task order.

    With ``n_jobs`` other than 1 the tasks run in a process pool
    (``n_jobs=-1`` uses every CPU).
    """
    workers = validate_n_jobs(n_jobs)
    if workers == 1:
        for task in tasks:
            yield func(task)
        return

    with ProcessPoolExecutor(max_workers=workers) as executor:
        yield from executor.map(func, tasks)


def _log_progress(sample_id, done, total):
    logger.debug(f"Processed sample {sample_id} ({done}/{total})")


def _representative_task(task):
    sample_id, counts, depth, reps, seed, dissimilarity, centrality = task
    candidates = repeat_rarefy(counts, depth, reps, seed)
    return sample_id, select_representative(candidates, dissimilarity, centrality)


def rarefy_representative(table, depth, reps=DEFAULT_BETA_REPS, seed=DEFAULT_SEED,
                          dissimilarity='braycurtis', centrality=np.mean,
                          n_jobs=1, progress=None):
    """
    Rarefy every sample to ``depth`` and keep one representative draw each.

    Samples below ``depth`` are dropped from the output and listed in the
    report, as are samples whose counts are malformed.

    Parameters:
    -----------
    table : pandas.DataFrame
        Count table with samples as rows, taxa as columns
    depth : int
        Target depth
    reps : int
        Candidates drawn per sample
    seed : int
        Base seed; sample ``i`` of ``table`` uses ``seed + i``
    dissimilarity : str or callable
        Dissimilarity between candidates
    centrality : callable
        Reduction of each candidate's distances to the others
    n_jobs : int
        Number of worker processes (1 runs in-process, -1 uses every CPU)
    progress : callable, optional
        Called as ``progress(sample_id, n_done, n_total)`` after each sample

    Returns:
    --------
    tuple
        (rarefied count table, report DataFrame)
    """
    depth = validate_depth(depth)
    reps = validate_reps(reps)
    n_jobs = validate_n_jobs(n_jobs)
    progress = progress or _log_progress

    positions = {sample_id: i for i, sample_id in enumerate(table.index)}
    valid, malformed = split_malformed(table)
    kept, excluded = exclude_below_depth(valid, depth)
    report_rows = failed_rows(malformed, depth) + below_depth_rows(excluded, depth)

    logger.info(
        f"Rarefying {len(kept)} samples to depth {depth} with {reps} repetitions"
    )

    tasks = (
        (sample_id, kept.loc[sample_id].to_numpy(), depth, reps,
         sample_seed(seed, positions[sample_id]), dissimilarity, centrality)
        for sample_id in kept.index
    )

    representatives = []
    for done, (sample_id, representative) in enumerate(
            map_samples(_representative_task, tasks, n_jobs), start=1):
        representatives.append(representative)
        progress(sample_id, done, len(kept))

    rarefied = pd.DataFrame(
        representatives,
        index=pd.Index(list(kept.index), name=table.index.name),
        columns=table.columns,
        dtype=np.int64,
    )

    return rarefied, build_report(report_rows)
