# amplicon_tools/__init__.py
"""
Amplicon Tools - repeated rarefaction and diversity analysis of ASV count tables.

This package provides functions for:
1. Loading, orienting and cleaning ASV count tables
2. Repeated rarefaction with a representative draw per sample (beta diversity)
3. Alpha diversity means and standard deviations over repeated rarefactions
4. Rarefaction curves over a sweep of depths
5. Beta diversity, PERMANOVA/PERMDISP batch tests and plotting
"""

__version__ = "0.1.0"

from .errors import (
    RarefactionError,
    InvalidDepthError,
    EmptyCandidateSetError,
    MissingTreeError,
    MalformedCountsError
)

from .logger import setup_logger

from .config import DEFAULT_CONFIG, load_config

from .amplicon_utils import (
    load_count_table,
    load_metadata,
    to_sample_table,
    summarize_depths,
    filter_low_abundance,
    remove_contaminants,
    remove_samples,
    prepare_count_table
)

from .rarefaction import (
    rarefy,
    repeat_rarefy,
    sample_seed,
    exclude_below_depth,
    split_malformed,
    candidate_distances,
    select_representative,
    rarefy_representative
)

from .alpha import (
    AlphaMetric,
    parse_metrics,
    aggregate_metrics,
    alpha_rarefaction,
    sweep,
    pivot_alpha_results
)

from .amplicon_stats import (
    calculate_beta_diversity,
    perform_permanova,
    perform_permdisp,
    assess_batch_effect,
    compare_alpha_diversity
)

from .amplicon_viz import (
    plot_rarefaction_curve,
    plot_alpha_diversity_boxplot,
    plot_beta_diversity_ordination
)
