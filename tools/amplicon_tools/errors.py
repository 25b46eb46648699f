"""
Exceptions raised by the rarefaction and diversity functions.
"""


class RarefactionError(ValueError):
    """Base class for errors raised by amplicon_tools."""


class InvalidDepthError(RarefactionError):
    """Requested depth is not positive or exceeds a sample's total count."""


class EmptyCandidateSetError(RarefactionError):
    """No rarefied candidates were produced for a sample."""


class MissingTreeError(RarefactionError):
    """A phylogenetic metric was requested without a rooted tree."""


class MalformedCountsError(RarefactionError):
    """A count vector holds negative, non-finite or non-integer values."""
