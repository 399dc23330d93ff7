class UncallableMarker(Exception):
    """The marker cannot be called; no partial result is available."""

    reason = "uncallable"


class TooComplexAssociation(UncallableMarker):
    """More chromosomes pass the association threshold than allowed."""

    reason = "too_complex_association"


class NoAssociation(UncallableMarker):
    """No chromosome passes the association threshold."""

    reason = "no_association"


class InvalidPartition(UncallableMarker):
    """The maximal cliques do not partition the founders exactly."""

    reason = "invalid_partition"


class Monomorphic(UncallableMarker):
    """A selected position has a single allele group."""

    reason = "monomorphic"


class DistributionFitFailure(UncallableMarker):
    """Skew-t fitting failed for a combined group on every attempt."""

    reason = "distribution_fit_failure"
