import numpy as np
import pandas as pd
import pytest

from magiccall.calling import CallResult, FittedDistribution
from magiccall.imputed import ImputedMap
from magiccall.skewt import SkewT

N_LINES = 400
POSITIONS_PER_CHROMOSOME = 5

# allele groups of the two positions the marker is polymorphic at
FIRST_POSITION = "chr1_p3"
SECOND_POSITION = "chr2_p2"
FIRST_GROUPS = {1: 1, 2: 1, 3: 1, 4: 1, 5: 2, 6: 2, 7: 2, 8: 2}
SECOND_GROUPS = {1: 1, 2: 2, 3: 1, 4: 2, 5: 1, 6: 2, 7: 1, 8: 2}
MEANS = {(1, 1): (0.0, 0.0), (1, 2): (10.0, 0.0), (2, 1): (0.0, 10.0), (2, 2): (10.0, 10.0)}


def make_map(n_lines: int = N_LINES, seed: int = 1) -> ImputedMap:
    rng = np.random.default_rng(seed)
    lines = [f"L{i:04d}" for i in range(n_lines)]
    chromosomes = {
        chrom: [f"{chrom}_p{k}" for k in range(1, POSITIONS_PER_CHROMOSOME + 1)]
        for chrom in ("chr1", "chr2", "chr3")
    }
    columns = [p for positions in chromosomes.values() for p in positions]
    founders = pd.DataFrame(
        rng.integers(1, 9, size=(n_lines, len(columns))),
        index=lines,
        columns=columns,
    )
    return ImputedMap(founders, chromosomes)


@pytest.fixture(scope="session")
def imputed_map():
    return make_map()


@pytest.fixture(scope="session")
def truth(imputed_map):
    """True allele group of every line at the two polymorphic positions."""
    first = imputed_map.founder_labels(FIRST_POSITION).astype(int).map(FIRST_GROUPS).astype(int)
    second = imputed_map.founder_labels(SECOND_POSITION).astype(int).map(SECOND_GROUPS).astype(int)
    return pd.DataFrame({FIRST_POSITION: first, SECOND_POSITION: second})


@pytest.fixture(scope="session")
def raw_data(truth):
    """Two-channel marker with four well separated clusters."""
    rng = np.random.default_rng(7)
    means = np.array([MEANS[(a, b)] for a, b in zip(truth[FIRST_POSITION], truth[SECOND_POSITION])])
    values = means + rng.normal(scale=0.5, size=means.shape)
    return pd.DataFrame(values, index=truth.index, columns=["x", "y"])


def pvalue_matrix(entries: dict, default: float = 0.0) -> pd.DataFrame:
    """Symmetric founder p-value matrix from {(i, j): p} entries."""
    founders = list(range(1, 9))
    matrix = pd.DataFrame(default, index=pd.Index(founders, name="founder"), columns=founders)
    for (i, j), p in entries.items():
        matrix.loc[i, j] = matrix.loc[j, i] = p
    for i in founders:
        matrix.loc[i, i] = np.nan
    return matrix


@pytest.fixture
def make_pvalues():
    return pvalue_matrix


def make_call_result(raw):
    """Small two-group result over three lines, the third one uncalled."""
    lines = raw.index
    dim = raw.shape[1]
    assignment = pd.Series([1, 2, pd.NA], index=lines, dtype="Int64")
    distributions = {}
    for group, center in ((1, 0.0), (2, 10.0)):
        dist = SkewT(np.full(dim, center), np.eye(dim), np.zeros(dim), 10.0)
        contour, threshold = dist.density_contour(0.6)
        distributions[group] = FittedDistribution(group, dist, contour, threshold, True)
    return CallResult(
        overall_assignment=assignment,
        status=pd.Series(["assigned", "assigned", "unassigned"], index=lines),
        positions={},
        pvalue_matrices={},
        preliminary_groups=assignment,
        combination_table=pd.DataFrame({"p": [1, 2]}, index=pd.RangeIndex(1, 3, name="group")),
        threshold=1e-20,
        distributions=distributions,
    )
