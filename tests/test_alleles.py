from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from magiccall import alleles
from magiccall.alleles import AllelePartition, clique_partition, pairwise_pvalues, partition_positions
from magiccall.errors import InvalidPartition, Monomorphic

from conftest import FIRST_POSITION, SECOND_POSITION


def test_pairwise_pvalues_separates_allele_groups():
    rng = np.random.default_rng(3)
    founders = pd.Series(np.repeat(np.arange(1, 9), 20).astype(float))
    values = np.where(founders <= 4, 0.0, 10.0) + rng.normal(scale=0.5, size=len(founders))
    raw = pd.DataFrame({"x": values})

    pvalues = pairwise_pvalues(raw, founders)

    assert pvalues.shape == (8, 8)
    assert np.all(np.isnan(np.diag(pvalues.to_numpy())))
    assert np.allclose(pvalues.fillna(-1), pvalues.T.fillna(-1))
    assert pvalues.loc[1, 2] > 1e-10
    assert pvalues.loc[5, 8] > 1e-10
    assert pvalues.loc[1, 5] < 1e-40


def test_pairwise_pvalues_takes_smallest_over_dimensions():
    rng = np.random.default_rng(4)
    founders = pd.Series(np.repeat(np.arange(1, 9), 20).astype(float))
    # founders differ in the second channel only
    raw = pd.DataFrame({
        "x": rng.normal(size=len(founders)),
        "y": np.where(founders % 2 == 0, 0.0, 10.0) + rng.normal(scale=0.5, size=len(founders)),
    })

    pvalues = pairwise_pvalues(raw, founders)

    assert pvalues.loc[1, 2] < 1e-40
    assert pvalues.loc[1, 3] > 1e-10


def test_pairwise_pvalues_absent_founder_is_nan():
    rng = np.random.default_rng(5)
    founders = pd.Series(np.repeat(np.arange(1, 8), 10).astype(float))
    raw = pd.DataFrame({"x": rng.normal(size=len(founders))})

    pvalues = pairwise_pvalues(raw, founders)

    assert pvalues.loc[8].isna().all()
    assert pvalues.loc[1, 2] == pytest.approx(pvalues.loc[2, 1])
    assert not np.isnan(pvalues.loc[1, 2])


def test_clique_partition_two_groups(make_pvalues):
    entries = {}
    for group in ((1, 2, 3, 4), (5, 6, 7, 8)):
        for i in group:
            for j in group:
                if i < j:
                    entries[(i, j)] = 0.5
    groups = clique_partition(make_pvalues(entries), 1e-10)
    assert groups == [(1, 2, 3, 4), (5, 6, 7, 8)]


def test_clique_partition_isolated_founders_are_singletons(make_pvalues):
    groups = clique_partition(make_pvalues({(2, 7): 0.3}), 1e-10)
    assert groups == [(1,), (2, 7), (3,), (4,), (5,), (6,), (8,)]


def test_clique_partition_rejects_overlapping_cliques(make_pvalues):
    # 1-2 and 2-3 are joined but 1-3 is not
    with pytest.raises(InvalidPartition):
        clique_partition(make_pvalues({(1, 2): 0.5, (2, 3): 0.5}), 1e-10)


@pytest.mark.parametrize("seed", range(10))
def test_clique_partition_covers_every_founder_once(make_pvalues, seed):
    rng = np.random.default_rng(seed)
    entries = {(i, j): rng.choice([0.0, 0.5], p=[0.7, 0.3]) for i in range(1, 9) for j in range(i + 1, 9)}
    try:
        groups = clique_partition(make_pvalues(entries), 1e-10)
    except InvalidPartition:
        return
    members = [founder for group in groups for founder in group]
    assert sorted(members) == list(range(1, 9))


def test_allele_partition_mappings():
    partition = AllelePartition("p1", [(1, 3, 5, 7), (2, 4, 6, 8)])
    assert partition.founder_mapping.tolist() == [1, 2, 1, 2, 1, 2, 1, 2]
    labels = partition.group_labels(pd.Series([1.0, 4.0, np.nan], index=["a", "b", "c"]))
    assert labels.iloc[0] == 1
    assert labels.iloc[1] == 2
    assert pd.isna(labels.iloc[2])


def test_thresholds_tried_in_ascending_order(make_pvalues):
    # overlapping cliques at 1e-40 and 1e-30, an exact partition from 1e-20 on
    matrix = make_pvalues({(1, 2): 0.5, (2, 3): 1e-25, (1, 3): 1e-45})
    tried = []

    def recording_partition(pvalues, threshold):
        tried.append(threshold)
        return clique_partition(pvalues, threshold)

    with patch.object(alleles, "pvalue_matrices", return_value={"p1": matrix}), \
            patch.object(alleles, "clique_partition", side_effect=recording_partition):
        threshold, partitions, matrices = partition_positions(
            ["p1"], pd.DataFrame(), None, thresholds=[1e-10, 1e-20, 1e-30, 1e-40]
        )

    assert tried == [1e-40, 1e-30, 1e-20]
    assert threshold == 1e-20
    assert partitions["p1"].groups[0] == (1, 2)
    assert matrices["p1"] is matrix


def test_invalid_partition_at_any_position_rejects_threshold(make_pvalues):
    good = make_pvalues({(1, 2): 0.5, (3, 4): 0.5})
    overlapping = make_pvalues({(1, 2): 0.5, (2, 3): 1e-15})
    with patch.object(alleles, "pvalue_matrices", return_value={"p1": good, "p2": overlapping}):
        threshold, partitions, _ = partition_positions(["p1", "p2"], pd.DataFrame(), None, thresholds=[1e-20, 1e-10])
    assert threshold == 1e-10
    assert set(partitions) == {"p1", "p2"}


def test_no_valid_threshold_raises_invalid_partition(make_pvalues):
    overlapping = make_pvalues({(1, 2): 0.5, (2, 3): 0.5})
    with patch.object(alleles, "pvalue_matrices", return_value={"p1": overlapping}):
        with pytest.raises(InvalidPartition):
            partition_positions(["p1"], pd.DataFrame(), None, thresholds=[1e-40, 1e-10])


def test_monomorphic_position_stops_without_retry(make_pvalues):
    # every pair indistinguishable at the smallest threshold
    entries = {(i, j): 1e-5 for i in range(1, 9) for j in range(i + 1, 9)}
    matrix = make_pvalues(entries)
    with patch.object(alleles, "pvalue_matrices", return_value={"p1": matrix}), \
            patch.object(alleles, "clique_partition", wraps=clique_partition) as cliques:
        with pytest.raises(Monomorphic):
            partition_positions(["p1"], pd.DataFrame(), None, thresholds=[1e-40, 1e-30, 1e-3])
    assert cliques.call_count == 1


def test_empty_thresholds_rejected():
    with pytest.raises(ValueError):
        partition_positions(["p1"], pd.DataFrame(), None, thresholds=[])


def test_partition_positions_on_synthetic_population(raw_data, imputed_map):
    threshold, partitions, matrices = partition_positions(
        [FIRST_POSITION, SECOND_POSITION], raw_data, imputed_map
    )
    assert threshold == 1e-40
    assert partitions[FIRST_POSITION].groups == [(1, 2, 3, 4), (5, 6, 7, 8)]
    assert partitions[SECOND_POSITION].groups == [(1, 3, 5, 7), (2, 4, 6, 8)]
    assert set(matrices) == {FIRST_POSITION, SECOND_POSITION}
