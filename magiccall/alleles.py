from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, List, Sequence, Tuple

import networkx as nx
import numpy as np
import pandas as pd
import statsmodels.formula.api as smf

from magiccall.errors import InvalidPartition, Monomorphic
from magiccall.imputed import N_FOUNDERS, ImputedMap, model_frame
from magiccall.log import logger

FOUNDERS = list(range(1, N_FOUNDERS + 1))


@dataclass
class AllelePartition:
    """Founder groups sharing a marker allele at one map position."""

    position: str
    groups: List[Tuple[int, ...]]

    @property
    def founder_mapping(self) -> pd.Series:
        """Group index (1-based) of every founder."""
        mapping = pd.Series(0, index=pd.Index(FOUNDERS, name="founder"), name="group")
        for index, group in enumerate(self.groups, 1):
            mapping.loc[list(group)] = index
        return mapping

    def group_labels(self, founders: pd.Series) -> pd.Series:
        """Translate per-line founder labels into group indices (NaN stays NaN)."""
        mapping = {float(founder): group for founder, group in self.founder_mapping.items()}
        return founders.astype(float).map(mapping).astype("Int64")


def pairwise_pvalues(raw_data: pd.DataFrame, founders: pd.Series) -> pd.DataFrame:
    """
    P-values for a difference in marker mean between every pair of founders.

    For each measurement column a cell-means linear model on the founder factor
    is fitted and the contrast founder i - founder j is tested; the smaller
    p-value over the columns is kept. Large values mean the two founders are
    indistinguishable. Pairs involving a founder absent from the data are NaN.

    :param raw_data: Raw measurements indexed by line
    :param founders: Imputed founder labels at the position, indexed by line
    """
    df = model_frame(raw_data, founders)
    pvalues = pd.DataFrame(np.nan, index=pd.Index(FOUNDERS, name="founder"), columns=FOUNDERS)
    if df["founder"].nunique() < 2:
        return pvalues

    responses = [c for c in df.columns if c != "founder"]
    fits = [smf.ols(f"{response} ~ C(founder) - 1", data=df).fit() for response in responses]
    param_names = list(fits[0].params.index)
    columns = {int(name[len("C(founder)["):-1]): k for k, name in enumerate(param_names)}

    for i, j in combinations(FOUNDERS, 2):
        if i not in columns or j not in columns:
            continue
        contrast = np.zeros(len(param_names))
        contrast[columns[i]] = 1
        contrast[columns[j]] = -1
        pvalue = min(np.asarray(fit.t_test(contrast).pvalue).item() for fit in fits)
        pvalues.loc[i, j] = pvalues.loc[j, i] = pvalue
    return pvalues


def clique_partition(pvalues: pd.DataFrame, threshold: float) -> List[Tuple[int, ...]]:
    """
    Partition founders into the maximal cliques of the same-allele graph.

    Founders i and j are joined when their pairwise p-value exceeds ``threshold``.
    The cliques are returned ordered by their smallest founder.

    :raises InvalidPartition: if the cliques overlap, i.e. do not cover every
        founder exactly once
    """
    graph = nx.Graph()
    graph.add_nodes_from(FOUNDERS)
    for i, j in combinations(FOUNDERS, 2):
        if pvalues.loc[i, j] > threshold:
            graph.add_edge(i, j)

    cliques = sorted((tuple(sorted(c)) for c in nx.find_cliques(graph)), key=lambda c: c[0])
    members = [founder for clique in cliques for founder in clique]
    if len(members) != N_FOUNDERS or len(set(members)) != N_FOUNDERS:
        raise InvalidPartition(
            f"Maximal cliques at threshold {threshold:.3g} do not partition the founders: {cliques}"
        )
    return cliques


def pvalue_matrices(
    positions: Sequence[str],
    raw_data: pd.DataFrame,
    imputed_map: ImputedMap,
    threads: int = 1,
) -> Dict[str, pd.DataFrame]:
    """Pairwise founder p-value matrix of every position."""
    logger.info(f"Testing founder pairs at {len(positions)} position(s)...")

    def _compute(position):
        return pairwise_pvalues(raw_data, imputed_map.founder_labels(position, raw_data.index))

    if threads > 1 and len(positions) > 1:
        with ThreadPoolExecutor(max_workers=threads) as pool:
            matrices = list(pool.map(_compute, positions))
    else:
        matrices = [_compute(position) for position in positions]
    return dict(zip(positions, matrices))


def partition_positions(
    positions: Sequence[str],
    raw_data: pd.DataFrame,
    imputed_map: ImputedMap,
    thresholds: Sequence[float] = (1e-10, 1e-20, 1e-30, 1e-40),
    threads: int = 1,
) -> Tuple[float, Dict[str, AllelePartition], Dict[str, pd.DataFrame]]:
    """
    Find the founder allele groups at every selected position.

    Thresholds are tried from the smallest to the largest. A threshold is accepted
    when every position yields an exact clique partition; an overlapping clique
    cover at any position moves on to the next threshold. A position with a single
    allele group stops the search.

    :param positions: Selected map positions
    :param raw_data: Raw measurements indexed by line
    :param imputed_map: Map with imputed founder labels
    :param thresholds: Candidate p-value thresholds
    :param threads: Number of threads for the pairwise tests
    :return: The accepted threshold, the partition of each position and the
        p-value matrix of each position
    :raises Monomorphic: if a position has a single allele group
    :raises InvalidPartition: if no threshold partitions every position
    """
    if len(thresholds) == 0:
        raise ValueError("At least one allele cluster threshold is required.")
    thresholds = sorted(float(t) for t in thresholds)
    matrices = pvalue_matrices(positions, raw_data, imputed_map, threads=threads)

    last_error = None
    for threshold in thresholds:
        partitions = {}
        try:
            for position in positions:
                groups = clique_partition(matrices[position], threshold)
                if len(groups) == 1:
                    raise Monomorphic(f"Marker is monomorphic at position {position} (threshold {threshold:.3g}).")
                partitions[position] = AllelePartition(position, groups)
        except InvalidPartition as e:
            logger.warning(f"Threshold {threshold:.3g} rejected: {e}")
            last_error = e
            continue

        for position, partition in partitions.items():
            logger.info(
                "Position %s: %d allele groups %s",
                position,
                len(partition.groups),
                " | ".join(",".join(map(str, g)) for g in partition.groups),
            )
        logger.info(f"Accepted allele cluster threshold {threshold:.3g}.")
        return threshold, partitions, matrices

    raise InvalidPartition(
        f"None of the thresholds {', '.join(f'{t:.3g}' for t in thresholds)} partitions the founders at every position."
    ) from last_error
