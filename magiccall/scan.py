import math
from typing import List

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import stats as sstats
from statsmodels.multivariate.manova import MANOVA

from magiccall.errors import NoAssociation, TooComplexAssociation
from magiccall.imputed import ImputedMap, model_frame
from magiccall.log import logger


def _log10_f_pvalue(fvalue: float, df_num: float, df_den: float) -> float:
    return -sstats.f.logsf(fvalue, df_num, df_den) / math.log(10)


def score_position(raw_data: pd.DataFrame, founders: pd.Series) -> float:
    """
    Association score of a marker with one map position.

    The marker is regressed on the imputed founder factor: a one-way ANOVA for
    one measurement dimension, Pillai's trace MANOVA for two. The score is
    -log10(p) of the F test.

    :param raw_data: Raw measurements indexed by line
    :param founders: Imputed founder labels at the position, indexed by line
    :return: The score, or NaN when fewer than two founders are observed
    """
    df = model_frame(raw_data, founders)
    if df["founder"].nunique() < 2 or len(df) <= df["founder"].nunique():
        return float("nan")
    responses = [c for c in df.columns if c != "founder"]
    if len(responses) == 1:
        fit = smf.ols("y0 ~ C(founder)", data=df).fit()
        return _log10_f_pvalue(fit.fvalue, fit.df_model, fit.df_resid)
    stat = MANOVA.from_formula("y0 + y1 ~ C(founder)", data=df).mv_test().results["C(founder)"]["stat"]
    pillai = stat.loc["Pillai's trace"]
    return _log10_f_pvalue(float(pillai["F Value"]), float(pillai["Num DF"]), float(pillai["Den DF"]))


def score_positions(raw_data: pd.DataFrame, imputed_map: ImputedMap) -> pd.Series:
    """
    Score every position of the map against a marker.

    :param raw_data: Raw measurements indexed by line
    :param imputed_map: Map with imputed founder labels
    :return: Series of scores indexed by position
    """
    positions = imputed_map.positions()
    logger.info(f"Scoring marker association at {len(positions)} map positions...")
    scores = {
        position: score_position(raw_data, imputed_map.founder_labels(position))
        for position in positions
    }
    return pd.Series(scores, dtype=float)


def select_positions(
    scores: pd.Series,
    imputed_map: ImputedMap,
    threshold_chromosomes: float = 100,
    max_chromosomes: int = 2,
) -> List[str]:
    """
    Choose the map positions a marker is associated with.

    Chromosomes are ranked by their best score. The marker is rejected when more
    than ``max_chromosomes`` chromosomes score above ``threshold_chromosomes``;
    otherwise the best position of each of them is returned, best chromosome first.

    :param scores: Association scores indexed by position
    :param imputed_map: Map giving the positions of each chromosome
    :param threshold_chromosomes: Score a chromosome must exceed to be associated
    :param max_chromosomes: Maximum number of associated chromosomes
    """
    chromosome_scores = {}
    for chrom in imputed_map.chromosomes():
        chrom_scores = scores.reindex(imputed_map.positions_for_chromosome(chrom))
        chromosome_scores[chrom] = chrom_scores.max() if chrom_scores.notna().any() else -np.inf
    chromosome_scores = pd.Series(chromosome_scores, dtype=float).sort_values(ascending=False, kind="stable")

    associated = chromosome_scores[chromosome_scores > threshold_chromosomes]
    if len(associated) > max_chromosomes:
        raise TooComplexAssociation(
            f"Marker is associated with {len(associated)} chromosomes "
            f"(maximum {max_chromosomes}): {', '.join(associated.index)}"
        )
    if associated.empty:
        raise NoAssociation(
            f"No chromosome exceeds the association threshold {threshold_chromosomes:g} "
            f"(best score {chromosome_scores.iloc[0]:.3g})."
        )

    best_positions = []
    for chrom in associated.index:
        chrom_scores = scores.reindex(imputed_map.positions_for_chromosome(chrom))
        best_positions.append(chrom_scores.idxmax())
    logger.info(
        "Marker associated with %d chromosome(s): %s",
        len(best_positions),
        ", ".join(f"{c} ({p}, score {associated[c]:.3g})" for c, p in zip(associated.index, best_positions)),
    )
    return best_positions
