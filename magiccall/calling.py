from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from magiccall.alleles import AllelePartition, partition_positions
from magiccall.errors import DistributionFitFailure
from magiccall.imputed import ImputedMap, check_raw_data
from magiccall.log import logger
from magiccall.scan import score_positions, select_positions
from magiccall.skewt import Deadline, FitTimeout, SkewT, fit_skew_t

ASSIGNED = "assigned"
UNASSIGNED = "unassigned"
AMBIGUOUS = "ambiguous"

_FIT_ERRORS = (FitTimeout, ValueError, ArithmeticError, np.linalg.LinAlgError)


@dataclass
class FittedDistribution:
    """Skew-t fitted to one combined group, with its classification contour."""

    group: int
    distribution: SkewT
    contour: np.ndarray
    threshold: float
    symmetric_fit: bool


@dataclass
class PositionCall:
    """Final calls at one map position and the founder to allele mapping."""

    position: str
    finals: pd.Series
    founders: pd.Series


@dataclass
class CallResult:
    overall_assignment: pd.Series
    status: pd.Series
    positions: Dict[str, PositionCall]
    pvalue_matrices: Dict[str, pd.DataFrame]
    preliminary_groups: pd.Series
    combination_table: pd.DataFrame
    threshold: float
    distributions: Dict[int, Optional[FittedDistribution]] = field(default_factory=dict)

    @property
    def n_groups(self) -> int:
        return len(self.combination_table)

    def to_frame(self) -> pd.DataFrame:
        """Per-line table: preliminary group, consensus group, status and the call at each position."""
        df = pd.DataFrame({
            "preliminary": self.preliminary_groups,
            "overall": self.overall_assignment,
            "status": self.status,
        })
        for position, call in self.positions.items():
            df[position] = call.finals
        df.index.name = "line"
        return df

    def founders_frame(self) -> pd.DataFrame:
        """Allele group of every founder at every position."""
        return pd.DataFrame({position: call.founders for position, call in self.positions.items()})

    def pvalues_frame(self) -> pd.DataFrame:
        """Pairwise founder p-values of every position in long format."""
        records = []
        for position, matrix in self.pvalue_matrices.items():
            for i in matrix.index:
                for j in matrix.columns:
                    if i < j:
                        records.append({"position": position, "founder_i": i, "founder_j": j, "pvalue": matrix.loc[i, j]})
        return pd.DataFrame(records)


def combine_groups(group_labels: Dict[str, pd.Series]) -> Tuple[pd.Series, pd.DataFrame]:
    """
    Combine per-position allele groups into one label per line.

    Every distinct observed tuple of group indices across positions gets a dense
    id 1..G, in sorted tuple order. Lines lacking a group at any position get no
    combined label.

    :param group_labels: Per-position group index of each line
    :return: The combined label of each line and the combination table
        (combined id -> group index at each position)
    """
    frame = pd.DataFrame(group_labels)
    complete = frame.dropna()
    rows = [tuple(int(v) for v in row) for row in complete.to_numpy()]
    combos = sorted(set(rows))
    lookup = {combo: group for group, combo in enumerate(combos, 1)}

    table = pd.DataFrame(combos, columns=frame.columns, index=pd.RangeIndex(1, len(combos) + 1, name="group"))
    combined = pd.Series(pd.NA, index=frame.index, dtype="Int64", name="preliminary")
    combined[complete.index] = [lookup[row] for row in rows]
    return combined, table


def fit_group_distribution(
    data: np.ndarray,
    group: int,
    t_distribution_pvalue: float = 0.6,
    fit_timeout: float = 120,
) -> FittedDistribution:
    """
    Fit a skew-t to one combined group and derive its contour threshold.

    The symmetric fit (alpha = 0) is tried first; if it fails or runs out of time
    the unconstrained fit is tried with a fresh deadline.

    :raises DistributionFitFailure: if both attempts fail
    """
    last_error = None
    for symmetric in (True, False):
        kind = "symmetric" if symmetric else "skewed"
        try:
            distribution = fit_skew_t(data, fix_alpha=symmetric, deadline=Deadline(fit_timeout))
            contour, threshold = distribution.density_contour(t_distribution_pvalue)
        except _FIT_ERRORS as e:
            logger.warning(f"Group {group}: {kind} skew-t fit failed ({e}).")
            last_error = e
            continue
        logger.info(f"Group {group}: {kind} skew-t fitted to {len(data)} lines, contour density {threshold:.4g}.")
        return FittedDistribution(group, distribution, contour, threshold, symmetric)
    raise DistributionFitFailure(f"Could not fit a skew-t distribution to combined group {group}.") from last_error


def classify_lines(
    raw_data: pd.DataFrame,
    combined: pd.Series,
    n_groups: int,
    t_distribution_pvalue: float = 0.6,
    min_group_size: int = 10,
    fit_timeout: float = 120,
    threads: int = 1,
) -> Tuple[pd.Series, pd.Series, Dict[int, Optional[FittedDistribution]]]:
    """
    Classify every line by the density contours of the combined groups.

    A skew-t is fitted to the lines of each combined group; a line is inside a
    group when its density under that group's fit exceeds the mean density along
    the group's contour. Lines inside exactly one group are assigned to it, lines
    inside several are ambiguous and lines inside none are unassigned. Groups with
    fewer than ``min_group_size`` complete lines are not fitted.

    :raises DistributionFitFailure: if a fit fails or no group is large enough to fit
    :return: Consensus group of each line (<NA> if ambiguous or unassigned), the
        status of each line and the fitted distribution of each group
    """
    values = raw_data.to_numpy(dtype=float)
    complete = np.all(np.isfinite(values), axis=1)

    def _fit(group):
        members = combined.eq(group).fillna(False).to_numpy(dtype=bool) & complete
        if members.sum() < min_group_size:
            logger.warning(
                f"Group {group}: only {members.sum()} lines (minimum {min_group_size}); no distribution fitted."
            )
            return None
        return fit_group_distribution(values[members], group, t_distribution_pvalue, fit_timeout)

    groups = list(range(1, n_groups + 1))
    logger.info(f"Fitting skew-t distributions to {n_groups} combined groups...")
    if threads > 1 and n_groups > 1:
        with ThreadPoolExecutor(max_workers=threads) as pool:
            fitted = list(pool.map(_fit, groups))
    else:
        fitted = [_fit(group) for group in groups]
    if all(fit is None for fit in fitted):
        raise DistributionFitFailure(
            f"None of the {n_groups} combined groups has {min_group_size} complete lines to fit a distribution."
        )

    inside = np.zeros((len(values), n_groups), dtype=bool)
    for k, fit in enumerate(fitted):
        if fit is None:
            continue
        density = fit.distribution.pdf(values)
        # non-finite densities never count as inside
        with np.errstate(invalid="ignore"):
            inside[:, k] = np.isfinite(density) & (density > fit.threshold)

    counts = inside.sum(axis=1)
    assignment = pd.Series(pd.NA, index=raw_data.index, dtype="Int64", name="overall")
    unique = counts == 1
    assignment[unique] = inside[unique].argmax(axis=1) + 1
    status = pd.Series(
        np.select([counts == 0, counts == 1], [UNASSIGNED, ASSIGNED], AMBIGUOUS),
        index=raw_data.index,
        name="status",
    )
    logger.info(
        "Classified %d lines: %d assigned, %d ambiguous, %d unassigned.",
        len(status),
        (status == ASSIGNED).sum(),
        (status == AMBIGUOUS).sum(),
        (status == UNASSIGNED).sum(),
    )
    return assignment, status, dict(zip(groups, fitted))


def reconcile_calls(
    assignment: pd.Series,
    group_labels: Dict[str, pd.Series],
    partitions: Dict[str, AllelePartition],
) -> Dict[str, PositionCall]:
    """
    Translate consensus groups back into allele calls at each position.

    Each combined group takes the allele group it most often coincides with at
    the position (the smallest allele index on ties); every line assigned to the
    combined group receives that call.
    """
    assigned = assignment.notna()
    calls = {}
    for position, labels in group_labels.items():
        table = pd.crosstab(
            assignment[assigned].astype(int),
            labels[assigned],
            rownames=["group"],
            colnames=["allele"],
        ).sort_index(axis=1)
        finals = pd.Series(pd.NA, index=assignment.index, dtype="Int64", name=position)
        for group in table.index:
            finals[assignment.eq(group).fillna(False)] = int(table.loc[group].idxmax())
        calls[position] = PositionCall(position, finals, partitions[position].founder_mapping)
    return calls


def call_from_map(
    raw_data: pd.DataFrame,
    imputed_map: ImputedMap,
    threshold_chromosomes: float = 100,
    threshold_allele_clusters: Sequence[float] = (1e-10, 1e-20, 1e-30, 1e-40),
    max_chromosomes: int = 2,
    t_distribution_pvalue: float = 0.6,
    scores: Optional[pd.Series] = None,
    min_group_size: int = 10,
    fit_timeout: float = 120,
    threads: int = 1,
) -> CallResult:
    """
    Call a marker using an existing genetic map with imputed founders.

    1. Find the chromosomes the marker is associated with and the best position on each.
    2. Partition the founders into allele groups at each of these positions.
    3. Combine the per-position groups into a preliminary grouping of the lines.
    4. Fit a skew-t to each preliminary group and classify the lines by density contours.
    5. Translate the consensus classification into calls at each position.

    :param raw_data: Raw measurements for the marker, indexed by line (one or two columns)
    :param imputed_map: Map with imputed founder labels
    :param threshold_chromosomes: Association score a chromosome must exceed
    :param threshold_allele_clusters: Candidate p-value thresholds for joining founders
    :param max_chromosomes: Maximum number of chromosomes the marker may be associated with
    :param t_distribution_pvalue: Probability enclosed by each group's contour (0-1)
    :param scores: Pre-computed association scores per position (computed when None)
    :param min_group_size: Minimum number of lines for a combined group to be fitted
    :param fit_timeout: Time limit in seconds for each skew-t fit attempt
    :param threads: Number of threads for the pairwise tests and the fits
    :raises UncallableMarker: if the marker cannot be called
    """
    if not 0 < t_distribution_pvalue < 1:
        raise ValueError(f"t_distribution_pvalue must lie in (0, 1), got {t_distribution_pvalue}.")
    raw_data = check_raw_data(raw_data)
    raw_data.index = raw_data.index.astype(str)
    common = raw_data.index.intersection(imputed_map.lines)
    if common.empty:
        raise ValueError("None of the lines in the raw marker data are present in the imputed map.")
    if len(common) < len(raw_data):
        logger.warning(f"{len(raw_data) - len(common)} lines are missing from the imputed map and are ignored.")
        raw_data = raw_data.loc[common]

    if scores is None:
        scores = score_positions(raw_data, imputed_map)
    positions = select_positions(scores, imputed_map, threshold_chromosomes, max_chromosomes)

    threshold, partitions, matrices = partition_positions(
        positions, raw_data, imputed_map, threshold_allele_clusters, threads=threads
    )
    group_labels = {
        position: partitions[position].group_labels(imputed_map.founder_labels(position, raw_data.index))
        for position in positions
    }
    combined, table = combine_groups(group_labels)
    logger.info(f"Found {len(table)} combined allele groups across {len(positions)} position(s).")

    assignment, status, distributions = classify_lines(
        raw_data,
        combined,
        len(table),
        t_distribution_pvalue=t_distribution_pvalue,
        min_group_size=min_group_size,
        fit_timeout=fit_timeout,
        threads=threads,
    )
    calls = reconcile_calls(assignment, group_labels, partitions)
    return CallResult(
        overall_assignment=assignment,
        status=status,
        positions=calls,
        pvalue_matrices=matrices,
        preliminary_groups=combined,
        combination_table=table,
        threshold=threshold,
        distributions=distributions,
    )
