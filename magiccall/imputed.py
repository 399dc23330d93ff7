import os
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from magiccall.log import logger

N_FOUNDERS = 8


def _infer_sep_from_ext(path: str) -> str:
    lower = (path or "").lower()
    if lower.endswith(".csv"):
        return ","
    # default treat .tsv/.txt as tab
    return "\t"


def _read_table(path: str, sep: Optional[str] = None) -> pd.DataFrame:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Input not found: {path}")
    use_sep = sep or _infer_sep_from_ext(path)
    try:
        df = pd.read_csv(path, sep=use_sep)
    except Exception as e:
        raise ValueError(f"Failed to read table: {path} ({e})") from e
    return df


class ImputedMap:
    """Read-only view of a genetic map with imputed founder labels.

    :param founders: DataFrame indexed by line, one column per map position,
        holding the imputed founder (1..8) of each line at each position.
    :param chromosomes: Mapping of chromosome name to its ordered positions.
    """

    def __init__(self, founders: pd.DataFrame, chromosomes: Dict[str, List[str]]):
        if not chromosomes:
            raise ValueError("The map must contain at least one chromosome.")
        missing = [p for positions in chromosomes.values() for p in positions if p not in founders.columns]
        if missing:
            raise ValueError(
                f"Imputed founder table is missing {len(missing)} map positions, e.g. {missing[:5]}."
            )
        values = founders.to_numpy(dtype=float, na_value=np.nan)
        observed = values[~np.isnan(values)]
        if observed.size and (
            not np.all(np.isin(observed, np.arange(1, N_FOUNDERS + 1)))
        ):
            raise ValueError(f"Imputed founder labels must be integers between 1 and {N_FOUNDERS}.")
        self._founders = founders.astype("Int64")
        self._founders.index = self._founders.index.astype(str)
        self._chromosomes = {str(c): list(p) for c, p in chromosomes.items()}

    @property
    def lines(self) -> pd.Index:
        return self._founders.index

    def chromosomes(self) -> List[str]:
        return list(self._chromosomes)

    def positions_for_chromosome(self, chromosome: str) -> List[str]:
        if chromosome not in self._chromosomes:
            raise KeyError(f"Unknown chromosome: {chromosome}")
        return list(self._chromosomes[chromosome])

    def positions(self) -> List[str]:
        return [p for positions in self._chromosomes.values() for p in positions]

    def founder_label(self, position: str, line: str):
        """Imputed founder of ``line`` at ``position``, or None if not imputed."""
        value = self._founders.at[line, position]
        return None if pd.isna(value) else int(value)

    def founder_labels(self, position: str, lines: Optional[pd.Index] = None) -> pd.Series:
        """Imputed founders at ``position`` as a float Series (NaN = not imputed)."""
        labels = self._founders[position].astype(float)
        if lines is not None:
            labels = labels.reindex(lines)
        return labels


def read_raw_data(raw_file: str, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Read raw measurements for one marker.

    :param raw_file: Path to a table whose first column is the line identifier,
        followed by one or two numeric columns (e.g. the two channel intensities)
    :param sep: Optional column separator, inferred from the extension otherwise
    """
    logger.info(f"Loading raw marker data: {raw_file}")
    df = _read_table(raw_file, sep)
    df = df.set_index(df.columns[0])
    df.index = df.index.astype(str)
    return check_raw_data(df)


def check_raw_data(raw_data: pd.DataFrame) -> pd.DataFrame:
    """Validate a raw measurement table and coerce it to floats."""
    if raw_data.shape[1] not in (1, 2):
        raise ValueError(
            f"Raw marker data must contain one or two value columns, found {raw_data.shape[1]}."
        )
    if raw_data.index.has_duplicates:
        raise ValueError("Raw marker data contains duplicated line identifiers.")
    try:
        raw_data = raw_data.astype(float)
    except ValueError as e:
        raise ValueError(f"Raw marker data must be numeric ({e})") from e
    logger.info(f"Marker data has {len(raw_data)} lines with {raw_data.shape[1]} measurement dimension(s).")
    return raw_data


def read_founders(founders_file: str, sep: Optional[str] = None) -> pd.DataFrame:
    """
    Read imputed founder labels.

    :param founders_file: Path to a table whose first column is the line identifier,
        followed by one column per map position with founder labels 1..8
    :param sep: Optional column separator, inferred from the extension otherwise
    """
    logger.info(f"Loading imputed founders: {founders_file}")
    df = _read_table(founders_file, sep)
    df = df.set_index(df.columns[0])
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    logger.info(f"Loaded imputed founders for {len(df)} lines at {df.shape[1]} positions.")
    return df


def read_map(map_file: str, sep: Optional[str] = None) -> Dict[str, List[str]]:
    """
    Read the genetic map.

    :param map_file: Path to a table with columns ``chr`` and ``position``; row order
        is taken as the order of positions along each chromosome
    :param sep: Optional column separator, inferred from the extension otherwise
    """
    logger.info(f"Loading genetic map: {map_file}")
    df = _read_table(map_file, sep)
    required_columns = {"chr", "position"}
    missing_columns = required_columns - set(df.columns)
    if missing_columns:
        raise ValueError(
            f"The map file is missing the following required columns: {missing_columns}. "
            f"Please ensure the file contains columns: {required_columns}."
        )
    chromosomes: Dict[str, List[str]] = {}
    for chrom, position in zip(df["chr"].astype(str), df["position"].astype(str)):
        chromosomes.setdefault(chrom, []).append(position)
    logger.info(f"Loaded {len(df)} map positions on {len(chromosomes)} chromosomes.")
    return chromosomes


def load_imputed_map(founders_file: str, map_file: str) -> ImputedMap:
    return ImputedMap(read_founders(founders_file), read_map(map_file))


def model_frame(raw_data: pd.DataFrame, founders: pd.Series) -> pd.DataFrame:
    """Complete cases of the measurement columns (y0, y1) and the founder factor."""
    df = pd.DataFrame(
        raw_data.to_numpy(dtype=float),
        index=raw_data.index,
        columns=[f"y{i}" for i in range(raw_data.shape[1])],
    )
    df["founder"] = founders.reindex(raw_data.index)
    df = df.dropna()
    df["founder"] = df["founder"].astype(int)
    return df
