from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from torch.utils.data import Dataset
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldStats:
    min: float
    max: float
    range: float

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "range": self.range}

    @classmethod
    def from_dict(cls, raw: Mapping) -> "FieldStats":
        value_range = float(raw.get("range", 0)) or 1.0
        return cls(min=float(raw["min"]), max=float(raw["max"]), range=value_range)


StatsLike = Union[FieldStats, Mapping]


def coerce_number(value) -> float:
    """Numeric value of a record field; missing, non-numeric and non-finite values become 0"""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def coerce_year(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def compute_stats(values: Sequence) -> FieldStats:
    """
    Min/max/range of a series.

    Args:
        values: raw values (coerced with ``coerce_number``)

    Returns:
        FieldStats: range is 1 when the series is constant; an empty series
                    gives {min: 0, max: 1, range: 1}
    """
    numbers = [coerce_number(v) for v in values]
    if not numbers:
        return FieldStats(min=0.0, max=1.0, range=1.0)
    low = min(numbers)
    high = max(numbers)
    return FieldStats(min=low, max=high, range=(high - low) or 1.0)


def create_empty_stats(fields: Sequence[str]) -> Dict[str, FieldStats]:
    return {f: FieldStats(min=0.0, max=1.0, range=1.0) for f in fields}


def as_field_stats(stats: StatsLike) -> FieldStats:
    return stats if isinstance(stats, FieldStats) else FieldStats.from_dict(stats)


def normalize(value, stats: StatsLike) -> float:
    stats = as_field_stats(stats)
    return (coerce_number(value) - stats.min) / stats.range


def denormalize(value, stats: StatsLike) -> float:
    stats = as_field_stats(stats)
    return float(value) * stats.range + stats.min


def stats_to_dict(stats: Mapping[str, FieldStats]) -> Dict[str, dict]:
    return {f: s.to_dict() for f, s in stats.items()}


def normalize_series(series: Sequence[Mapping], fields: Sequence[str],
                     stats_override: Optional[Mapping[str, StatsLike]] = None):
    """
    Normalizes each field of a year-ordered series to [0, 1].

    Stats found in ``stats_override`` are used verbatim so inference reuses
    the scaling fitted at training time; missing fields are computed.

    Returns:
        tuple: (normalized_records, stats)
    """
    stats: Dict[str, FieldStats] = {}
    for f in fields:
        if stats_override and stats_override.get(f):
            stats[f] = as_field_stats(stats_override[f])
            continue
        stats[f] = compute_stats([item.get(f) for item in series])

    normalized = []
    for item in series:
        entry = {"year": item["year"]}
        for f in fields:
            entry[f] = (coerce_number(item.get(f)) - stats[f].min) / stats[f].range
        normalized.append(entry)

    return normalized, stats


def create_sequences(normalized_records: Sequence[Mapping], fields: Sequence[str], lookback: int):
    """
    Sliding windows over a normalized series.

    ``xs[i]`` stacks the field vectors of records ``[i, i + lookback)`` and
    ``ys[i]`` is the field vector of record ``i + lookback``. Windows are
    positional: a missing year shifts them silently (see ``find_year_gaps``).

    Returns:
        tuple: (xs, ys) float32 arrays shaped (n, lookback, fields) and (n, fields)
    """
    num_fields = len(fields)
    X, y = [], []
    for i in range(lookback, len(normalized_records)):
        window = normalized_records[i - lookback:i]
        X.append([[entry[f] for f in fields] for entry in window])
        y.append([normalized_records[i][f] for f in fields])

    if not X:
        return (np.zeros((0, max(lookback, 0), num_fields), dtype=np.float32),
                np.zeros((0, num_fields), dtype=np.float32))
    return np.array(X, dtype=np.float32), np.array(y, dtype=np.float32)


def find_year_gaps(years: Sequence[int]) -> List[int]:
    """Years missing between the first and last observed year"""
    missing = []
    for previous, current in zip(years, years[1:]):
        missing.extend(range(previous + 1, current))
    return missing


def _freeze(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class CategoryDataset:
    """Prepared series for one category; built once and shared by trainer and forecaster"""
    raw_records: Tuple[dict, ...]
    normalized_records: Tuple[dict, ...]
    stats: Dict[str, FieldStats]
    xs: np.ndarray
    ys: np.ndarray
    years: Tuple[int, ...]
    lookback: int
    fields: Tuple[str, ...]

    @property
    def window_count(self) -> int:
        return int(self.xs.shape[0])

    @property
    def last_year(self) -> Optional[int]:
        return self.years[-1] if self.years else None

    def stats_dict(self) -> Dict[str, dict]:
        return stats_to_dict(self.stats)


def prepare_category_dataset(series: Sequence[Mapping], fields: Sequence[str], lookback: int,
                             stats_override: Optional[Mapping[str, StatsLike]] = None) -> CategoryDataset:
    """
    Builds the dataset for a category series.

    Records without a usable year are dropped and the rest sorted by year.
    Degenerate input yields an empty dataset rather than an error, so callers
    check ``window_count`` and report the validation problem themselves.

    Args:
        series: raw records ``{"year": ..., field: value, ...}``
        fields: fields to model, in output order
        lookback: window length
        stats_override: stats fitted at training time (inference)

    Returns:
        CategoryDataset
    """
    fields = tuple(fields)
    cleaned = []
    for item in series:
        year = coerce_year(item.get("year"))
        if year is None:
            continue
        cleaned.append({**item, "year": year})
    cleaned.sort(key=lambda item: item["year"])

    if not cleaned:
        xs, ys = create_sequences([], fields, lookback)
        return CategoryDataset(
            raw_records=(),
            normalized_records=(),
            stats=create_empty_stats(fields),
            xs=_freeze(xs),
            ys=_freeze(ys),
            years=(),
            lookback=lookback,
            fields=fields,
        )

    normalized, stats = normalize_series(cleaned, fields, stats_override)
    xs, ys = create_sequences(normalized, fields, lookback)
    years = tuple(item["year"] for item in cleaned)

    gaps = find_year_gaps(years)
    if gaps:
        logger.warning(f"Series has missing years {gaps}; windows are positional and span the gap")

    raw_records = tuple(
        {"year": item["year"], **{f: coerce_number(item.get(f)) for f in fields}}
        for item in cleaned
    )

    logger.info(f"Dataset prepared: {len(cleaned)} records, {xs.shape[0]} windows of length {lookback}")

    return CategoryDataset(
        raw_records=raw_records,
        normalized_records=tuple(normalized),
        stats=stats,
        xs=_freeze(xs),
        ys=_freeze(ys),
        years=years,
        lookback=lookback,
        fields=fields,
    )


class SequenceDataset(Dataset):
    """
    Torch view over a subset of the dataset windows, selected by index
    """

    def __init__(self, dataset: CategoryDataset, indices: Sequence[int]):
        """
        Args:
            dataset: prepared CategoryDataset
            indices: window indices belonging to this partition
        """
        self.indices = list(indices)
        self.X = np.array(dataset.xs[self.indices], dtype=np.float32)
        self.y = np.array(dataset.ys[self.indices], dtype=np.float32)

    def __len__(self):
        return len(self.X)

    def __getitem__(self, idx):
        return torch.tensor(self.X[idx]), torch.tensor(self.y[idx])
