from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import torch
import logging

from .dataset import CategoryDataset, FieldStats, denormalize, prepare_category_dataset
from .errors import InsufficientDataError
from .categories import get_category

logger = logging.getLogger(__name__)

PredictFn = Callable[[np.ndarray], Sequence[float]]


class ForecastPhase(Enum):
    SEEDED = "seeded"
    STEPPING = "stepping"
    DONE = "done"


@dataclass(frozen=True)
class ForecastPoint:
    year: int
    values: Dict[str, float]

    def to_dict(self):
        return {"year": self.year, "values": dict(self.values)}


@dataclass(frozen=True)
class ForecastState:
    """Rolling window of normalized field vectors plus the position in the horizon"""
    window: Tuple[Tuple[float, ...], ...]
    current_year: int
    remaining: int
    fields: Tuple[str, ...]
    stats: Mapping[str, FieldStats] = field(repr=False)
    phase: ForecastPhase = ForecastPhase.SEEDED


def seed_state(dataset: CategoryDataset, periods: int) -> ForecastState:
    """
    Seeds the rolling window with the last ``lookback`` normalized records.

    Raises:
        InsufficientDataError: fewer records than the lookback
    """
    lookback = dataset.lookback
    if lookback <= 0 or len(dataset.normalized_records) < lookback:
        raise InsufficientDataError(
            f"Insufficient data: {len(dataset.normalized_records)} records, "
            f"at least {lookback} needed to seed the forecast"
        )
    window = tuple(
        tuple(float(entry[f]) for f in dataset.fields)
        for entry in dataset.normalized_records[-lookback:]
    )
    return ForecastState(
        window=window,
        current_year=int(dataset.last_year),
        remaining=max(0, int(periods)),
        fields=tuple(dataset.fields),
        stats=dict(dataset.stats),
        phase=ForecastPhase.SEEDED if periods > 0 else ForecastPhase.DONE,
    )


def step(state: ForecastState, predict_fn: PredictFn) -> Tuple[ForecastPoint, ForecastState]:
    """
    One autoregressive step.

    The network output is denormalized into the next year's point, then
    re-normalized with the same stats and slid into the window in place of
    the oldest entry. Past the first step the input therefore always holds
    earlier predictions, never ground truth.
    """
    if state.phase is ForecastPhase.DONE or state.remaining <= 0:
        raise ValueError("Forecast horizon already exhausted")

    normalized_next = predict_fn(np.array(state.window, dtype=np.float32))

    values = {}
    renormalized = []
    for index, f in enumerate(state.fields):
        stats = state.stats[f]
        value = denormalize(normalized_next[index], stats)
        values[f] = value
        renormalized.append((value - stats.min) / stats.range)

    year = state.current_year + 1
    remaining = state.remaining - 1
    next_state = ForecastState(
        window=state.window[1:] + (tuple(renormalized),),
        current_year=year,
        remaining=remaining,
        fields=state.fields,
        stats=state.stats,
        phase=ForecastPhase.DONE if remaining == 0 else ForecastPhase.STEPPING,
    )
    return ForecastPoint(year=year, values=values), next_state


def predict_windows(model, xs) -> np.ndarray:
    """
    Runs the network over a batch of windows.

    Args:
        model: EmigrationLSTM (or any module mapping (n, L, F) -> (n, F))
        xs: array-like (n, lookback, num_fields)

    Returns:
        np.ndarray (n, num_fields) of normalized predictions
    """
    device = next(model.parameters()).device
    inputs = torch.tensor(np.asarray(xs, dtype=np.float32), device=device)

    model.eval()
    with torch.no_grad():
        outputs = model(inputs)

    return outputs.cpu().numpy()


def make_predict_fn(model) -> PredictFn:
    def predict(window: np.ndarray):
        return predict_windows(model, window[np.newaxis, ...])[0]
    return predict


def forecast_future_periods(model, dataset: CategoryDataset, periods: int,
                            predict_fn: Optional[PredictFn] = None) -> List[ForecastPoint]:
    """
    Forecasts ``periods`` years past the last observed year.

    Args:
        model: trained network (ignored when ``predict_fn`` is given)
        dataset: prepared dataset whose stats scale the predictions
        periods: horizon in years
        predict_fn: optional window -> normalized vector function

    Returns:
        list[ForecastPoint] ordered by year
    """
    try:
        predict_fn = predict_fn or make_predict_fn(model)
        state = seed_state(dataset, periods)
        forecast = []
        while state.phase is not ForecastPhase.DONE:
            point, state = step(state, predict_fn)
            forecast.append(point)

        if forecast:
            logger.info(f"Forecast generated: {forecast[0].year}-{forecast[-1].year} ({len(forecast)} periods)")
        return forecast

    except InsufficientDataError:
        raise
    except Exception:
        logger.exception("Failed to forecast future periods")
        raise


def build_chart_series(dataset: CategoryDataset, predictions) -> List[dict]:
    """
    Pairs every window target with its denormalized prediction.

    Returns:
        list of {"year", "actual": {field: v}, "predicted": {field: v}}
    """
    series = []
    for index, year in enumerate(dataset.years[dataset.lookback:]):
        actual_record = dataset.raw_records[index + dataset.lookback]
        row = predictions[index]
        series.append({
            "year": year,
            "actual": {f: actual_record[f] for f in dataset.fields},
            "predicted": {f: denormalize(row[i], dataset.stats[f]) for i, f in enumerate(dataset.fields)},
        })
    return series


def generate_forecast_from_model(model, metadata: Mapping, periods: int = 10,
                                 records: Optional[Sequence[Mapping]] = None, category: Optional[str] = None):
    """
    Historical fit plus future forecast of a saved model.

    The dataset is rebuilt from ``records`` (or the metadata raw records)
    with the stats stored at training time.

    Args:
        model: network restored from the model store
        metadata: saved metadata (fields, lookback, stats, rawRecords, ...)
        periods: forecast horizon
        records: series to use instead of ``metadata["rawRecords"]``

    Returns:
        dict: {"chartSeries", "futureForecast", "fields", "fieldLabels", "category"}
    """
    category = metadata.get("category") or category
    fields = metadata.get("fields") or list((metadata.get("stats") or {}).keys())
    lookback = int(metadata.get("lookback") or 0)
    source_records = records if records else metadata.get("rawRecords") or []

    if not source_records:
        raise InsufficientDataError(f"No historical records available for {get_category(category).label}.")
    dataset = prepare_category_dataset(source_records, fields, lookback, metadata.get("stats"))
    if lookback <= 0 or dataset.window_count == 0:
        raise InsufficientDataError(
            f"Insufficient data: {len(dataset.raw_records)} records for lookback {lookback}; "
            "saved model metadata is incomplete, retrain to refresh it"
        )

    predictions = predict_windows(model, dataset.xs)
    chart_series = build_chart_series(dataset, predictions)
    future = forecast_future_periods(model, dataset, periods)

    return {
        "chartSeries": chart_series,
        "futureForecast": [point.to_dict() for point in future],
        "fields": list(fields),
        "fieldLabels": metadata.get("fieldLabels") or get_category(category).field_labels,
        "category": category,
    }
