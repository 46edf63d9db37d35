"""
Hyperparameter search over candidate LSTM configurations.

Every candidate is scored by k-fold validation (up to 3 contiguous folds)
inside the train+validation windows; the most recent windows form a test
partition carved out once and never used for selection. The best candidate,
excluding the baseline configuration, is retrained on train+validation and
saved as the category's staged model.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence
import logging
import math

from .categories import get_category
from .dataset import prepare_category_dataset
from .emigration_lstm import sanitize_units, sanitize_dropout
from .errors import InsufficientDataError
from .metrics import average_metrics
from .state import CancellationToken
from .trainer import ModelTrainer, SplitConfig

logger = logging.getLogger(__name__)

BASELINE_CONFIG_ID = 1
MIN_SERIES_LENGTH = 5
MIN_WINDOWS = 6
MAX_FOLDS = 3
TEST_RATIO = 0.15
DEFAULT_DROPOUT_FILL = 0.2

STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_NO_ELIGIBLE = "no_eligible"


@dataclass
class CandidateConfig:
    id: int
    lookback: int
    units: List[float]
    dropout: List[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict) -> "CandidateConfig":
        return cls(
            id=int(raw["id"]),
            lookback=raw.get("lookback", 3),
            units=parse_number_list(raw.get("units", "")),
            dropout=parse_number_list(raw.get("dropout", ""), allow_zero=True),
        )


DEFAULT_CONFIGS = [
    CandidateConfig(id=1, lookback=3, units=[50, 50], dropout=[0.2, 0.2]),
    CandidateConfig(id=2, lookback=4, units=[64, 32], dropout=[0.3, 0.2]),
    CandidateConfig(id=3, lookback=5, units=[80, 40], dropout=[0.2, 0.15]),
    CandidateConfig(id=4, lookback=3, units=[96, 48], dropout=[0.25, 0.2]),
    CandidateConfig(id=5, lookback=6, units=[64, 64], dropout=[0.2, 0.2]),
]


@dataclass
class SearchResult:
    status: str
    history: List[dict]
    message: str
    best: Optional[dict] = None
    metadata: Optional[dict] = None


def parse_number_list(raw, allow_zero=False) -> List[float]:
    """'64, 32' or [64, 32] -> [64.0, 32.0]; invalid entries are skipped"""
    entries = raw.split(",") if isinstance(raw, str) else list(raw or [])
    values = []
    for entry in entries:
        try:
            value = float(str(entry).strip())
        except ValueError:
            continue
        if math.isnan(value):
            continue
        if value > 0 or (allow_zero and value >= 0):
            values.append(value)
    return values


def _coerce_lookback(value) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def format_best_config(config: Optional[dict]) -> str:
    if not config:
        return "--"
    units = "-".join(str(u) for u in config.get("units", []))
    dropout = "-".join(f"{float(d):.2f}" for d in config.get("dropout", []))
    return f"L{config['lookback']} | Units {units} | Dropout {dropout}"


def build_folds(train_val_count: int):
    """
    Contiguous validation blocks over the train+validation windows.

    Returns:
        list of (train_indices, val_indices); the last fold absorbs the remainder
    """
    fold_count = min(MAX_FOLDS, train_val_count)
    fold_size = max(1, train_val_count // fold_count)
    folds = []
    for fold in range(fold_count):
        start = fold * fold_size
        end = train_val_count if fold == fold_count - 1 else min(train_val_count, start + fold_size)
        val_indices = list(range(start, end))
        train_indices = [i for i in range(train_val_count) if i < start or i >= end]
        folds.append((train_indices, val_indices))
    return folds


class CandidateError(Exception):
    """A candidate configuration that cannot be trained on this series"""


def _failed_row(row, fields, error):
    empty = {f: {"mae": math.nan, "rmse": math.nan, "accuracy": math.nan} for f in fields}
    return {**row, "metrics": empty, "avgAccuracy": math.nan, "error": str(error)}


class HyperparameterSearch:
    """
    Sequential search over candidate configurations for one category
    """

    def __init__(self, trainer: ModelTrainer, store=None, learning_rate: float = 0.001):
        """
        Args:
            trainer: ModelTrainer used for every fold and for the final run
            store: ModelStore receiving the best model (None: nothing is saved)
            learning_rate: Adam learning rate
        """
        self.trainer = trainer
        self.store = store
        self.learning_rate = learning_rate

    def run(self, series: Sequence[dict], category: str, configs: Optional[Sequence[CandidateConfig]] = None,
            epochs: int = 50, cancel_token: Optional[CancellationToken] = None,
            future_periods: int = 10) -> SearchResult:
        """
        Scores all candidates, then retrains and saves the best one.

        Raises:
            InsufficientDataError: fewer than 5 records in the series
            ValueError: no valid candidate configuration or fewer than 1 epoch
        """
        category_config = get_category(category)
        fields = category_config.field_keys
        cancel_token = cancel_token or CancellationToken()

        if epochs < 1:
            raise ValueError("Training needs at least 1 epoch.")
        if len(series) < MIN_SERIES_LENGTH:
            raise InsufficientDataError(f"Need at least {MIN_SERIES_LENGTH} years of data to train the LSTM.")

        configs = list(configs) if configs is not None else list(DEFAULT_CONFIGS)
        valid_configs = [
            c for c in configs
            if (_coerce_lookback(c.lookback) or 0) >= 2 and parse_number_list(c.units)
        ]
        if not valid_configs:
            raise ValueError("Provide at least one valid model configuration.")

        history = []
        best = None

        for index, config in enumerate(valid_configs):
            if cancel_token.cancelled:
                break

            lookback = max(2, _coerce_lookback(config.lookback))
            units = sanitize_units(config.units)
            dropout = sanitize_dropout(config.dropout, len(units), fill=DEFAULT_DROPOUT_FILL)
            row = {
                "model": f"#{config.id}",
                "lookback": lookback,
                "units": ", ".join(str(u) for u in units),
                "dropout": ", ".join(f"{d:.2f}" for d in dropout),
            }

            logger.info(
                f"[{category}] Training model #{index + 1} of {len(valid_configs)} "
                f"(config #{config.id}, lookback {lookback})..."
            )

            try:
                dataset = prepare_category_dataset(series, fields, lookback)
                total_samples = dataset.window_count
                if total_samples < MIN_WINDOWS:
                    raise CandidateError(f"Dataset split requires at least {MIN_WINDOWS} sequences.")

                test_count = max(1, int(total_samples * TEST_RATIO))
                train_val_count = total_samples - test_count
                if train_val_count < 2:
                    raise CandidateError("Not enough samples for training/validation split.")
                test_indices = list(range(train_val_count, total_samples))

                fold_runs = []
                for train_indices, val_indices in build_folds(train_val_count):
                    if cancel_token.cancelled:
                        break
                    run = self.trainer.train(
                        dataset,
                        split_config=SplitConfig(train_indices, val_indices, test_indices),
                        epochs=epochs,
                        units=units,
                        dropout=dropout,
                        learning_rate=self.learning_rate,
                        future_periods=future_periods,
                    )
                    fold_runs.append({"metrics": run.metrics, "avgAccuracy": run.avg_accuracy})
                    run.release()
                    del run
                    if cancel_token.cancelled:
                        break

                if cancel_token.cancelled:
                    break
                if not fold_runs:
                    raise CandidateError("No successful fold runs for this configuration.")

                averaged, avg_accuracy = average_metrics(fold_runs, fields)
                history.append({**row, "metrics": averaged, "avgAccuracy": round(avg_accuracy, 2)})
                logger.info(f"[{category}] Config #{config.id}: avg validation accuracy {avg_accuracy:.2f}%")

                if config.id != BASELINE_CONFIG_ID and (best is None or avg_accuracy > best["score"]):
                    best = {
                        "score": avg_accuracy,
                        "dataset": dataset,
                        "train_val_indices": list(range(train_val_count)),
                        "test_indices": test_indices,
                        "config": {"id": config.id, "lookback": lookback, "units": units, "dropout": dropout},
                    }

            except (CandidateError, InsufficientDataError) as e:
                logger.warning(f"[{category}] Config #{config.id} skipped: {e}")
                history.append(_failed_row(row, fields, e))
            except Exception as e:
                logger.exception(f"[{category}] Config #{config.id} failed")
                history.append(_failed_row(row, fields, e))

        if cancel_token.cancelled:
            logger.info(f"[{category}] Training cancelled; nothing saved")
            return SearchResult(status=STATUS_CANCELLED, history=history, message="Training cancelled.")

        if best is None:
            return SearchResult(
                status=STATUS_NO_ELIGIBLE,
                history=history,
                message=f"No eligible model (excluding configuration #{BASELINE_CONFIG_ID}) achieved a valid score.",
            )

        return self._finalize(best, category, history, epochs, future_periods, cancel_token)

    def _finalize(self, best, category, history, epochs, future_periods,
                  cancel_token: CancellationToken) -> SearchResult:
        """Retrains the winner on train+validation and saves it as the staged model"""
        category_config = get_category(category)
        final_run = self.trainer.train(
            best["dataset"],
            split_config=SplitConfig(best["train_val_indices"], [], best["test_indices"]),
            epochs=epochs,
            units=best["config"]["units"],
            dropout=best["config"]["dropout"],
            learning_rate=self.learning_rate,
            future_periods=future_periods,
        )

        if cancel_token.cancelled:
            final_run.release()
            logger.info(f"[{category}] Training cancelled during the final retrain; nothing saved")
            return SearchResult(status=STATUS_CANCELLED, history=history, message="Training cancelled.")

        dataset = best["dataset"]
        metadata = {
            "category": category,
            "fields": list(dataset.fields),
            "fieldLabels": category_config.field_labels,
            "lookback": dataset.lookback,
            "stats": dataset.stats_dict(),
            "rawRecords": [dict(r) for r in dataset.raw_records],
            "metrics": final_run.metrics,
            "avgAccuracy": final_run.avg_accuracy,
            "bestConfig": best["config"],
            "trainedAt": datetime.now(timezone.utc).isoformat(),
        }

        if self.store is not None:
            self.store.save(final_run.model, metadata, category)
            self.store.clear_loaded(category)
        final_run.release()

        summary = {
            "modelLabel": f"#{best['config']['id']}",
            "config": best["config"],
            "metrics": final_run.metrics,
            "avgAccuracy": round(best["score"], 2),
            "fieldLabels": category_config.field_labels,
            "futureForecast": [p.to_dict() for p in final_run.future_forecast],
        }
        message = (
            f"Saved best model ({format_best_config(best['config'])}, avg validation accuracy "
            f"{best['score']:.2f}%). Load it to push it to forecasting."
        )
        logger.info(f"[{category}] {message}")

        return SearchResult(status=STATUS_COMPLETED, history=history, message=message,
                            best=summary, metadata=metadata)
