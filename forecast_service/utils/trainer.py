from dataclasses import dataclass
from typing import List, Optional, Sequence

from torch.utils.data import DataLoader
import pytorch_lightning as pl
from pytorch_lightning.callbacks import EarlyStopping
from pytorch_lightning.loggers import CSVLogger
import logging
import shutil
import tempfile
import os

from .dataset import CategoryDataset, SequenceDataset
from .emigration_lstm import EmigrationLSTM, sanitize_units, sanitize_dropout
from .errors import InsufficientDataError
from .forecaster import build_chart_series, forecast_future_periods, predict_windows
from .metrics import compute_metrics_from_series
from .config import Config

logger = logging.getLogger(__name__)

TRAIN_RATIO = 0.7
VAL_RATIO = 0.15


@dataclass
class SplitConfig:
    """
    Explicit window indices per partition.

    None (or an empty train list) falls back to the default split for that
    partition; an explicit empty validation/test list means "no such partition".
    """
    train_indices: Optional[List[int]] = None
    val_indices: Optional[List[int]] = None
    test_indices: Optional[List[int]] = None


@dataclass
class TrainingResult:
    model: Optional[EmigrationLSTM]
    metrics: dict
    avg_accuracy: float
    validation: Optional[dict]
    test: Optional[dict]
    training: Optional[dict]
    chart_series: list
    future_forecast: list
    dataset: CategoryDataset
    config_used: dict

    def release(self):
        """Drops the network so its parameters can be freed"""
        self.model = None


def resolve_partitions(total_samples: int, split_config: Optional[SplitConfig] = None):
    """
    Train/validation/test window indices.

    Without explicit indices: first 70% train, the next max(1, 15%) validation
    and the rest test, all in window order (no shuffling).
    """
    split_config = split_config or SplitConfig()
    all_indices = list(range(total_samples))

    train_indices = list(split_config.train_indices or []) or all_indices[:int(total_samples * TRAIN_RATIO)]
    if split_config.val_indices is not None:
        val_indices = list(split_config.val_indices)
    else:
        val_indices = all_indices[len(train_indices):len(train_indices) + max(1, int(total_samples * VAL_RATIO))]
    used = set(train_indices) | set(val_indices)
    if split_config.test_indices is not None:
        test_indices = list(split_config.test_indices)
    else:
        test_indices = [i for i in all_indices if i not in used]

    return train_indices, val_indices, test_indices


class ModelTrainer:
    """
    Trains one network configuration on a prepared dataset
    """

    def __init__(self, batch_size: int = 4, early_stopping_patience: Optional[int] = None):
        self.temp_dir = None
        self.batch_size = batch_size
        self.early_stopping_patience = early_stopping_patience

    def train(self, dataset: CategoryDataset, split_config: Optional[SplitConfig] = None,
              epochs: int = 50, units: Sequence = (50, 50), dropout: Sequence = (0.2, 0.2),
              learning_rate: float = 0.001, future_periods: int = 10, seed: Optional[int] = None):
        """
        Fits the network and evaluates it.

        Args:
            dataset: prepared CategoryDataset
            split_config: explicit partitions (default 70/15/15 in window order)
            epochs: training epochs
            units: width of each LSTM layer
            dropout: dropout rate after each LSTM layer
            learning_rate: Adam learning rate
            future_periods: horizon of the forecast attached to the result
            seed: optional seed for reproducible runs

        Returns:
            TrainingResult: primary metrics come from validation, else test,
                            else train

        Raises:
            InsufficientDataError: fewer than 2 windows or an empty train split
            ValueError: fewer than 1 epoch
        """
        total_samples = dataset.window_count
        if epochs < 1:
            raise ValueError(f"epochs must be at least 1, got {epochs}")
        if total_samples < 2:
            raise InsufficientDataError("Not enough historical data to train the model.")

        train_indices, val_indices, test_indices = resolve_partitions(total_samples, split_config)
        if not train_indices:
            raise InsufficientDataError("Training split is empty. Adjust your dataset configuration.")

        layer_units = sanitize_units(units)
        dropout_rates = sanitize_dropout(dropout, len(layer_units))

        try:
            self.temp_dir = tempfile.mkdtemp()
            logger.debug(f"Temporary directory created: {self.temp_dir}")

            if seed is not None:
                pl.seed_everything(seed, workers=True)

            model = EmigrationLSTM({
                "FIELDS": list(dataset.fields),
                "LOOKBACK": dataset.lookback,
                "UNITS": layer_units,
                "DROPOUT": dropout_rates,
                "LEARNING_RATE": learning_rate,
            })

            train_loader = DataLoader(
                SequenceDataset(dataset, train_indices),
                batch_size=self.batch_size,
                shuffle=True,
                num_workers=0
            )
            val_loader = None
            if val_indices:
                val_loader = DataLoader(
                    SequenceDataset(dataset, val_indices),
                    batch_size=self.batch_size,
                    shuffle=False,
                    num_workers=0
                )

            logger.info(
                f"Training L{dataset.lookback} units {layer_units} dropout {dropout_rates}: "
                f"train={len(train_indices)} val={len(val_indices)} test={len(test_indices)} epochs={epochs}"
            )

            trainer = pl.Trainer(
                max_epochs=epochs,
                accelerator='auto',
                callbacks=self._create_callbacks(has_validation=val_loader is not None),
                logger=CSVLogger(save_dir=self.temp_dir, name="logs"),
                default_root_dir=self.temp_dir,
                enable_checkpointing=False,
                log_every_n_steps=1,
                enable_progress_bar=Config.enable_progress_bar(),
                enable_model_summary=False
            )
            trainer.fit(model, train_dataloaders=train_loader, val_dataloaders=val_loader)

            predictions = predict_windows(model, dataset.xs)
            chart_series = build_chart_series(dataset, predictions)

            validation_metrics = compute_metrics_from_series(chart_series, dataset.fields, val_indices, "validation")
            test_metrics = compute_metrics_from_series(chart_series, dataset.fields, test_indices, "test")
            training_metrics = compute_metrics_from_series(chart_series, dataset.fields, train_indices, "train")
            primary = validation_metrics or test_metrics or training_metrics

            future_forecast = forecast_future_periods(model, dataset, future_periods)

            return TrainingResult(
                model=model,
                metrics=primary["perField"] if primary else {},
                avg_accuracy=primary["avgAccuracy"] if primary else 0.0,
                validation=validation_metrics,
                test=test_metrics,
                training=training_metrics,
                chart_series=chart_series,
                future_forecast=future_forecast,
                dataset=dataset,
                config_used={
                    "lookback": dataset.lookback,
                    "units": layer_units,
                    "dropout": dropout_rates,
                    "epochs": epochs,
                    "fields": list(dataset.fields),
                },
            )

        except Exception:
            logger.exception(f"Training failed for lookback {dataset.lookback}, units {layer_units}")
            raise
        finally:
            if self.temp_dir and os.path.exists(self.temp_dir):
                shutil.rmtree(self.temp_dir)
                logger.debug(f"Temporary directory removed: {self.temp_dir}")
            self.temp_dir = None

    def _create_callbacks(self, has_validation: bool):
        """Early stopping on val_loss when a patience is configured and validation exists"""
        if not has_validation or not self.early_stopping_patience:
            return []
        return [EarlyStopping(
            monitor='val_loss',
            patience=self.early_stopping_patience,
            min_delta=0.0001,
            mode='min',
            verbose=False
        )]
