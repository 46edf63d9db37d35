import os
import tempfile

import pytest
from unittest.mock import patch

from forecast_service.utils.dataset import prepare_category_dataset
from forecast_service.utils.errors import InsufficientDataError
from forecast_service.utils.forecaster import forecast_future_periods
from forecast_service.utils.trainer import ModelTrainer, SplitConfig, resolve_partitions

FIELDS = ["male", "female"]


class TestResolvePartitions:
    """Default and explicit window partitions"""

    def test_default_split(self):
        train, val, test = resolve_partitions(20)
        assert train == list(range(14))
        assert val == [14, 15, 16]
        assert test == [17, 18, 19]

    def test_small_dataset_keeps_one_validation_window(self):
        train, val, test = resolve_partitions(3)
        assert train == [0, 1]
        assert val == [2]
        assert test == []

    def test_explicit_indices(self):
        train, val, test = resolve_partitions(6, SplitConfig([0, 1, 2], [3], [4, 5]))
        assert (train, val, test) == ([0, 1, 2], [3], [4, 5])

    def test_explicit_empty_validation(self):
        train, val, test = resolve_partitions(6, SplitConfig([0, 1, 2, 3, 4], [], [5]))
        assert val == []
        assert test == [5]


class TestModelTrainer:
    """Training runs on small series"""

    @pytest.fixture
    def trainer(self):
        return ModelTrainer(batch_size=4)

    def test_train_with_explicit_split(self, trainer, short_sex_series):
        dataset = prepare_category_dataset(short_sex_series, FIELDS, 3)
        assert dataset.window_count == 3

        result = trainer.train(
            dataset,
            split_config=SplitConfig([0, 1], [2], []),
            epochs=2,
            units=[8, 4],
            dropout=[0.2, 0.2],
            future_periods=3,
            seed=7,
        )

        assert result.model is not None
        assert result.validation is not None
        assert result.test is None
        assert result.metrics == result.validation["perField"]
        assert result.avg_accuracy == result.validation["avgAccuracy"]
        assert set(result.metrics) == {"male", "female"}
        assert 0.0 <= result.avg_accuracy <= 100.0

        assert [entry["year"] for entry in result.chart_series] == [2021, 2022, 2023]
        assert [point.year for point in result.future_forecast] == [2024, 2025, 2026]
        assert set(result.future_forecast[0].values) == {"male", "female"}
        assert result.config_used["units"] == [8, 4]

        result.release()
        assert result.model is None

    def test_primary_metrics_fall_back_to_test_then_train(self, trainer, short_sex_series):
        dataset = prepare_category_dataset(short_sex_series, FIELDS, 3)

        with_test = trainer.train(dataset, SplitConfig([0, 1], [], [2]), epochs=1, units=[4], future_periods=1)
        assert with_test.validation is None
        assert with_test.avg_accuracy == with_test.test["avgAccuracy"]

        train_only = trainer.train(dataset, SplitConfig([0, 1, 2], [], []), epochs=1, units=[4], future_periods=1)
        assert train_only.test is None
        assert train_only.avg_accuracy == train_only.training["avgAccuracy"]

    def test_not_enough_windows(self, trainer, short_sex_series):
        dataset = prepare_category_dataset(short_sex_series[:4], FIELDS, 3)
        with pytest.raises(InsufficientDataError, match="Not enough historical data"):
            trainer.train(dataset, epochs=1)

    def test_temp_dir_removed_after_failure(self, trainer, short_sex_series):
        dataset = prepare_category_dataset(short_sex_series, FIELDS, 3)
        created = []

        original_mkdtemp = tempfile.mkdtemp

        def tracking_mkdtemp(*args, **kwargs):
            path = original_mkdtemp(*args, **kwargs)
            created.append(path)
            return path

        with patch("forecast_service.utils.trainer.tempfile.mkdtemp", side_effect=tracking_mkdtemp), \
                patch("forecast_service.utils.trainer.pl.Trainer", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                trainer.train(dataset, epochs=1)

        assert created
        assert not os.path.exists(created[0])
        assert trainer.temp_dir is None

    def test_early_stopping_callback_only_with_validation(self):
        trainer = ModelTrainer(early_stopping_patience=3)
        assert len(trainer._create_callbacks(has_validation=True)) == 1
        assert trainer._create_callbacks(has_validation=False) == []
        assert ModelTrainer()._create_callbacks(has_validation=True) == []

    @pytest.mark.parametrize("epochs", [0, -1])
    def test_epochs_below_one_rejected(self, trainer, short_sex_series, epochs):
        dataset = prepare_category_dataset(short_sex_series, FIELDS, 3)
        with patch("forecast_service.utils.trainer.pl.Trainer") as lightning_trainer:
            with pytest.raises(ValueError, match="epochs must be at least 1"):
                trainer.train(dataset, epochs=epochs)
        lightning_trainer.assert_not_called()


def test_learns_linear_trend(linear_sex_series):
    dataset = prepare_category_dataset(linear_sex_series, FIELDS, 3)
    assert dataset.window_count == 3

    result = ModelTrainer(batch_size=4).train(
        dataset,
        split_config=SplitConfig([0, 1], [2], []),
        epochs=300,
        units=[32, 16],
        dropout=[0, 0],
        learning_rate=0.01,
        future_periods=2,
        seed=42,
    )

    assert result.validation is not None
    for field in FIELDS:
        assert result.metrics[field]["mae"] < 15.0

    future = forecast_future_periods(result.model, dataset, 2)
    assert [point.year for point in future] == [2024, 2025]
    for point in future:
        assert set(point.values) == {"male", "female"}
    result.release()
