import math

import numpy as np
from sklearn.metrics import mean_absolute_error, mean_squared_error
import logging

logger = logging.getLogger(__name__)


def calculate_accuracy(mae, avg_actual):
    """
    Accuracy as the complement of MAE relative to the mean actual value.

    A zero mean is replaced by 1; the result is clamped to [0, 100].
    """
    denominator = avg_actual or 1.0
    accuracy = (1 - mae / denominator) * 100
    return float(min(100.0, max(0.0, accuracy)))


def calculate_metrics(y_real, predictions, dataset_name=""):
    """
    Error metrics of one field over one partition.

    Args:
        y_real: actual values (array-like)
        predictions: predicted values (array-like)
        dataset_name: label used in the log line

    Returns:
        dict: {"mae", "rmse", "accuracy"} rounded to 2 decimals
    """
    try:
        y_real = np.array(y_real, dtype=np.float64)
        predictions = np.array(predictions, dtype=np.float64)

        mae = mean_absolute_error(y_real, predictions)
        rmse = np.sqrt(mean_squared_error(y_real, predictions))
        accuracy = calculate_accuracy(mae, float(np.mean(y_real)))

        metrics = {
            "mae": round(float(mae), 2),
            "rmse": round(float(rmse), 2),
            "accuracy": round(accuracy, 2),
        }

        if dataset_name:
            logger.info(f"Metrics {dataset_name}: MAE {mae:.3f} | RMSE {rmse:.3f} | accuracy {accuracy:.2f}%")

        return metrics

    except Exception:
        logger.exception(f"Failed to compute metrics for {dataset_name}")
        raise


def compute_metrics_from_series(chart_series, fields, indices, dataset_name=""):
    """
    Per-field and aggregate metrics over the chart entries selected by ``indices``.

    Args:
        chart_series: list of {"year", "actual", "predicted"} in window order
        fields: field names
        indices: window indices of the partition

    Returns:
        dict | None: {"perField": {field: metrics}, "avgAccuracy": float},
                     or None when the partition is empty
    """
    if not indices:
        return None
    subset = [chart_series[i] for i in indices if 0 <= i < len(chart_series)]
    if not subset:
        return None

    per_field = {}
    for field in fields:
        actual = [entry["actual"][field] for entry in subset]
        predicted = [entry["predicted"][field] for entry in subset]
        label = f"{dataset_name}/{field}" if dataset_name else ""
        per_field[field] = calculate_metrics(actual, predicted, label)

    avg_accuracy = sum(per_field[f]["accuracy"] for f in fields) / len(fields) if fields else 0.0

    return {
        "perField": per_field,
        "avgAccuracy": round(avg_accuracy, 2),
    }


def average_metrics(runs, fields):
    """
    Averages per-field metrics and aggregate accuracy of several fold runs.

    Args:
        runs: list of {"metrics": {field: {...}}, "avgAccuracy": float}

    Returns:
        tuple: (averaged per-field metrics, averaged accuracy)
    """
    averaged = {}
    for field in fields:
        entries = [run["metrics"].get(field, {}) for run in runs]
        count = len(entries)
        averaged[field] = {
            key: round(sum(entry.get(key, 0) or 0 for entry in entries) / count, 2)
            for key in ("mae", "rmse", "accuracy")
        }
    avg_accuracy = sum(run.get("avgAccuracy", 0) or 0 for run in runs) / len(runs)
    return averaged, avg_accuracy


def average_metric(metrics, key):
    """Mean of one metric across fields (used in the run history)"""
    values = list((metrics or {}).values())
    if not values:
        return 0.0
    return sum((metric or {}).get(key, 0) or 0 for metric in values) / len(values)


def json_safe(value):
    """Replaces NaN (failed candidates) with None so payloads stay valid JSON"""
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
