class ForecastServiceError(Exception):
    """Base error for the forecasting pipeline"""


class InsufficientDataError(ForecastServiceError, ValueError):
    """Not enough records/windows for the requested lookback"""


class ModelNotFoundError(ForecastServiceError, FileNotFoundError):
    """No saved model or metadata for a category"""


class ModelImportError(ForecastServiceError, ValueError):
    """Exported model package is malformed or does not match its topology"""
