import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    """Centralised settings read from the environment"""

    @staticmethod
    def get_storage_config():
        return {
            "conn_str": os.getenv("AzureWebJobsStorage"),
            "container": os.getenv("BLOB_CONTAINER", "emigrant-lstm-models")
        }

    @staticmethod
    def get_cosmos_config():
        return {
            "conn_str": os.getenv("COSMOS_DB_CONNECTION_STRING"),
            "database": os.getenv("COSMOS_DB_DATABASE", "emigrantstats"),
            "container_training_runs": os.getenv("COSMOS_DB_CONTAINER_TRAINING_RUNS", "training_runs")
        }

    @staticmethod
    def get_training_config():
        return {
            "epochs": _env_int("TRAINING_EPOCHS", 50),
            "learning_rate": _env_float("LEARNING_RATE", 0.001),
            "batch_size": _env_int("BATCH_SIZE", 4),
            "future_periods": _env_int("FORECAST_PERIODS", 10),
        }

    @staticmethod
    def enable_progress_bar():
        """
        Whether to show the Lightning progress bar.

        Explicit ENABLE_PROGRESS_BAR wins; otherwise it is on locally and off
        inside Azure Functions (WEBSITE_INSTANCE_ID is set there).
        """
        env_value = os.getenv("ENABLE_PROGRESS_BAR", "").lower()

        if env_value in ("true", "1", "yes"):
            return True
        if env_value in ("false", "0", "no"):
            return False

        is_azure = os.getenv("WEBSITE_INSTANCE_ID") is not None
        return not is_azure
