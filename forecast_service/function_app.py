import logging
import json
import azure.functions as func
from datetime import datetime
from zoneinfo import ZoneInfo

from forecast_service.utils.config import Config
from forecast_service.utils.categories import DEFAULT_CATEGORY, get_category, get_default_series, is_known_category
from forecast_service.utils.cosmos_client import get_cosmos_client, fetch_category_series, save_training_run
from forecast_service.utils.errors import InsufficientDataError, ModelImportError, ModelNotFoundError
from forecast_service.utils.forecaster import generate_forecast_from_model
from forecast_service.utils.metrics import json_safe
from forecast_service.utils.search import CandidateConfig, HyperparameterSearch
from forecast_service.utils.state import CancellationToken, ModelRegistry
from forecast_service.utils.storage import ModelStore, get_storage_client
from forecast_service.utils.trainer import ModelTrainer

app = func.FunctionApp(http_auth_level=func.AuthLevel.FUNCTION)

TIMEZONE = "Asia/Manila"

# Staged/active model per category, shared by every request of this worker
registry = ModelRegistry()
cancel_tokens = {}


def setup_logger(name: str):
    """Configures the structured logger"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return logging.getLogger(name)


def _now():
    return datetime.now(ZoneInfo(TIMEZONE)).isoformat()


def _json_response(body: dict, status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(
        body=json.dumps(json_safe(body), indent=2),
        status_code=status_code,
        mimetype="application/json"
    )


def _error(message: str, status_code: int) -> func.HttpResponse:
    return _json_response({"success": False, "error": message}, status_code)


def _read_body(req: func.HttpRequest) -> dict:
    raw = req.get_body()
    if not raw:
        return {}
    try:
        body = json.loads(raw.decode())
    except ValueError as e:
        raise ValueError("Request body is not valid JSON") from e
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _read_category(body: dict) -> str:
    category = body.get("category")
    if category is None or category == "":
        category = DEFAULT_CATEGORY
    if not isinstance(category, str):
        raise ValueError("'category' must be a string")
    category = category.strip()
    if not is_known_category(category):
        raise ValueError(f"Unknown category '{category}'")
    return category


def _read_positive_int(body: dict, key: str, default: int) -> int:
    """Integer request field of at least 1, or the configured default when absent"""
    value = body.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"'{key}' must be an integer")
    try:
        value = int(value)
    except ValueError as e:
        raise ValueError(f"'{key}' must be an integer") from e
    if value < 1:
        raise ValueError(f"'{key}' must be at least 1")
    return value


def _get_store():
    storage_config = Config.get_storage_config()
    if not storage_config["conn_str"]:
        return None
    container_client = get_storage_client(storage_config["conn_str"], storage_config["container"])
    return ModelStore(container_client, registry)


def _get_cosmos(logger):
    """(database, training runs container), or (None, None) when Cosmos DB is not configured or unreachable"""
    cosmos_config = Config.get_cosmos_config()
    if not cosmos_config["conn_str"]:
        return None, None
    try:
        _, database, container_training_runs = get_cosmos_client(
            cosmos_config["conn_str"],
            cosmos_config["database"],
            cosmos_config["container_training_runs"]
        )
        return database, container_training_runs
    except Exception as e:
        logger.warning(f"Could not connect to Cosmos DB: {e}. Continuing without it...")
        return None, None


def _handle_errors(logger, action: str, handler):
    try:
        return handler()
    except (ValueError, ModelImportError) as e:
        logger.error(f"Validation error: {e}")
        return _error(str(e), 400)
    except FileNotFoundError as e:
        logger.error(f"Not found: {e}")
        return _error(str(e), 404)
    except Exception as e:
        logger.exception(f"Unexpected error during {action}")
        return _error(str(e), 500)


@app.function_name(name="health_check")
@app.route(route="health", methods=["GET"])
def health_check(req: func.HttpRequest) -> func.HttpResponse:
    """Service liveness"""
    try:
        return _json_response({"status": "healthy", "service": "forecast-service", "timestamp": _now()})
    except Exception as e:
        return _json_response({"status": "unhealthy", "service": "forecast-service", "error": str(e)}, 503)


@app.function_name(name="train")
@app.route(route="train", methods=["POST"])
def train(req: func.HttpRequest) -> func.HttpResponse:
    """Runs the hyperparameter search for a category and stages the best model"""
    logger = setup_logger("train")
    logger.info("Starting /train")
    timestamp_start = _now()

    def handler():
        # 1. Parameters
        body = _read_body(req)
        category = _read_category(body)
        training_config = Config.get_training_config()
        epochs = _read_positive_int(body, "epochs", training_config["epochs"])
        try:
            configs = [CandidateConfig.from_dict(c) for c in body["configs"]] if body.get("configs") else None
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid model configuration: {e}") from e

        # 2. Services
        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)
        database, container_training_runs = _get_cosmos(logger)

        # 3. Series: request body, then Cosmos DB, then the category fallback
        series = body.get("records")
        if not series and database is not None:
            logger.info(f"Loading {category} series from Cosmos DB...")
            series = fetch_category_series(database, category)
        if not series:
            series = get_default_series(category)

        # 4. Search
        token = CancellationToken()
        cancel_tokens[category] = token
        try:
            search = HyperparameterSearch(
                ModelTrainer(batch_size=training_config["batch_size"]),
                store,
                learning_rate=training_config["learning_rate"]
            )
            result = search.run(
                series,
                category,
                configs=configs,
                epochs=epochs,
                cancel_token=token,
                future_periods=training_config["future_periods"]
            )
        finally:
            cancel_tokens.pop(category, None)

        # 5. Run history (optional)
        if container_training_runs is not None:
            try:
                save_training_run(
                    container_training_runs,
                    category=category,
                    status=result.status,
                    history=result.history,
                    avg_accuracy=result.best["avgAccuracy"] if result.best else None,
                    best_config=result.best["config"] if result.best else None
                )
            except Exception as e:
                logger.warning(f"Failed to save training run: {e}. Continuing...")

        return _json_response({
            "success": True,
            "category": category,
            "status": result.status,
            "message": result.message,
            "history": result.history,
            "best": result.best,
            "timestamp_start": timestamp_start,
            "timestamp_end": _now()
        })

    return _handle_errors(logger, "training", handler)


@app.function_name(name="train_cancel")
@app.route(route="train/cancel", methods=["POST"])
def train_cancel(req: func.HttpRequest) -> func.HttpResponse:
    """Requests cancellation of the running search of a category"""
    logger = setup_logger("train_cancel")

    def handler():
        category = _read_category(_read_body(req))
        token = cancel_tokens.get(category)
        if token is None:
            return _error(f"No training running for {category}", 404)
        token.cancel()
        logger.info(f"Cancellation requested for {category}")
        return _json_response({"success": True, "category": category, "status": "cancelling"})

    return _handle_errors(logger, "cancellation", handler)


@app.function_name(name="load_model")
@app.route(route="models/load", methods=["POST"])
def load_model(req: func.HttpRequest) -> func.HttpResponse:
    """Activates the saved model of a category for forecasting"""
    logger = setup_logger("load_model")

    def handler():
        category = _read_category(_read_body(req))
        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)
        metadata = store.mark_loaded(category)
        return _json_response({
            "success": True,
            "category": category,
            "message": f"Loaded the saved {get_category(category).label} model. Forecasts now use these weights.",
            "metrics": metadata.get("metrics"),
            "avgAccuracy": metadata.get("avgAccuracy"),
            "bestConfig": metadata.get("bestConfig")
        })

    return _handle_errors(logger, "model load", handler)


@app.function_name(name="forecast")
@app.route(route="forecast", methods=["POST"])
def forecast(req: func.HttpRequest) -> func.HttpResponse:
    """Historical fit and future forecast of the active model"""
    logger = setup_logger("forecast")

    def handler():
        body = _read_body(req)
        category = _read_category(body)
        periods = _read_positive_int(body, "periods", Config.get_training_config()["future_periods"])

        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)

        model, metadata = store.load_active(category)

        # Models saved without their history forecast from the Cosmos DB series
        records = None
        if not metadata.get("rawRecords"):
            database, _ = _get_cosmos(logger)
            if database is not None:
                logger.info(f"Loading {category} history from Cosmos DB for the forecast...")
                records = fetch_category_series(database, category)

        try:
            result = generate_forecast_from_model(model, metadata, periods=periods, records=records, category=category)
        except InsufficientDataError as e:
            logger.error(f"Forecast rejected: {e}")
            return _error(str(e), 400)

        return _json_response({"success": True, "periods": periods, "timestamp": _now(), **result})

    return _handle_errors(logger, "forecast", handler)


@app.function_name(name="metrics")
@app.route(route="metrics", methods=["POST"])
def metrics(req: func.HttpRequest) -> func.HttpResponse:
    """Metrics and configuration of the saved model of a category"""
    logger = setup_logger("metrics")

    def handler():
        category = _read_category(_read_body(req))
        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)
        metadata = store.load_metadata(category)
        if metadata is None:
            raise ModelNotFoundError(f"No saved model for {category}. Train or load a model first.")
        return _json_response({
            "success": True,
            "category": category,
            "loaded": store.is_loaded(category),
            "metrics": metadata.get("metrics"),
            "avgAccuracy": metadata.get("avgAccuracy"),
            "bestConfig": metadata.get("bestConfig"),
            "trainedAt": metadata.get("trainedAt")
        })

    return _handle_errors(logger, "metrics lookup", handler)


@app.function_name(name="export_model")
@app.route(route="models/export", methods=["POST"])
def export_model(req: func.HttpRequest) -> func.HttpResponse:
    """Portable JSON package of the saved model"""
    logger = setup_logger("export_model")

    def handler():
        category = _read_category(_read_body(req))
        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)
        return func.HttpResponse(
            body=json.dumps(json_safe(store.export_artifacts(category))),
            status_code=200,
            mimetype="application/json",
            headers={"Content-Disposition": f'attachment; filename="emigrant-lstm-model-{category}.json"'}
        )

    return _handle_errors(logger, "model export", handler)


@app.function_name(name="import_model")
@app.route(route="models/import", methods=["POST"])
def import_model(req: func.HttpRequest) -> func.HttpResponse:
    """Restores an exported package and activates it"""
    logger = setup_logger("import_model")

    def handler():
        raw = req.get_body()
        if not raw:
            raise ModelImportError("Select the exported model package (.json).")
        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)
        category, metadata = store.import_artifacts(raw)
        return _json_response({
            "success": True,
            "category": category,
            "message": f"Model uploaded and activated for {get_category(category).label}.",
            "avgAccuracy": metadata.get("avgAccuracy")
        })

    return _handle_errors(logger, "model import", handler)


@app.function_name(name="delete_model")
@app.route(route="models/delete", methods=["POST"])
def delete_model(req: func.HttpRequest) -> func.HttpResponse:
    """Deletes the saved model and metadata of a category"""
    logger = setup_logger("delete_model")

    def handler():
        category = _read_category(_read_body(req))
        store = _get_store()
        if store is None:
            return _error("AzureWebJobsStorage not set", 500)
        store.delete(category)
        return _json_response({"success": True, "category": category, "message": "Model deleted"})

    return _handle_errors(logger, "model delete", handler)
