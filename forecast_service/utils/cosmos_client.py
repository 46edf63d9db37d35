from azure.cosmos import CosmosClient, PartitionKey
import logging
from datetime import datetime, timezone

import pandas as pd

from .categories import DEFAULT_CATEGORY, get_category
from .dataset import coerce_number, coerce_year
from .metrics import json_safe

logger = logging.getLogger(__name__)


def get_cosmos_client(conn_str: str, database_name: str, runs_container_name: str = "training_runs"):
    """
    Returns the Cosmos DB client and makes sure database and run container exist

    Args:
        conn_str: Cosmos DB connection string
        database_name: database holding the category containers
        runs_container_name: container for training run history

    Returns:
        tuple: (CosmosClient, Database, Container training_runs)
    """
    try:
        client = CosmosClient.from_connection_string(conn_str)

        database = client.create_database_if_not_exists(id=database_name)
        logger.info(f"Database {database_name} checked/created")

        container_training_runs = database.create_container_if_not_exists(
            id=runs_container_name,
            partition_key=PartitionKey(path="/category"),
            offer_throughput=400
        )
        logger.info(f"Container {runs_container_name} checked/created")

        return client, database, container_training_runs

    except Exception:
        logger.exception("Failed to connect to Cosmos DB")
        raise


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _group_by_year(rows, fields):
    if not rows:
        return []
    frame = pd.DataFrame(rows, columns=["year", *fields])
    grouped = frame.groupby("year", as_index=False)[list(fields)].sum().sort_values("year")
    return [
        {"year": int(row["year"]), **{f: float(row[f]) for f in fields}}
        for row in grouped.to_dict("records")
    ]


def aggregate_sex_records(records):
    """
    One {year, male, female} record per year.

    Accepts both pre-split documents ({year, male, female}) and one document
    per sex ({year, sex, count}); other documents still open their year with
    zero counts.
    """
    rows = []
    for record in records or []:
        year = coerce_year(record.get("year"))
        if year is None:
            continue
        male = female = 0.0
        if _is_number(record.get("male")) or _is_number(record.get("female")):
            male = coerce_number(record.get("male"))
            female = coerce_number(record.get("female"))
        elif record.get("sex"):
            sex = str(record["sex"]).lower()
            if sex == "male":
                male = coerce_number(record.get("count"))
            elif sex == "female":
                female = coerce_number(record.get("count"))
        rows.append({"year": year, "male": male, "female": female})
    return _group_by_year(rows, ["male", "female"])


def aggregate_category_records(records, fields):
    """Sums the given fields per year (civil status and other wide documents)"""
    rows = []
    for record in records or []:
        year = coerce_year(record.get("year"))
        if year is None:
            continue
        rows.append({"year": year, **{f: coerce_number(record.get(f)) for f in fields}})
    return _group_by_year(rows, fields)


def fetch_category_series(database, category: str = DEFAULT_CATEGORY):
    """
    Reads all documents of a category and aggregates them per year.

    Returns:
        list: aggregated records, or [] when the read fails
    """
    category_config = get_category(category)
    try:
        container = database.get_container_client(category_config.collection)
        raw_records = list(container.read_all_items())
        logger.info(f"{len(raw_records)} documents read from {category_config.collection}")

        if category_config.key == "sex":
            return aggregate_sex_records(raw_records)
        return aggregate_category_records(raw_records, category_config.field_keys)

    except Exception:
        logger.exception(f"Failed to fetch {category} time-series from Cosmos DB")
        return []


def save_training_run(container_training_runs, category: str, status: str, history: list,
                      avg_accuracy: float = None, best_config: dict = None):
    """
    Records one hyperparameter search run

    Args:
        container_training_runs: Cosmos DB container
        category: forecast category
        status: "completed", "cancelled", "no_eligible" or "failed"
        history: per-candidate rows
        avg_accuracy: validation accuracy of the best candidate
        best_config: winning configuration
    """
    try:
        timestamp = datetime.now(timezone.utc).isoformat()

        document = {
            "id": f"{category}_{timestamp}",
            "category": category,
            "timestamp": timestamp,
            "status": status,
            "avgAccuracy": avg_accuracy,
            "bestConfig": best_config,
            "history": json_safe(history or []),
        }

        container_training_runs.upsert_item(document)
        logger.info(f"Training run saved to Cosmos DB: {document['id']}")
        return document

    except Exception:
        logger.exception(f"Failed to save training run for {category}")
        raise
