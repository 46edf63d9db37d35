"""
Closed table of forecastable categories.

Each category maps to the Cosmos DB container that holds its documents, the
ordered list of numeric fields the network predicts, their display labels and
an optional fallback series used when the database has nothing yet.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

DEFAULT_CATEGORY = "sex"


@dataclass(frozen=True)
class FieldConfig:
    key: str
    label: str


@dataclass(frozen=True)
class CategoryConfig:
    key: str
    label: str
    collection: str
    fields: Tuple[FieldConfig, ...]
    fallback_series: Tuple[dict, ...] = field(default_factory=tuple)

    @property
    def field_keys(self) -> List[str]:
        return [f.key for f in self.fields]

    @property
    def field_labels(self) -> Dict[str, str]:
        return {f.key: f.label for f in self.fields}


FORECAST_CATEGORIES: Dict[str, CategoryConfig] = {
    "sex": CategoryConfig(
        key="sex",
        label="Sex",
        collection="sex",
        fields=(
            FieldConfig("male", "Male"),
            FieldConfig("female", "Female"),
        ),
    ),
    "civilStatus": CategoryConfig(
        key="civilStatus",
        label="Civil Status",
        collection="civilStatus",
        fields=(
            FieldConfig("single", "Single"),
            FieldConfig("married", "Married"),
            FieldConfig("widower", "Widower"),
            FieldConfig("separated", "Separated"),
            FieldConfig("divorced", "Divorced"),
            FieldConfig("notReported", "Not Reported"),
        ),
    ),
}


def get_category(category: Optional[str]) -> CategoryConfig:
    """Returns the category config, falling back to the default category"""
    return FORECAST_CATEGORIES.get(category or DEFAULT_CATEGORY, FORECAST_CATEGORIES[DEFAULT_CATEGORY])


def is_known_category(category: Optional[str]) -> bool:
    return category in FORECAST_CATEGORIES


def get_category_fields(category: Optional[str]) -> List[str]:
    return get_category(category).field_keys


def get_default_series(category: Optional[str]) -> List[dict]:
    return [dict(record) for record in get_category(category).fallback_series]
