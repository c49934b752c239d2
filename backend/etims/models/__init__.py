"""SQLAlchemy models."""

from etims.models.etims_transaction import (
    EtimsTransaction,
    TransactionKind,
    TransactionStatus,
)
from etims.models.inventory import Ingredient, Recipe, RecipeComponent

__all__ = [
    "EtimsTransaction",
    "TransactionKind",
    "TransactionStatus",
    "Ingredient",
    "Recipe",
    "RecipeComponent",
]
