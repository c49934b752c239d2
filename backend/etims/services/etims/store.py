"""Business record access for the fiscal layer.

The domain service reads ingredients and recipes and writes back the
authority-issued codes through a ``FiscalRecordStore``. The SQL
implementation works on the local ``ingredients``/``recipes`` tables;
other deployments plug in their own store.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from etims.models.inventory import Ingredient, Recipe, RecipeComponent
from etims.schemas.etims import (
    CompositionComponent,
    IngredientRecord,
    RecipeRecord,
    RecordId,
)

logger = logging.getLogger(__name__)


class FiscalRecordStore(ABC):
    """Base interface for the datastore holding registrable items."""

    @abstractmethod
    def get_ingredient(self, ingredient_id: RecordId) -> Optional[IngredientRecord]:
        """Return one ingredient, or None."""

    @abstractmethod
    def list_ingredients(self) -> List[IngredientRecord]:
        """All ingredients, registered or not."""

    def list_unregistered_ingredients(self) -> List[IngredientRecord]:
        """Ingredients still lacking an item code or classification."""
        return [record for record in self.list_ingredients() if not record.is_registered]

    def count_ingredients(self) -> int:
        return len(self.list_ingredients())

    @abstractmethod
    def save_item_codes(self, ingredient_id: RecordId, item_cd: str, item_cls_cd: str) -> None:
        """Persist the codes of a successful registration."""

    @abstractmethod
    def mark_registration_failed(self, ingredient_id: RecordId) -> None:
        """Flag an ingredient whose registration was refused."""

    @abstractmethod
    def get_recipe(self, recipe_id: RecordId) -> Optional[RecipeRecord]:
        """Return one recipe with its components, or None."""

    @abstractmethod
    def save_recipe_item_code(self, recipe_id: RecordId, item_cd: str, item_cls_cd: str) -> None:
        """Persist the codes of a successful recipe registration."""

    @abstractmethod
    def save_composition_status(self, recipe_id: RecordId, status: str) -> None:
        """Record how the composition submission of a recipe ended."""


class SqlRecordStore(FiscalRecordStore):
    """FiscalRecordStore backed by the local SQLAlchemy models."""

    def __init__(self, db: Session):
        self.db = db

    def get_ingredient(self, ingredient_id: RecordId) -> Optional[IngredientRecord]:
        ingredient = self._ingredient(ingredient_id)
        return IngredientRecord.model_validate(ingredient) if ingredient else None

    def list_ingredients(self) -> List[IngredientRecord]:
        rows = self.db.scalars(select(Ingredient).order_by(Ingredient.id))
        return [IngredientRecord.model_validate(row) for row in rows]

    def list_unregistered_ingredients(self) -> List[IngredientRecord]:
        stmt = (
            select(Ingredient)
            .where(or_(
                Ingredient.item_cd.is_(None),
                Ingredient.item_cd == "",
                Ingredient.item_cls_cd.is_(None),
                Ingredient.item_cls_cd == "",
            ))
            .order_by(Ingredient.id)
        )
        return [IngredientRecord.model_validate(row) for row in self.db.scalars(stmt)]

    def count_ingredients(self) -> int:
        return self.db.scalar(select(func.count()).select_from(Ingredient)) or 0

    def save_item_codes(self, ingredient_id: RecordId, item_cd: str, item_cls_cd: str) -> None:
        ingredient = self._ingredient(ingredient_id)
        if ingredient is None:
            logger.warning("Cannot store item code %s: ingredient %s not found", item_cd, ingredient_id)
            return
        ingredient.item_cd = item_cd
        ingredient.item_cls_cd = item_cls_cd
        ingredient.kra_status = "ok"
        self.db.commit()

    def mark_registration_failed(self, ingredient_id: RecordId) -> None:
        ingredient = self._ingredient(ingredient_id)
        if ingredient is not None:
            ingredient.kra_status = "error"
            self.db.commit()

    def get_recipe(self, recipe_id: RecordId) -> Optional[RecipeRecord]:
        recipe = self.db.scalars(
            select(Recipe)
            .options(selectinload(Recipe.components).selectinload(RecipeComponent.ingredient))
            .where(Recipe.id == _int_id(recipe_id))
        ).first()
        if recipe is None:
            return None
        return RecipeRecord(
            id=recipe.id,
            name=recipe.name,
            unit=recipe.unit,
            category=recipe.category,
            item_cd=recipe.item_cd,
            item_cls_cd=recipe.item_cls_cd,
            price=recipe.price,
            components=[
                CompositionComponent(
                    ingredient_id=line.ingredient_id,
                    name=line.ingredient.name,
                    quantity=line.quantity,
                    unit=line.ingredient.unit,
                    item_cd=line.ingredient.item_cd,
                    item_cls_cd=line.ingredient.item_cls_cd,
                )
                for line in recipe.components
            ],
        )

    def save_recipe_item_code(self, recipe_id: RecordId, item_cd: str, item_cls_cd: str) -> None:
        recipe = self.db.get(Recipe, _int_id(recipe_id))
        if recipe is None:
            logger.warning("Cannot store item code %s: recipe %s not found", item_cd, recipe_id)
            return
        recipe.item_cd = item_cd
        recipe.item_cls_cd = item_cls_cd
        recipe.kra_status = "ok"
        self.db.commit()

    def save_composition_status(self, recipe_id: RecordId, status: str) -> None:
        recipe = self.db.get(Recipe, _int_id(recipe_id))
        if recipe is not None:
            recipe.kra_composition_status = status
            recipe.kra_composition_no = len(recipe.components)
            self.db.commit()

    def _ingredient(self, ingredient_id: RecordId) -> Optional[Ingredient]:
        return self.db.get(Ingredient, _int_id(ingredient_id))


def _int_id(value: RecordId) -> int:
    return int(value)
