"""Ingredient and recipe records, reduced to the columns the fiscal layer reads or writes back."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from etims.db.base import Base, TimestampMixin


class Ingredient(Base, TimestampMixin):
    """A stock ingredient; registrable with the authority as an item."""

    __tablename__ = "ingredients"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    cost_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Authority-issued codes
    item_cd: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    item_cls_cd: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    kra_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # ok, error


class Recipe(Base, TimestampMixin):
    """A sellable recipe, registered as an item with a composition of ingredients."""

    __tablename__ = "recipes"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="portion", nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    item_cd: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    item_cls_cd: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    kra_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    kra_composition_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # ok, partial_success
    kra_composition_no: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    components: Mapped[list["RecipeComponent"]] = relationship(
        "RecipeComponent", back_populates="recipe", cascade="all, delete-orphan",
        order_by="RecipeComponent.id",
    )


class RecipeComponent(Base):
    """An ingredient line in a recipe."""

    __tablename__ = "recipe_components"

    id: Mapped[int] = mapped_column(primary_key=True)
    recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_id: Mapped[int] = mapped_column(
        ForeignKey("ingredients.id"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)

    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="components")
    ingredient: Mapped["Ingredient"] = relationship("Ingredient")
