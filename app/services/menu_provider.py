from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import MenuItem, ModifierOption
from app.services.errors import NotFoundError


@dataclass(frozen=True)
class ModifierInfo:
    id: int
    group_name: str
    name: str
    price_adjustment: Decimal


@dataclass(frozen=True)
class MenuItemInfo:
    id: int
    name: str
    base_price: Decimal
    available_modifiers: tuple[ModifierInfo, ...]

    def modifier(self, modifier_id: int) -> ModifierInfo:
        for option in self.available_modifiers:
            if option.id == modifier_id:
                return option
        raise NotFoundError('Modifier not available for this item', details={'modifier_id': modifier_id})


class MenuProvider(Protocol):
    def get_menu_item(self, db: Session, *, restaurant_id: int, menu_item_id: int) -> MenuItemInfo: ...


class DbMenuProvider:
    """Reads the restaurant's own menu tables; never writes."""

    def get_menu_item(self, db: Session, *, restaurant_id: int, menu_item_id: int) -> MenuItemInfo:
        item = db.execute(
            select(MenuItem).where(
                MenuItem.id == menu_item_id,
                MenuItem.restaurant_id == restaurant_id,
                MenuItem.active.is_(True),
            )
        ).scalar_one_or_none()
        if not item:
            raise NotFoundError('Menu item not found', details={'menu_item_id': menu_item_id})

        options = db.execute(
            select(ModifierOption)
            .where(ModifierOption.menu_item_id == item.id, ModifierOption.active.is_(True))
            .order_by(ModifierOption.group_name.asc(), ModifierOption.id.asc())
        ).scalars().all()
        return MenuItemInfo(
            id=item.id,
            name=item.name,
            base_price=Decimal(item.base_price),
            available_modifiers=tuple(
                ModifierInfo(
                    id=option.id,
                    group_name=option.group_name,
                    name=option.name,
                    price_adjustment=Decimal(option.price_adjustment),
                )
                for option in options
            ),
        )
