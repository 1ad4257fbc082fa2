from __future__ import annotations

from functools import lru_cache

from app.config import settings
from app.services.kitchen_notifier import KitchenNotifier, LoggingKitchenNotifier, WebhookKitchenNotifier
from app.services.menu_provider import DbMenuProvider, MenuProvider


@lru_cache(maxsize=1)
def get_menu_provider() -> MenuProvider:
    provider = settings.menu_provider.strip().lower()
    if provider != 'db':
        raise ValueError(f'Unknown MENU_PROVIDER: {settings.menu_provider}')
    return DbMenuProvider()


@lru_cache(maxsize=1)
def get_kitchen_notifier() -> KitchenNotifier:
    notifier = settings.kitchen_notifier.strip().lower()
    if notifier == 'webhook':
        return WebhookKitchenNotifier()
    return LoggingKitchenNotifier()
