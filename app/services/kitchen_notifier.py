from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from app.config import settings
from app.logging_config import get_logger
from app.services.errors import KitchenNotificationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class KitchenTicketLine:
    line_id: int
    name: str
    quantity: int
    modifiers: list
    notes: str | None


@dataclass(frozen=True)
class KitchenTicket:
    order_id: int
    order_number: int
    table_id: int | None
    lines: list[KitchenTicketLine]


class KitchenNotifier(Protocol):
    def send_to_kitchen(self, ticket: KitchenTicket) -> None: ...


class LoggingKitchenNotifier:
    def send_to_kitchen(self, ticket: KitchenTicket) -> None:
        logger.info(
            'Kitchen ticket',
            extra={
                'order_id': ticket.order_id,
                'order_number': ticket.order_number,
                'line_ids': [line.line_id for line in ticket.lines],
            },
        )


class WebhookKitchenNotifier:
    def __init__(self) -> None:
        if not settings.kitchen_webhook_url:
            raise ValueError('KITCHEN_WEBHOOK_URL is required when KITCHEN_NOTIFIER=webhook')
        self.url = settings.kitchen_webhook_url
        self.headers = {'Content-Type': 'application/json'}
        if settings.kitchen_webhook_token:
            self.headers['Authorization'] = f'Bearer {settings.kitchen_webhook_token}'

    def send_to_kitchen(self, ticket: KitchenTicket) -> None:
        data = json.dumps(asdict(ticket)).encode('utf-8')
        req = Request(url=self.url, data=data, headers=self.headers, method='POST')
        try:
            with urlopen(req, timeout=settings.kitchen_timeout_seconds) as response:
                response.read()
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise KitchenNotificationError(
                f'Kitchen display rejected ticket ({exc.code})',
                details={'order_id': ticket.order_id, 'body': body[:500]},
            ) from exc
        except URLError as exc:
            raise KitchenNotificationError(
                f'Kitchen display unreachable: {exc.reason}',
                details={'order_id': ticket.order_id},
            ) from exc
