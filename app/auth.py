from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from app.dependencies import get_client_ip

CASHIER_HEADER = 'x-cashier-id'
BRANCH_HEADER = 'x-branch-id'
RESTAURANT_HEADER = 'x-restaurant-id'


@dataclass(frozen=True)
class Actor:
    """Acting cashier and scope, asserted by the authentication gate in front of the API."""

    cashier_id: int
    branch_id: int
    restaurant_id: int
    ip: str | None = None


def _header_int(request: Request, name: str) -> int:
    raw = request.headers.get(name, '').strip()
    if not raw.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f'Missing or invalid {name} header')
    return int(raw)


def get_current_actor(request: Request) -> Actor:
    return Actor(
        cashier_id=_header_int(request, CASHIER_HEADER),
        branch_id=_header_int(request, BRANCH_HEADER),
        restaurant_id=_header_int(request, RESTAURANT_HEADER),
        ip=get_client_ip(request),
    )
