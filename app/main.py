from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from app.logging_config import get_logger, setup_logging
from app.routers import orders, shifts, tables
from app.security.headers import install_security_headers
from app.services.errors import (
    AccessDenied,
    ConcurrencyConflict,
    KitchenNotificationError,
    NotFoundError,
    PosError,
    PreconditionViolation,
)

setup_logging()
logger = get_logger(__name__)

app = FastAPI(title='Restaurant POS')

install_security_headers(app)

app.include_router(shifts.router)
app.include_router(orders.router)
app.include_router(tables.router)

ERROR_STATUS = (
    (NotFoundError, 404),
    (AccessDenied, 403),
    (ConcurrencyConflict, 409),
    (KitchenNotificationError, 502),
    (PreconditionViolation, 422),
)


def status_for(exc: PosError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


@app.exception_handler(PosError)
async def pos_error_handler(request: Request, exc: PosError):
    status_code = status_for(exc)
    logger.info(
        'Request rejected',
        extra={'path': request.url.path, 'code': exc.code, 'status': status_code},
    )
    return JSONResponse(status_code=status_code, content={'error': exc.to_dict()})


@app.get('/health', response_class=PlainTextResponse)
def health() -> str:
    return 'ok'


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
