from fastapi import FastAPI, Request
from starlette.responses import Response

# Order, payment and shift responses carry live money figures; terminals and proxies must not keep them.
API_RESPONSE_HEADERS = {
    'Cache-Control': 'no-store',
    'X-Content-Type-Options': 'nosniff',
    'X-Robots-Tag': 'noindex, nofollow, noarchive',
}


def install_security_headers(app: FastAPI) -> None:
    @app.middleware('http')
    async def add_api_headers(request: Request, call_next):
        response: Response = await call_next(request)
        for name, value in API_RESPONSE_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
