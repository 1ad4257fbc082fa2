from fastapi import Request


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def get_idempotency_key(request: Request) -> str | None:
    key = request.headers.get('idempotency-key', '').strip()
    return key[:128] or None
