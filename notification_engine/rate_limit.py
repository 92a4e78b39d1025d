"""Rate limiting for the manually triggered jobs, using slowapi."""

from fastapi import Request
from slowapi import Limiter


def client_ip(request: Request) -> str:
    """Client address as seen by the reverse proxy, if there is one."""
    for header in ("X-Forwarded-For", "X-Real-IP"):
        value = request.headers.get(header)
        if value:
            return value.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=client_ip)
