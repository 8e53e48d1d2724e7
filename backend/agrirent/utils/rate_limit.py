import os

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from agrirent.config import settings


def get_real_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For only behind TRUSTED_PROXY_COUNT proxies."""
    trusted_proxy_count = int(os.getenv("TRUSTED_PROXY_COUNT", "0"))
    if trusted_proxy_count > 0:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            ips = [ip.strip() for ip in forwarded.split(",")]
            index = max(0, len(ips) - trusted_proxy_count)
            return ips[index]
    return get_remote_address(request)


_is_dev = settings.APP_ENV == "development"

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=settings.RATELIMIT_STORAGE_URI or None,
    default_limits=["200/minute" if _is_dev else "60/minute"],
)

# Code entry is the brute-force surface; keep it tight
OTP_RATE_LIMIT = "20/minute" if _is_dev else "5/minute"
MUTATION_RATE_LIMIT = "30/minute" if _is_dev else "10/minute"
LIST_RATE_LIMIT = "100/minute" if _is_dev else "30/minute"
