import os

from flask import request
from flask_limiter import Limiter
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def get_client_ip() -> str:
    """Best-effort client IP; behind ProxyFix the first access_route hop is the client."""
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


# Set RATE_LIMIT_STORAGE_URL to a shared store when running more than one instance.
limiter = Limiter(
    get_client_ip,
    default_limits=["2000 per day", "300 per hour"],
    storage_uri=os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
)
