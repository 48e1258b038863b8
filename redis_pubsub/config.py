"""Redis connection settings, read from the environment (and .env via python-dotenv)."""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

DEFAULT_REDIS_HOST = "localhost"
DEFAULT_REDIS_PORT = 6379
DEFAULT_REDIS_DB = 0


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (ValueError, TypeError):
        return default


class RedisConnectionConfig(BaseModel):
    """Where the publisher and subscriber clients connect. url wins over host/port/db when set."""

    url: Optional[str] = None
    host: str = DEFAULT_REDIS_HOST
    port: int = DEFAULT_REDIS_PORT
    db: int = DEFAULT_REDIS_DB
    password: Optional[str] = None
    decode_responses: bool = True
    socket_timeout: Optional[float] = Field(default=None, gt=0)

    @classmethod
    def from_env(cls) -> "RedisConnectionConfig":
        """Build from REDIS_URL / REDIS_HOST / REDIS_PORT / REDIS_DB / REDIS_PASSWORD."""
        return cls(
            url=(os.environ.get("REDIS_URL") or "").strip() or None,
            host=(os.environ.get("REDIS_HOST") or "").strip() or DEFAULT_REDIS_HOST,
            port=_int_env("REDIS_PORT", DEFAULT_REDIS_PORT),
            db=_int_env("REDIS_DB", DEFAULT_REDIS_DB),
            password=os.environ.get("REDIS_PASSWORD") or None,
        )

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for redis.asyncio.Redis (url excluded)."""
        kwargs: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "db": self.db,
            "decode_responses": self.decode_responses,
        }
        if self.password:
            kwargs["password"] = self.password
        if self.socket_timeout is not None:
            kwargs["socket_timeout"] = self.socket_timeout
        return kwargs
