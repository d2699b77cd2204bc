"""Rate limiting utilities for API calls."""

from __future__ import annotations

import os
import threading
import time
from functools import wraps
from typing import Any, Callable, TypeVar

_F = TypeVar("_F", bound=Callable[..., Any])

# Rate limit configuration
_K8S_RATE_LIMIT_PER_SECOND = float(os.getenv("K8S_RATE_LIMIT_PER_SECOND", "10.0"))
_CLOUDFLARE_RATE_LIMIT_PER_SECOND = float(os.getenv("CLOUDFLARE_RATE_LIMIT_PER_SECOND", "4.0"))


class MinIntervalLimiter:
    """Spaces calls at least ``1 / rate`` seconds apart across worker threads."""

    def __init__(self, rate_per_second: float) -> None:
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._last_call_time = 0.0
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            now = time.time()
            time_since_last_call = now - self._last_call_time
            if time_since_last_call < self.min_interval:
                time.sleep(self.min_interval - time_since_last_call)
            self._last_call_time = time.time()

    def __call__(self, func: _F) -> _F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            self.wait()
            return func(*args, **kwargs)

        return wrapper  # type: ignore


k8s_limiter = MinIntervalLimiter(_K8S_RATE_LIMIT_PER_SECOND)
cloudflare_limiter = MinIntervalLimiter(_CLOUDFLARE_RATE_LIMIT_PER_SECOND)


def rate_limit_k8s(func: _F) -> _F:
    """Decorator to rate limit Kubernetes API calls."""
    return k8s_limiter(func)


def rate_limit_cloudflare(func: _F) -> _F:
    """Decorator to rate limit Cloudflare API calls."""
    return cloudflare_limiter(func)
