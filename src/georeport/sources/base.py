import functools
import json
import logging
import xml.etree.ElementTree as ET
from typing import Any, Awaitable, Callable, Dict, TypeVar

import httpx

from ..models import AdapterResult
from ..services.http import FetchTimeoutError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[AdapterResult]])


class UpstreamError(Exception):
    """An upstream answered, but not with something usable."""


def describe_error(e: BaseException) -> str:
    if isinstance(e, FetchTimeoutError):
        return "Timeout querying external API."
    if isinstance(e, httpx.HTTPStatusError):
        return f"HTTP {e.response.status_code}"
    if isinstance(e, httpx.RequestError):
        return f"Connection error: {e.__class__.__name__}"
    return str(e) or e.__class__.__name__


def absorb_errors(source: str) -> Callable[[F], F]:
    """Turn any transport or parse error raised by an adapter into a failure result."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> AdapterResult:
            try:
                return await func(*args, **kwargs)
            except (
                FetchTimeoutError,
                httpx.HTTPError,
                UpstreamError,
                json.JSONDecodeError,
                ET.ParseError,
                AttributeError,
                IndexError,
                KeyError,
                TypeError,
                ValueError,
            ) as e:
                logger.warning("Adapter %s failed: %s", func.__name__, e)
                return AdapterResult.failure(source, describe_error(e))

        return wrapper  # type: ignore[return-value]

    return decorator


def json_object(res: httpx.Response) -> Dict[str, Any]:
    """Decoded JSON body, which must be an object."""
    body = res.json()
    if not isinstance(body, dict):
        raise UpstreamError(f"Unexpected response body ({type(body).__name__}) from {res.request.url.host}")
    return body


def to_number(value: Any) -> float | None:
    """Finite float from a number or numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number
