from __future__ import annotations

import asyncio
import contextvars
from collections.abc import Mapping
from threading import Lock
from typing import Any, Callable, TypeVar

from fastapi import HTTPException, Request

from ..origin.errors import BusyError, DispatchError, OriginConnectionError
from ..origin.session import OriginSession

T = TypeVar("T")

ALPACA_NOT_IMPLEMENTED = 0x400
ALPACA_INVALID_OPERATION = 0x40B

_UINT32_MAX = 0xFFFFFFFF
_FORM_MEDIA_TYPES = frozenset({"application/x-www-form-urlencoded", "multipart/form-data"})
_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "off"})

_current_request: contextvars.ContextVar[Request | None] = contextvars.ContextVar(
    "alpaca_current_request", default=None
)


class _TransactionCounter:
    """Server transaction ids: 1..2**32-1, then back to 1."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._value = 0

    def next(self) -> int:
        with self._lock:
            self._value = self._value % _UINT32_MAX + 1
            return self._value


_server_transactions = _TransactionCounter()


async def bind_request_context(request: Request):
    token = _current_request.set(request)
    try:
        yield
    finally:
        _current_request.reset(token)


def alpaca_response(
    value: Any = None,
    *,
    error_number: int = 0,
    error_message: str = "",
) -> dict[str, Any]:
    """Wrap a value in the standard Alpaca response envelope.

    ``ClientTransactionID`` and ``ClientID`` are echoed from the current
    request: the query string for GETs, the already parsed body for PUTs.
    """
    request = _current_request.get()
    client_transaction_id = _client_uint32(request, "ClientTransactionID")
    client_id = _client_uint32(request, "ClientID")

    payload: dict[str, Any] = {
        "ClientTransactionID": client_transaction_id or 0,
        "ServerTransactionID": _server_transactions.next(),
        "ErrorNumber": error_number,
        "ErrorMessage": error_message,
    }
    if client_id is not None:
        payload["ClientID"] = client_id
    if value is not None:
        payload["Value"] = value
    return payload


def _client_uint32(request: Request | None, name: str) -> int | None:
    if request is None:
        return None
    # Alpaca query parameter names are case-insensitive
    wanted = name.lower()
    raw = next((v for k, v in request.query_params.items() if k.lower() == wanted), None)
    if raw is None:
        raw = getattr(request.state, "alpaca_body", {}).get(name)
    try:
        number = int(raw)
    except (TypeError, ValueError):
        return None
    return number & _UINT32_MAX if number >= 0 else None


async def _body_parameters(request: Request) -> Mapping[str, Any]:
    cached = getattr(request.state, "alpaca_body", None)
    if cached is not None:
        return cached

    media_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    params: Mapping[str, Any] = {}
    if media_type == "application/json":
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Malformed JSON body") from exc
        if isinstance(body, dict):
            params = body
    elif media_type in _FORM_MEDIA_TYPES:
        params = dict(await request.form())
    request.state.alpaca_body = params
    return params


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        word = raw.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        raise ValueError(raw)
    return bool(raw)


def _to_float(raw: Any) -> float:
    if isinstance(raw, str):
        # some clients format with a locale decimal comma
        raw = raw.strip().replace(",", ".")
    return float(raw)


def _to_int(raw: Any) -> int:
    if isinstance(raw, float) and not raw.is_integer():
        raise ValueError(raw)
    return int(raw)


_CONVERTERS: dict[type, Callable[[Any], Any]] = {bool: _to_bool, float: _to_float, int: _to_int}


def _convert(name: str, raw: Any, expected_type: type[T]) -> T:
    if type(raw) is expected_type:
        return raw
    converter = _CONVERTERS.get(expected_type, expected_type)
    try:
        return converter(raw)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid value for {name}") from exc


async def resolve_optional_parameter(
    request: Request,
    name: str,
    expected_type: type[T],
    *preferred_values: Any,
) -> T | None:
    """First non-None preferred value, else the request body's ``name``, else None."""
    for candidate in preferred_values:
        if candidate is not None:
            return candidate
    params = await _body_parameters(request)
    if name not in params:
        return None
    return _convert(name, params[name], expected_type)


async def resolve_parameter(
    request: Request,
    name: str,
    expected_type: type[T],
    *preferred_values: Any,
) -> T:
    value = await resolve_optional_parameter(request, name, expected_type, *preferred_values)
    if value is None:
        raise HTTPException(status_code=400, detail=f"{name} parameter required")
    return value


def get_session(request: Request) -> OriginSession:
    session = getattr(request.app.state, "origin_session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Origin session not configured")
    return session


async def call_session(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking session call off the event loop, mapping errors to HTTP codes."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except BusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except DispatchError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except OriginConnectionError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
