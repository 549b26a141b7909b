from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Literal
from urllib.parse import quote

import httpx
import structlog

from .errors import FetchError, FetchErrorKind

logger = structlog.get_logger(__name__)

IMAGE_PATH_PREFIX = "/SmartScope-1.0/dev2/"


@dataclass(slots=True)
class ImageFetcher:
    """Blocking HTTP retrieval of image files announced by the Origin image server.

    Every call opens its own short-lived client, independent of the control
    websocket, performs a single GET and maps transport failures onto
    ``FetchErrorKind``. Run it from a worker thread, never from the poll loop.
    """

    host: str
    port: int = 80
    timeout: float = 30.0
    scheme: Literal["http", "https"] = "http"
    transport: httpx.BaseTransport | None = None

    def build_url(self, file_location: str) -> str:
        if not file_location or not file_location.strip():
            raise ValueError("file_location must be provided")
        normalized = file_location.strip().lstrip("/")
        if normalized.startswith(IMAGE_PATH_PREFIX.lstrip("/")):
            normalized = normalized[len(IMAGE_PATH_PREFIX.lstrip("/")) :]
        netloc = self.host if self.port == 80 else f"{self.host}:{self.port}"
        return f"{self.scheme}://{netloc}{IMAGE_PATH_PREFIX}{quote(normalized, safe='/')}"

    def _resolve(self, url: str) -> None:
        if self.transport is not None:
            return
        try:
            socket.getaddrinfo(self.host, self.port, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            raise FetchError(FetchErrorKind.UNRESOLVABLE, url, str(exc)) from exc

    def fetch(self, file_location: str) -> bytes:
        url = self.build_url(file_location)
        self._resolve(url)
        logger.info("origin.image.fetch_started", url=url, timeout=self.timeout)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(url)
        except httpx.ConnectTimeout as exc:
            raise FetchError(FetchErrorKind.CONNECT_FAILED, url, f"connect timed out: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise FetchError(FetchErrorKind.TIMEOUT, url, str(exc) or type(exc).__name__) from exc
        except httpx.ConnectError as exc:
            raise FetchError(FetchErrorKind.CONNECT_FAILED, url, str(exc)) from exc
        except (httpx.RemoteProtocolError, httpx.DecodingError, httpx.LocalProtocolError) as exc:
            raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, url, str(exc)) from exc
        except httpx.TransportError as exc:
            raise FetchError(FetchErrorKind.CONNECT_FAILED, url, str(exc)) from exc

        if response.is_error:
            raise FetchError(
                FetchErrorKind.BAD_STATUS,
                url,
                f"HTTP {response.status_code}",
            )
        content = response.content
        if not content:
            raise FetchError(FetchErrorKind.EMPTY_BODY, url)
        logger.info(
            "origin.image.fetch_completed",
            url=url,
            size=len(content),
            status_code=response.status_code,
        )
        return content


__all__ = ["IMAGE_PATH_PREFIX", "ImageFetcher"]
