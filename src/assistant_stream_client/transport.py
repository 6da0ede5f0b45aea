from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from typing import Any

import httpx

from .errors import AssistantAPIError, AssistantTransportError
from .protocol import extract_error


class ResponseStream(ABC):
    """An opened streaming response whose status has already been checked."""

    @abstractmethod
    def chunks(self) -> AsyncIterator[str | bytes]:
        """Yield raw body fragments as the network delivers them."""
        raise NotImplementedError

    @abstractmethod
    async def aclose(self) -> None:
        """Release the underlying response."""
        raise NotImplementedError

    async def __aenter__(self) -> ResponseStream:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()


class Transport(ABC):
    """Abstract transport interface for JSON requests and streamed responses."""

    @abstractmethod
    async def connect(self) -> None:
        """Open transport resources."""
        raise NotImplementedError

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body."""
        raise NotImplementedError

    @abstractmethod
    async def open_stream(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> ResponseStream:
        """Send one request and return its body as a stream.

        Error statuses are raised here, before any chunk is consumed.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close transport resources."""
        raise NotImplementedError


class HttpxResponseStream(ResponseStream):
    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    async def chunks(self) -> AsyncIterator[str | bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as exc:
            raise AssistantTransportError(
                f"failed reading response stream ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def aclose(self) -> None:
        await self._response.aclose()


class HttpxTransport(Transport):
    """HTTP transport backed by `httpx.AsyncClient`."""

    def __init__(
        self,
        base_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Configure HTTP transport.

        Args:
            base_url: Base URL every request path is joined to.
            headers: Optional default headers, including auth.
            timeout: Default timeout for requests in seconds.
            client: Optional preconfigured client, e.g. one built with
                `httpx.MockTransport` in tests.
        """
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers) if headers is not None else {}
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        """Create the HTTP client if not already created."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
        )

    async def request(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send one JSON request and decode the JSON response."""
        client = self._require_client()
        try:
            response = await client.request(
                method,
                self._url(path),
                json=dict(payload) if payload is not None else None,
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            raise AssistantTransportError(
                f"{method} {path} failed ({exc.__class__.__name__}: {exc})"
            ) from exc

        if response.status_code >= 400:
            raise _api_error(response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise AssistantTransportError(f"received invalid JSON from {method} {path}") from exc

    async def open_stream(
        self,
        method: str,
        path: str,
        payload: Mapping[str, Any] | None = None,
    ) -> ResponseStream:
        """Send one request and hand back its body without buffering it."""
        client = self._require_client()
        request = client.build_request(
            method,
            self._url(path),
            json=dict(payload) if payload is not None else None,
            headers={**self._headers, "Accept": "text/event-stream"},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise AssistantTransportError(
                f"{method} {path} failed ({exc.__class__.__name__}: {exc})"
            ) from exc

        if response.status_code >= 400:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise _api_error(response)
        return HttpxResponseStream(response)

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is None:
            return
        client = self._client
        self._client = None
        if self._owns_client:
            await client.aclose()

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise AssistantTransportError("http transport is not connected")
        return self._client

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"


def _api_error(response: httpx.Response) -> AssistantAPIError:
    try:
        body: Any = response.json()
    except ValueError:
        body = None

    error = extract_error(body)
    code = error.get("code") if error is not None else None
    message = error.get("message") if error is not None else None
    if code == "invalid_api_key":
        message = "Invalid OpenAI api key."
    if not message:
        message = response.text or f"HTTP {response.status_code}"
    return AssistantAPIError(
        str(message),
        status_code=response.status_code,
        code=code if isinstance(code, str) else None,
        data=body,
    )
