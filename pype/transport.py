"""Transport - Issues prepared requests and reads raw responses.

The Fitting pipeline talks to the network only through the Transport protocol.
HttpxTransport is the default implementation; tests and callers with special
needs can provide their own.

Transport failures are raised as TransportFailure subclasses, each tagged with
the FailureKind the Fitting uses to pick a diagnostic.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Protocol

import httpx

from pype.models import FailureKind, Method, TransportConfig


class TransportFailure(Exception):
    """Base class for failures raised by a transport."""

    kind: FailureKind = FailureKind.UNKNOWN_TRANSPORT_FAILURE


class TransportTimeout(TransportFailure):
    """Raised when the request did not complete within the transport's timeout."""

    kind = FailureKind.TIMEOUT


class SecureChannelFailure(TransportFailure):
    """Raised when the TLS handshake or certificate verification failed."""

    kind = FailureKind.SECURE_CHANNEL_FAILURE


class ProtocolError(TransportFailure):
    """Raised when the remote endpoint answered with an error status."""

    kind = FailureKind.PROTOCOL_ERROR

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class UnknownTransportFailure(TransportFailure):
    """Raised for any other transport-level failure."""


@dataclass
class PreparedRequest:
    """A request ready for transmission.

    body is None when nothing is written, bytes for a buffered body, or an
    async iterable of chunks for a streamed (faucet) upload.
    """

    url: str
    method: Method
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | AsyncIterable[bytes] | None = None


@dataclass
class TransportResponse:
    """A successful response with its body read into memory."""

    status_code: int
    text: str
    headers: dict[str, str] = field(default_factory=dict)


class Transport(Protocol):
    """Capability that sends one prepared request."""

    async def send(self, request: PreparedRequest) -> TransportResponse:
        """Send the request and return the fully read response.

        Raises:
            TransportFailure: On timeout, TLS failure, error status or any
                other transport problem.
        """
        ...


class HttpxTransport:
    """Transport built on httpx.AsyncClient.

    Usage:
        transport = HttpxTransport(TransportConfig(timeout=10))
        response = await transport.send(prepared)

    Without an injected client, each send opens and closes its own
    AsyncClient configured from TransportConfig. An injected client is shared
    and left open; closing it is the caller's job, and its own timeout,
    redirect and TLS settings apply.
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or TransportConfig()
        self._client = client

    @property
    def config(self) -> TransportConfig:
        return self._config

    def _build_client_kwargs(self) -> dict[str, Any]:
        """Build kwargs for httpx.AsyncClient including TLS verification."""
        kwargs: dict[str, Any] = {
            "timeout": self._config.timeout,
            "follow_redirects": self._config.follow_redirects,
        }

        if self._config.ca_bundle:
            ssl_context = ssl.create_default_context(cafile=self._config.ca_bundle)
            kwargs["verify"] = ssl_context
        elif not self._config.verify_ssl:
            kwargs["verify"] = False
        # else: use httpx default (True)

        return kwargs

    async def send(self, request: PreparedRequest) -> TransportResponse:
        """Send the request and read the whole body as text.

        Raises:
            TransportTimeout: If httpx timed out.
            SecureChannelFailure: If the failure was caused by an SSL error.
            ProtocolError: If the response status is 400 or above.
            UnknownTransportFailure: For any other httpx error, including an
                unparseable URL.
        """
        # Content-Type comes from the descriptor, never from the header mapping
        headers = {
            key: value for key, value in request.headers.items()
            if key.lower() != "content-type"
        }
        headers["Content-Type"] = request.content_type

        try:
            if self._client is not None:
                http_response = await self._request(self._client, request, headers)
            else:
                async with httpx.AsyncClient(**self._build_client_kwargs()) as client:
                    http_response = await self._request(client, request, headers)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"Request to {request.url} timed out: {e}") from e
        except httpx.HTTPError as e:
            if _caused_by_ssl_error(e):
                raise SecureChannelFailure(f"SSL/TLS failure for {request.url}: {e}") from e
            raise UnknownTransportFailure(f"Request to {request.url} failed: {e}") from e
        except ssl.SSLError as e:
            raise SecureChannelFailure(f"SSL/TLS failure for {request.url}: {e}") from e
        except (httpx.InvalidURL, httpx.StreamError) as e:
            raise UnknownTransportFailure(f"Request to {request.url} failed: {e}") from e

        if http_response.is_error:
            raise ProtocolError(
                f"{request.method.value} {request.url} returned status {http_response.status_code}",
                status_code=http_response.status_code,
                response_text=http_response.text,
            )

        return TransportResponse(
            status_code=http_response.status_code,
            text=http_response.text,
            headers={key.lower(): value for key, value in http_response.headers.items()},
        )

    async def _request(
        self,
        client: httpx.AsyncClient,
        request: PreparedRequest,
        headers: dict[str, str],
    ) -> httpx.Response:
        return await client.request(
            method=request.method.value,
            url=request.url,
            headers=headers,
            content=request.body,
        )


def _caused_by_ssl_error(exc: BaseException) -> bool:
    """Walk the cause/context chain looking for an ssl.SSLError."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False
