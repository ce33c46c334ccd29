"""Fitting - Generic API utility for integrating with third parties.

One invocation runs a linear pipeline:

    prepare (validate, build URL/headers/body) -> send (transport) -> finish

finish runs on every path and always returns a FittingResponse with health and
both timestamps set. Only MissingField, raised before any I/O, reaches the
caller as an exception; every transport or decoding failure is reported
through the envelope and the logger.
"""

from __future__ import annotations

import asyncio
import contextlib
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, TypeVar, overload

from pype.codec import JsonCodec
from pype.logging_utils import FittingLogger, NullLogger
from pype.models import (
    BODY_METHODS,
    FailureKind,
    FittingRequest,
    FittingResponse,
    FittingResponseStatus,
    Health,
)
from pype.transport import (
    HttpxTransport,
    PreparedRequest,
    ProtocolError,
    Transport,
    TransportFailure,
    TransportResponse,
)

T = TypeVar("T")

DIAGNOSTIC_TIMEOUT = "Fitting send_request failed due to a timeout"
DIAGNOSTIC_SECURE_CHANNEL = "Fitting send_request failed due to an SSL/TLS error"
DIAGNOSTIC_PROTOCOL_STATUS = "Fitting send_request failed with status code {status_code}"
DIAGNOSTIC_PROTOCOL = "Fitting send_request failed due to a protocol error"
DIAGNOSTIC_UNKNOWN_TRANSPORT = "Fitting send_request failed due to an unknown transport error"
DIAGNOSTIC_GENERIC = "Fitting send_request raised an exception"

FAUCET_MAX_PENDING_CHUNKS = 16


class FittingError(Exception):
    """Base class for errors raised to Fitting callers."""


class MissingField(FittingError, ValueError):
    """Raised when a required descriptor field is empty."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Required field '{field_name}' is missing")
        self.field_name = field_name


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class Success:
    url: str
    result: Any


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    diagnostic: str
    exception: BaseException


def classify_failure(exc: BaseException) -> Failure:
    """Map a failure to its kind and fixed diagnostic message."""
    if not isinstance(exc, TransportFailure):
        return Failure(FailureKind.GENERIC_FAILURE, DIAGNOSTIC_GENERIC, exc)

    if exc.kind == FailureKind.TIMEOUT:
        diagnostic = DIAGNOSTIC_TIMEOUT
    elif exc.kind == FailureKind.SECURE_CHANNEL_FAILURE:
        diagnostic = DIAGNOSTIC_SECURE_CHANNEL
    elif exc.kind == FailureKind.PROTOCOL_ERROR:
        status_code = exc.status_code if isinstance(exc, ProtocolError) else None
        if status_code is not None:
            diagnostic = DIAGNOSTIC_PROTOCOL_STATUS.format(status_code=status_code)
        else:
            diagnostic = DIAGNOSTIC_PROTOCOL
    else:
        return Failure(
            FailureKind.UNKNOWN_TRANSPORT_FAILURE, DIAGNOSTIC_UNKNOWN_TRANSPORT, exc
        )
    return Failure(exc.kind, diagnostic, exc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Fitting
# =============================================================================


class Fitting:
    """Sends described requests and normalizes every outcome into an envelope.

    Usage:
        fitting = Fitting(logger=create_logger("pype"))
        response = await fitting.send_request(
            FittingRequest(base_path="https://xkcd.com", suffix="/info.0.json", method="GET")
        )
        if response.status.health == Health.GOOD:
            print(response.result)

    A Fitting holds no per-request state, so one instance can serve
    concurrent invocations.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        logger: FittingLogger | None = None,
        codec: JsonCodec | None = None,
    ) -> None:
        """Initialize the fitting.

        Args:
            transport: Capability used to send requests. Defaults to an
                HttpxTransport with default settings.
            logger: Receives info/error diagnostics. Defaults to NullLogger.
            codec: JSON encoder/decoder. Defaults to JsonCodec.
        """
        self._transport: Transport = transport or HttpxTransport()
        self._logger: FittingLogger = logger or NullLogger()
        self._codec = codec or JsonCodec()

    # -------------------------------------------------------------------------
    # Request Builder
    # -------------------------------------------------------------------------

    @staticmethod
    def validate(descriptor: FittingRequest) -> None:
        """Raise MissingField if base_path or method is empty."""
        if not descriptor.base_path:
            raise MissingField("base_path")
        if not descriptor.method:
            raise MissingField("method")

    def prepare(self, descriptor: FittingRequest) -> PreparedRequest:
        """Validate the descriptor and build the request to transmit.

        Raises:
            MissingField: If base_path or method is empty.
            CodecError: If POST/PUT parameters cannot be serialized.
        """
        self.validate(descriptor)
        return self._build(descriptor)

    def _build(self, descriptor: FittingRequest, write_body: bool = True) -> PreparedRequest:
        if descriptor.method is None:
            raise MissingField("method")

        prepared = PreparedRequest(
            url=descriptor.url,
            method=descriptor.method,
            content_type=descriptor.effective_content_type,
            headers=dict(descriptor.headers),
        )

        if write_body and descriptor.method in BODY_METHODS:
            prepared.body = self._codec.encode(descriptor.parameters).encode("utf-8")

        return prepared

    # -------------------------------------------------------------------------
    # Transport Invoker
    # -------------------------------------------------------------------------

    async def send(self, prepared: PreparedRequest) -> TransportResponse:
        """Transmit a prepared request and return the fully read response."""
        return await self._transport.send(prepared)

    def open_faucet(self, descriptor: FittingRequest) -> "Faucet":
        """Validate the descriptor and return a writable body stream for it.

        Data written to the faucet is streamed to the target as the request
        body. The faucet bypasses the envelope: close() returns the raw
        TransportResponse and transport failures propagate.

        Raises:
            MissingField: If base_path or method is empty.
        """
        self.validate(descriptor)
        return Faucet(self._transport, self._build(descriptor, write_body=False))

    # -------------------------------------------------------------------------
    # Response Normalizer
    # -------------------------------------------------------------------------

    def finish(
        self,
        envelope: FittingResponse[Any],
        outcome: Success | Failure,
    ) -> FittingResponse[Any]:
        """Populate the envelope from the outcome and stamp the response time."""
        if isinstance(outcome, Success):
            envelope.status.health = Health.GOOD
            envelope.result = outcome.result
            self._logger.info(f"Fitting send_request succeeded for {outcome.url}")
        else:
            envelope.status.health = Health.BAD
            envelope.result = None
            envelope.failure_kind = outcome.kind
            envelope.diagnostic = outcome.diagnostic
            envelope.exception = outcome.exception
            self._logger.error(_format_failure(outcome))

        envelope.status.response_utc = _utcnow()
        return envelope

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    @overload
    async def send_request(
        self, descriptor: FittingRequest, result_type: None = None
    ) -> FittingResponse[Any]: ...

    @overload
    async def send_request(
        self, descriptor: FittingRequest, result_type: type[T]
    ) -> FittingResponse[T]: ...

    async def send_request(
        self,
        descriptor: FittingRequest,
        result_type: type[T] | None = None,
    ) -> FittingResponse[Any]:
        """Run the full pipeline for one descriptor.

        Args:
            descriptor: The request to send. Not modified.
            result_type: Shape to decode the response body into. None decodes
                into plain dicts/lists/scalars.

        Returns:
            The envelope. Check status.health: Bad health is the normal way
            failures are reported.

        Raises:
            MissingField: If base_path or method is empty. Raised before any
                network activity.
        """
        self.validate(descriptor)

        envelope_type = FittingResponse[Any] if result_type is None else FittingResponse[result_type]
        envelope = envelope_type(status=FittingResponseStatus(request_utc=_utcnow()))

        outcome: Success | Failure
        try:
            prepared = self._build(descriptor)
            response = await self.send(prepared)
            outcome = Success(prepared.url, self._codec.decode(response.text, result_type))
        except Exception as e:
            outcome = classify_failure(e)

        return self.finish(envelope, outcome)


def _format_failure(failure: Failure) -> str:
    exc = failure.exception
    stack = "".join(traceback.format_tb(exc.__traceback__))
    return f"{failure.diagnostic}\n{exc}\n{stack}"


# =============================================================================
# Faucet
# =============================================================================


class Faucet:
    """Writable request body streamed straight to the transport.

    Usage:
        async with fitting.open_faucet(descriptor) as faucet:
            async for chunk in source:
                await faucet.write(chunk)
        print(faucet.response.status_code)

    The upload starts on the first write (or on close for an empty body).
    At most FAUCET_MAX_PENDING_CHUNKS chunks wait for the transport; write()
    suspends until the upload catches up. Leaving the block normally closes
    the faucet; leaving it with an exception cancels the upload.
    """

    def __init__(self, transport: Transport, request: PreparedRequest) -> None:
        self._transport = transport
        self._request = request
        self._chunks: asyncio.Queue[bytes | None] = asyncio.Queue(
            maxsize=FAUCET_MAX_PENDING_CHUNKS
        )
        self._upload: asyncio.Task[TransportResponse] | None = None
        self._closed = False
        self.response: TransportResponse | None = None

    @property
    def url(self) -> str:
        return self._request.url

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "Faucet":
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, *exc_info: Any) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()

    def _start(self) -> asyncio.Task[TransportResponse]:
        if self._upload is None:
            self._request.body = self._drain()
            self._upload = asyncio.ensure_future(self._transport.send(self._request))
        return self._upload

    async def _drain(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk

    async def _put(self, chunk: bytes | None) -> bool:
        """Queue a chunk, waiting for room. False if the upload ended first."""
        upload = self._start()
        put = asyncio.ensure_future(self._chunks.put(chunk))
        try:
            await asyncio.wait({put, upload}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not put.done():
                put.cancel()
        return put.done() and not put.cancelled()

    async def write(self, data: bytes | str) -> None:
        """Queue data for upload. str is encoded as UTF-8.

        Suspends while FAUCET_MAX_PENDING_CHUNKS chunks are already waiting.

        Raises:
            FittingError: If the faucet is closed or the upload already ended.
            TransportFailure: If the upload failed before the body was complete.
        """
        if self._closed:
            raise FittingError("Cannot write to a closed faucet")

        upload = self._start()
        if not upload.done():
            if isinstance(data, str):
                data = data.encode("utf-8")
            if not data or await self._put(data):
                return

        upload.result()
        raise FittingError("Upload finished before the request body was complete")

    async def close(self) -> TransportResponse:
        """Finish the body, wait for the upload and return the raw response.

        Raises:
            FittingError: If the faucet was aborted.
            TransportFailure: If the transport failed.
        """
        if not self._closed:
            self._closed = True
            await self._put(None)

        if self._upload is None or self._upload.cancelled():
            raise FittingError("Faucet was aborted")
        self.response = await self._upload
        return self.response

    async def abort(self) -> None:
        """Cancel the upload without waiting for a response."""
        self._closed = True
        if self._upload is None:
            return
        if self._upload.done():
            if not self._upload.cancelled():
                # Mark a failed upload's exception as retrieved
                self._upload.exception()
            return
        self._upload.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._upload
