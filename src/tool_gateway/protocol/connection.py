"""Request/response correlation over a provider's stdio pipes.

Outbound frames go through a bounded queue drained by a single writer task,
so backpressure is structural. A single reader task parses inbound frames and
resolves the matching pending future by correlation id.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

from tool_gateway.exceptions import (
    GatewayError,
    ProtocolParseError,
    ProviderCrashedError,
    ProviderError,
)
from tool_gateway.protocol.frames import (
    decode_frame,
    encode_notification,
    encode_request,
    frame_id,
    is_response,
    validate_response,
)

logger = logging.getLogger(__name__)


class ProviderConnection:
    """One JSON-RPC conversation with one provider process."""

    def __init__(
        self,
        provider_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        outbound_queue_size: int = 64,
    ) -> None:
        self.provider_id = provider_id
        self._reader = reader
        self._writer = writer
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._outbound: asyncio.Queue[bytes] = asyncio.Queue(maxsize=outbound_queue_size)
        self._closed_error: GatewayError | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self.unmatched_frames = 0

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Start the reader and writer tasks."""
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"provider-reader-{self.provider_id}"
        )
        self._writer_task = asyncio.create_task(
            self._write_loop(), name=f"provider-writer-{self.provider_id}"
        )

    async def close(self, error: GatewayError | None = None) -> None:
        """Stop both tasks and fail anything still pending."""
        self.fail_all(
            error
            or ProviderCrashedError(
                f"Connection to provider {self.provider_id} closed",
                provider_id=self.provider_id,
            )
        )
        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    @property
    def is_closed(self) -> bool:
        return self._closed_error is not None

    @property
    def pending_ids(self) -> frozenset[int]:
        return frozenset(self._pending)

    # -- Calls ---------------------------------------------------------------

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[int, asyncio.Future[Any]]:
        """Queue a request and return its correlation id and result future.

        The future resolves with the provider's ``result`` or fails with a
        ``GatewayError``. Waiting on it (and giving up) is the caller's job.
        """
        if self._closed_error is not None:
            raise self._closed_error

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._outbound.put(encode_request(request_id, method, params))
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        return request_id, future

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Queue a notification; no reply is expected."""
        if self._closed_error is not None:
            raise self._closed_error
        await self._outbound.put(encode_notification(method, params))

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            asyncio.TimeoutError: If no reply arrives within ``timeout``;
                the correlation id is released so a late reply is dropped.
        """
        request_id, future = await self.send(method, params)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self.discard(request_id)

    def discard(self, request_id: int) -> None:
        """Stop tracking a correlation id; a late reply will be dropped."""
        future = self._pending.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()

    def fail_all(self, error: GatewayError) -> int:
        """Fail every pending request with ``error``. Returns the count."""
        if self._closed_error is None:
            self._closed_error = error
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
        if pending:
            logger.warning(
                f"Failed {len(pending)} pending requests on provider {self.provider_id}: "
                f"{error.kind}"
            )
        return len(pending)

    # -- IO loops ------------------------------------------------------------

    async def _write_loop(self) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                self._writer.write(frame)
                await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Provider {self.provider_id} pipe closed while writing: {e}")
            self.fail_all(
                ProviderCrashedError(
                    f"Provider {self.provider_id} stopped accepting requests",
                    provider_id=self.provider_id,
                )
            )

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError:
                    # Frame exceeded the stream limit; the rest of the line is lost
                    logger.error(f"Provider {self.provider_id} sent an oversized frame")
                    continue
                if not line:
                    break
                if line.strip():
                    self._handle_line(line)
        except ConnectionResetError as e:
            logger.warning(f"Provider {self.provider_id} stdout reset: {e}")

        self.fail_all(
            ProviderCrashedError(
                f"Provider {self.provider_id} exited while requests were pending",
                provider_id=self.provider_id,
            )
        )

    def _handle_line(self, line: bytes) -> None:
        try:
            frame = decode_frame(line)
        except ProtocolParseError as e:
            logger.warning(f"Provider {self.provider_id} anomaly: {e.message}")
            return

        request_id = frame_id(frame)
        if not is_response(frame) or request_id is None:
            self.unmatched_frames += 1
            logger.debug(
                f"Dropping unsolicited frame from provider {self.provider_id}: "
                f"{frame.get('method', '<no method>')}"
            )
            return

        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            self.unmatched_frames += 1
            logger.info(
                f"Dropping unmatched response id={request_id} from provider {self.provider_id}"
            )
            return

        try:
            validate_response(frame)
        except ProtocolParseError as e:
            future.set_exception(
                ProtocolParseError(
                    f"Malformed response from provider {self.provider_id}: {e.message}",
                    provider_id=self.provider_id,
                )
            )
            return

        if "error" in frame:
            error = frame["error"]
            future.set_exception(
                ProviderError(
                    str(error.get("message")),
                    code=error.get("code"),
                    provider_id=self.provider_id,
                )
            )
        else:
            future.set_result(frame["result"])
