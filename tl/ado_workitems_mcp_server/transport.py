"""Streamable HTTP transport for request/response HTTP handlers.

This module implements the MCP Streamable HTTP transport for hosts that hand the
server one request at a time and expect one response back, with no socket kept
between calls. A single transport instance serves one logical MCP session across
many short-lived HTTP requests:

- POST bodies carrying JSON-RPC requests are answered either with a JSON body
  (JSON response mode) or with an SSE stream that stays open until every request
  in the body has been answered.
- GET opens one standalone SSE stream for server-initiated messages.
- DELETE ends the session.

Replies produced by the MCP server core arrive through ``send`` and are routed by
request id to the stream or waiter registered for them. Routing state is always
registered before the messages are handed to ``onmessage``; dispatch never awaits,
so a reply cannot race ahead of its channel.
"""

import anyio
import json
import logfire
import math
import uuid
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from contextlib import asynccontextmanager
from loguru import logger
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    DEFAULT_NEGOTIATED_VERSION,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)


MCP_SESSION_ID_HEADER = 'mcp-session-id'
MCP_PROTOCOL_VERSION_HEADER = 'mcp-protocol-version'
CONTENT_TYPE_JSON = 'application/json'
CONTENT_TYPE_SSE = 'text/event-stream'

# JSON-RPC error codes used in HTTP error bodies
SERVER_ERROR = -32000
SESSION_NOT_FOUND = -32001

SSE_HEADERS = {
    'Content-Type': CONTENT_TYPE_SSE,
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
}


class TransportError(Exception):
    """Raised when the transport cannot carry out a send."""


class RoutingError(TransportError):
    """Raised when a reply has no open channel to travel on."""


class TransportClosedError(TransportError):
    """Raised when work is still outstanding as the transport closes."""


class AuthInfo:
    """Credential forwarded from the HTTP layer to the tools handling a request."""

    def __init__(
        self,
        token: str,
        client_id: str = 'http',
        scopes: Optional[List[str]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.token = token
        self.client_id = client_id
        self.scopes = scopes or []
        self.extra = extra or {}


class RequestInfo:
    """Snapshot of the HTTP request that carried a message."""

    def __init__(self, headers: Dict[str, str]) -> None:
        self.headers = headers


class MessageExtraInfo:
    """Per-message context passed to ``onmessage`` alongside each inbound message."""

    def __init__(
        self, auth_info: Optional[AuthInfo] = None, request_info: Optional[RequestInfo] = None
    ) -> None:
        self.auth_info = auth_info
        self.request_info = request_info


def encode_sse_event(message: JSONRPCMessage) -> bytes:
    """Serialize a message as one SSE ``message`` event."""
    payload = message.model_dump_json(by_alias=True, exclude_none=True)
    return f'event: message\ndata: {payload}\n\n'.encode('utf-8')


def _is_reply(message: JSONRPCMessage) -> bool:
    return isinstance(message.root, (JSONRPCResponse, JSONRPCError))


def _is_request(message: JSONRPCMessage) -> bool:
    return isinstance(message.root, JSONRPCRequest)


def _is_initialize_request(message: JSONRPCMessage) -> bool:
    return _is_request(message) and message.root.method == 'initialize'


class _SseStream:
    """An open SSE channel and the request ids still waiting for a reply on it."""

    def __init__(self, stream_id: str) -> None:
        self.id = stream_id
        self.pending_ids: Set[str] = set()
        # Unbounded so writes never block the caller of send()
        self.sink: MemoryObjectSendStream[bytes]
        self.source: MemoryObjectReceiveStream[bytes]
        self.sink, self.source = anyio.create_memory_object_stream(math.inf)

    def write(self, message: JSONRPCMessage) -> None:
        self.sink.send_nowait(encode_sse_event(message))

    def close(self) -> None:
        self.sink.close()


class _PendingJsonResponse:
    """Waiter for the single reply to one request in JSON response mode."""

    def __init__(self) -> None:
        self._event = anyio.Event()
        self._message: Optional[JSONRPCMessage] = None
        self._error: Optional[Exception] = None

    def resolve(self, message: JSONRPCMessage) -> None:
        if not self._event.is_set():
            self._message = message
            self._event.set()

    def reject(self, error: Exception) -> None:
        if not self._event.is_set():
            self._error = error
            self._event.set()

    async def wait(self) -> JSONRPCMessage:
        await self._event.wait()
        if self._error is not None:
            raise self._error
        return self._message


class EventStreamResponse(StreamingResponse):
    """SSE response that releases its channel however the response ends."""

    def __init__(
        self,
        content: AsyncIterator[bytes],
        on_close: Callable[[], None],
        headers: Dict[str, str],
    ) -> None:
        super().__init__(content, status_code=200, headers=headers)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self._on_close()


class StreamableHTTPTransport:
    """Streamable HTTP server transport driven by one ``Request -> Response`` call per HTTP request.

    The MCP server core talks to the transport through ``onmessage`` (inbound) and
    ``send`` (outbound), with ``onclose`` and ``onerror`` as lifecycle hooks. The
    ``connect`` context manager wires those hooks to the memory streams expected by
    the ``mcp`` server runtime.
    """

    def __init__(
        self,
        session_id_generator: Optional[Callable[[], str]] = None,
        enable_json_response: bool = False,
        allowed_hosts: Optional[Sequence[str]] = None,
        allowed_origins: Optional[Sequence[str]] = None,
        enable_dns_rebinding_protection: bool = False,
    ) -> None:
        """Initialize the transport.

        Args:
            session_id_generator: Factory for session ids. When None the transport is
                stateless and never requires or checks the mcp-session-id header.
            enable_json_response: Answer request-bearing POSTs with a JSON body instead
                of an SSE stream
            allowed_hosts: Host header values accepted when DNS rebinding protection is on.
                An entry ending in ':*' accepts any port for that host.
            allowed_origins: Origin header values accepted when DNS rebinding protection is on
            enable_dns_rebinding_protection: Validate Host and Origin headers
        """
        self._session_id_generator = session_id_generator
        self._enable_json_response = enable_json_response
        self._allowed_hosts = list(allowed_hosts or [])
        self._allowed_origins = list(allowed_origins or [])
        self._enable_dns_rebinding_protection = enable_dns_rebinding_protection

        self._session_id: Optional[str] = None
        self._initialized = False
        self._closed = False

        self._standalone_stream: Optional[_SseStream] = None
        self._streams: Dict[str, _SseStream] = {}
        self._request_to_stream: Dict[str, str] = {}
        self._pending_json_responses: Dict[str, _PendingJsonResponse] = {}
        self._read_stream_writer: Optional[MemoryObjectSendStream[Union[SessionMessage, Exception]]] = None

        self.onmessage: Optional[Callable[[JSONRPCMessage, Optional[MessageExtraInfo]], None]] = None
        self.onerror: Optional[Callable[[Exception], None]] = None
        self.onclose: Optional[Callable[[], None]] = None

    @property
    def session_id(self) -> Optional[str]:
        """Id of the active session, None before initialization or when stateless."""
        return self._session_id

    @property
    def is_stateless(self) -> bool:
        return self._session_id_generator is None

    async def start(self) -> None:
        """Start the transport. Nothing to set up for a request driven transport."""
        logger.debug('Streamable HTTP transport started')

    async def close(self) -> None:
        """Close every open stream, drop all routing state and notify ``onclose`` once."""
        streams = list(self._streams.values())
        if self._standalone_stream is not None:
            streams.append(self._standalone_stream)
        for stream in streams:
            try:
                stream.close()
            except Exception as e:
                logger.debug(f'Ignoring error while closing stream {stream.id}: {e}')

        pending = list(self._pending_json_responses.values())
        self._streams.clear()
        self._request_to_stream.clear()
        self._pending_json_responses.clear()
        self._standalone_stream = None
        for waiter in pending:
            waiter.reject(TransportClosedError('Transport closed before a response was sent'))

        if self._read_stream_writer is not None:
            self._read_stream_writer.close()
            self._read_stream_writer = None

        if self._closed:
            return
        self._closed = True
        logger.debug(f'Streamable HTTP transport closed ({len(streams)} open streams released)')
        if self.onclose is not None:
            self.onclose()

    async def send(self, message: JSONRPCMessage, related_request_id: Optional[RequestId] = None) -> None:
        """Deliver an outbound message to the channel waiting for it.

        Args:
            message: Message produced by the MCP server core
            related_request_id: Id of the inbound request this message belongs to.
                Responses and errors are always routed by their own id.

        Raises:
            TransportError: If a response or error carries no id
            RoutingError: If no open stream is registered for the request id
        """
        self._route(message, related_request_id)

    @asynccontextmanager
    async def connect(
        self,
    ) -> AsyncIterator[
        Tuple[
            MemoryObjectReceiveStream[Union[SessionMessage, Exception]],
            MemoryObjectSendStream[SessionMessage],
        ]
    ]:
        """Bridge the transport to the streams consumed by an ``mcp`` server.

        Inbound messages are pushed onto the read stream with their MessageExtraInfo as
        the request context. Messages the server writes are routed back through ``send``.

        Yields:
            Tuple of (read_stream, write_stream) for the server's run loop
        """
        read_stream_writer, read_stream = anyio.create_memory_object_stream(math.inf)
        write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

        def deliver(message: JSONRPCMessage, extra: Optional[MessageExtraInfo] = None) -> None:
            metadata = ServerMessageMetadata(request_context=extra)
            read_stream_writer.send_nowait(SessionMessage(message, metadata=metadata))

        self._read_stream_writer = read_stream_writer
        self.onmessage = deliver
        await self.start()

        async def route_outgoing() -> None:
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    metadata = session_message.metadata
                    related_request_id = None
                    if isinstance(metadata, ServerMessageMetadata):
                        related_request_id = metadata.related_request_id
                    try:
                        await self.send(session_message.message, related_request_id=related_request_id)
                    except TransportError as e:
                        logger.warning(f'Dropping outbound message: {e}')
                        self._report_error(e)

        async with anyio.create_task_group() as tg:
            tg.start_soon(route_outgoing)
            try:
                yield read_stream, write_stream
            finally:
                with anyio.CancelScope(shield=True):
                    self.onmessage = None
                    await read_stream_writer.aclose()
                    await write_stream.aclose()
                    await self.close()

    async def handle_request(self, request: Request, auth_info: Optional[AuthInfo] = None) -> Response:
        """Handle one HTTP request addressed to the MCP endpoint.

        Args:
            request: The incoming request
            auth_info: Credential extracted by the HTTP layer, forwarded to the tools

        Returns:
            The response to send back to the client
        """
        validation_error = self._validate_request_headers(request)
        if validation_error:
            logger.warning(validation_error)
            return self._json_rpc_error(400, SERVER_ERROR, validation_error)

        method = request.method.upper()
        if method == 'GET':
            return self._handle_get_request()
        if method == 'POST':
            return await self._handle_post_request(request, auth_info)
        if method == 'DELETE':
            return self._handle_delete_request(request)
        return self._json_rpc_error(405, SERVER_ERROR, 'Method not allowed.', headers={'Allow': 'GET, POST, DELETE'})

    def _validate_request_headers(self, request: Request) -> Optional[str]:
        if not self._enable_dns_rebinding_protection:
            return None
        if self._allowed_hosts:
            host = request.headers.get('host')
            if not host or not self._is_allowed(host, self._allowed_hosts):
                return 'Bad Request: Invalid Host header'
        if self._allowed_origins:
            origin = request.headers.get('origin')
            if origin and not self._is_allowed(origin, self._allowed_origins):
                return 'Bad Request: Invalid Origin header'
        return None

    @staticmethod
    def _is_allowed(value: str, allowed: Sequence[str]) -> bool:
        if value in allowed:
            return True
        for entry in allowed:
            if entry.endswith(':*') and value.startswith(entry[:-2] + ':'):
                return True
        return False

    def _validate_protocol_version(self, request: Request) -> Optional[str]:
        version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER)
        if version is None:
            version = DEFAULT_NEGOTIATED_VERSION
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            supported = ', '.join(SUPPORTED_PROTOCOL_VERSIONS)
            return f'Bad Request: Unsupported protocol version (supported versions: {supported})'
        return None

    def _validate_session(self, request: Request) -> Optional[Response]:
        """Check the session header. Returns an error response, or None if the request may proceed."""
        if self.is_stateless:
            return None
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            return self._json_rpc_error(400, SERVER_ERROR, 'Bad Request: Missing Mcp-Session-Id header')
        if session_id != self._session_id:
            logger.warning(f'Rejecting request for unknown session {session_id}')
            return self._json_rpc_error(404, SESSION_NOT_FOUND, 'Session not found')
        return None

    def _find_duplicate_request_id(self, messages: List[JSONRPCMessage]) -> Optional[RequestId]:
        """Return a request id repeated within the batch or already awaiting a reply, if any."""
        seen: Set[str] = set()
        for message in messages:
            if not _is_request(message):
                continue
            key = str(message.root.id)
            if key in seen or key in self._request_to_stream or key in self._pending_json_responses:
                return message.root.id
            seen.add(key)
        return None

    def _handle_get_request(self) -> Response:
        if self._standalone_stream is not None:
            return self._json_rpc_error(409, SERVER_ERROR, 'Conflict: Only one SSE stream is allowed.')
        if self._closed:
            return self._json_rpc_error(500, SERVER_ERROR, 'Failed to initialize SSE stream.')

        stream = _SseStream(uuid.uuid4().hex)
        self._standalone_stream = stream
        logger.debug(f'Opened standalone SSE stream {stream.id}')
        return self._event_stream_response(stream, lambda: self._discard_standalone_stream(stream))

    async def _handle_post_request(self, request: Request, auth_info: Optional[AuthInfo]) -> Response:
        accept = request.headers.get('accept', '')
        if CONTENT_TYPE_JSON not in accept or CONTENT_TYPE_SSE not in accept:
            return self._json_rpc_error(
                406,
                SERVER_ERROR,
                'Not Acceptable: Client must accept both application/json and text/event-stream',
            )

        content_type = request.headers.get('content-type', '')
        if CONTENT_TYPE_JSON not in content_type:
            return self._json_rpc_error(
                415, SERVER_ERROR, 'Unsupported Media Type: Content-Type must be application/json'
            )

        try:
            raw_message = json.loads(await request.body())
        except ValueError as e:
            self._report_error(e)
            return self._json_rpc_error(400, PARSE_ERROR, 'Parse error')

        try:
            if isinstance(raw_message, list):
                messages = [JSONRPCMessage.model_validate(item) for item in raw_message]
            else:
                messages = [JSONRPCMessage.model_validate(raw_message)]
        except ValidationError as e:
            self._report_error(e)
            return self._json_rpc_error(400, PARSE_ERROR, 'Parse error')

        if any(_is_initialize_request(message) for message in messages):
            if self._initialized and self._session_id is not None:
                return self._json_rpc_error(400, INVALID_REQUEST, 'Invalid Request: Server already initialized')
            if len(messages) > 1:
                return self._json_rpc_error(
                    400, INVALID_REQUEST, 'Invalid Request: Only one initialization request is allowed'
                )
            self._session_id = self._session_id_generator() if self._session_id_generator else None
            self._initialized = True
            logger.info(f'Streamable HTTP session initialized (session id: {self._session_id})')
            logfire.info('MCP session initialized', session_id=self._session_id, stateless=self.is_stateless)
        else:
            session_error = self._validate_session(request)
            if session_error is not None:
                return session_error
            protocol_error = self._validate_protocol_version(request)
            if protocol_error:
                return self._json_rpc_error(400, SERVER_ERROR, protocol_error)

        duplicate_id = self._find_duplicate_request_id(messages)
        if duplicate_id is not None:
            logger.warning(f'Rejecting request id {duplicate_id} that is repeated or still in flight')
            return self._json_rpc_error(
                400, INVALID_REQUEST, f'Invalid Request: Duplicate request ID: {duplicate_id}'
            )

        extra = MessageExtraInfo(auth_info=auth_info, request_info=RequestInfo(headers=dict(request.headers)))

        if not any(_is_request(message) for message in messages):
            self._dispatch(messages, extra)
            return Response(status_code=202)

        if self._enable_json_response:
            return await self._create_json_response(messages, extra)
        return self._create_sse_response(messages, extra)

    def _handle_delete_request(self, request: Request) -> Response:
        if self.is_stateless:
            return self._json_rpc_error(405, SERVER_ERROR, 'Method not allowed.')

        session_error = self._validate_session(request)
        if session_error is not None:
            return session_error

        logger.info(f'Streamable HTTP session {self._session_id} terminated by client')
        logfire.info('MCP session terminated', session_id=self._session_id)
        self._session_id = None
        self._initialized = False
        return Response(status_code=204)

    async def _create_json_response(self, messages: List[JSONRPCMessage], extra: MessageExtraInfo) -> Response:
        if self._closed:
            return self._json_rpc_error(500, SERVER_ERROR, 'Transport is closed.')

        # Waiters must exist before dispatch: a handler may answer synchronously
        waiters = []
        for message in messages:
            if _is_request(message):
                waiter = _PendingJsonResponse()
                self._pending_json_responses[str(message.root.id)] = waiter
                waiters.append(waiter)

        self._dispatch(messages, extra)

        try:
            replies = [await waiter.wait() for waiter in waiters]
        except TransportClosedError as e:
            logger.warning(f'JSON response abandoned: {e}')
            return self._json_rpc_error(500, SERVER_ERROR, str(e))

        bodies = [reply.model_dump(mode='json', by_alias=True, exclude_none=True) for reply in replies]
        headers = {}
        if self._session_id is not None:
            headers[MCP_SESSION_ID_HEADER] = self._session_id
        return JSONResponse(bodies[0] if len(bodies) == 1 else bodies, headers=headers)

    def _create_sse_response(self, messages: List[JSONRPCMessage], extra: MessageExtraInfo) -> Response:
        if self._closed:
            return self._json_rpc_error(500, SERVER_ERROR, 'Failed to initialize SSE stream.')

        stream = _SseStream(uuid.uuid4().hex)
        for message in messages:
            if _is_request(message):
                stream.pending_ids.add(str(message.root.id))
                self._request_to_stream[str(message.root.id)] = stream.id
        # Registered before dispatch so a synchronous reply finds its stream
        self._streams[stream.id] = stream
        logger.debug(f'Opened SSE stream {stream.id} for requests {sorted(stream.pending_ids)}')

        self._dispatch(messages, extra)
        return self._event_stream_response(stream, lambda: self._discard_stream(stream))

    def _dispatch(self, messages: List[JSONRPCMessage], extra: MessageExtraInfo) -> None:
        """Hand messages to ``onmessage``. A request whose dispatch fails is answered with an error."""
        for message in messages:
            try:
                if self.onmessage is None:
                    raise TransportClosedError('No message handler is connected to the transport')
                self.onmessage(message, extra)
            except Exception as e:
                logger.error(f'Failed to dispatch message: {e}')
                self._report_error(e)
                if _is_request(message):
                    self._fail_request(message.root.id, e)

    def _fail_request(self, request_id: RequestId, error: Exception) -> None:
        reply = JSONRPCMessage(
            JSONRPCError(
                jsonrpc='2.0',
                id=request_id,
                error=ErrorData(code=INTERNAL_ERROR, message=f'Internal error: {error}'),
            )
        )
        try:
            self._route(reply)
        except TransportError as e:
            logger.warning(f'Could not deliver failure for request {request_id}: {e}')

    def _route(self, message: JSONRPCMessage, related_request_id: Optional[RequestId] = None) -> None:
        is_reply = _is_reply(message)
        request_id = getattr(message.root, 'id', None) if is_reply else related_request_id

        if request_id is None:
            if is_reply:
                raise TransportError('Cannot send a response without a related request.')
            if self._standalone_stream is not None:
                self._write_standalone(message)
            return

        # The server core reports related request ids as strings, replies carry the raw id
        request_id = str(request_id)

        if self._enable_json_response:
            if not is_reply:
                logger.debug(f'No channel for message related to request {request_id} in JSON response mode')
                return
            waiter = self._pending_json_responses.pop(request_id, None)
            if waiter is not None:
                waiter.resolve(message)
            return

        stream_id = self._request_to_stream.get(request_id)
        stream = self._streams.get(stream_id) if stream_id is not None else None
        if stream is None:
            raise RoutingError(f'No connection established for request ID: {request_id}')

        try:
            stream.write(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            self._discard_stream(stream)
            raise RoutingError(f'Connection closed for request ID: {request_id}')

        if is_reply:
            stream.pending_ids.discard(request_id)
            self._request_to_stream.pop(request_id, None)
            if not stream.pending_ids:
                self._streams.pop(stream.id, None)
                stream.close()
                logger.debug(f'Closed SSE stream {stream.id}, all requests answered')

    def _write_standalone(self, message: JSONRPCMessage) -> None:
        stream = self._standalone_stream
        try:
            stream.write(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug(f'Standalone SSE stream {stream.id} is gone, dropping message')
            self._discard_standalone_stream(stream)

    def _discard_stream(self, stream: _SseStream) -> None:
        """Forget a request-bound stream and every request id still routed to it."""
        if self._streams.get(stream.id) is stream:
            del self._streams[stream.id]
            logger.debug(f'SSE stream {stream.id} cancelled by client')
        for request_id in stream.pending_ids:
            if self._request_to_stream.get(request_id) == stream.id:
                del self._request_to_stream[request_id]
        stream.close()

    def _discard_standalone_stream(self, stream: _SseStream) -> None:
        if self._standalone_stream is stream:
            self._standalone_stream = None
            logger.debug(f'Standalone SSE stream {stream.id} closed')
        stream.close()

    def _event_stream_response(self, stream: _SseStream, on_close: Callable[[], None]) -> Response:
        async def events() -> AsyncIterator[bytes]:
            try:
                async with stream.source:
                    async for chunk in stream.source:
                        yield chunk
            finally:
                on_close()

        headers = dict(SSE_HEADERS)
        if self._session_id is not None:
            headers[MCP_SESSION_ID_HEADER] = self._session_id
        return EventStreamResponse(events(), on_close=on_close, headers=headers)

    def _report_error(self, error: Exception) -> None:
        if self.onerror is not None:
            self.onerror(error)

    @staticmethod
    def _json_rpc_error(
        status_code: int, code: int, message: str, headers: Optional[Dict[str, str]] = None
    ) -> Response:
        body = {'jsonrpc': '2.0', 'error': {'code': code, 'message': message}, 'id': None}
        return JSONResponse(body, status_code=status_code, headers=headers)
