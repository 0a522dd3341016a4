import anyio
import json
import pytest
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from mcp.types import (
    LATEST_PROTOCOL_VERSION,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCResponse,
)
from tl.ado_workitems_mcp_server.transport import (
    AuthInfo,
    MessageExtraInfo,
    RoutingError,
    StreamableHTTPTransport,
    TransportError,
    encode_sse_event,
)


pytestmark = pytest.mark.anyio

SSE_PREFIX = 'event: message\ndata: '


def initialize_request(request_id=0):
    return {
        'jsonrpc': '2.0',
        'id': request_id,
        'method': 'initialize',
        'params': {
            'protocolVersion': LATEST_PROTOCOL_VERSION,
            'capabilities': {},
            'clientInfo': {'name': 'test-client', 'version': '1.0'},
        },
    }


def tools_list_request(request_id):
    return {'jsonrpc': '2.0', 'id': request_id, 'method': 'tools/list'}


def reply(request_id, result=None):
    return JSONRPCMessage(JSONRPCResponse(jsonrpc='2.0', id=request_id, result=result or {}))


def notification(method='notifications/message', params=None):
    return JSONRPCMessage(JSONRPCNotification(jsonrpc='2.0', method=method, params=params))


def decode_event(chunk):
    text = chunk.decode('utf-8')
    assert text.startswith(SSE_PREFIX)
    assert text.endswith('\n\n')
    return json.loads(text[len(SSE_PREFIX) :])


async def next_event(response):
    with anyio.fail_after(2):
        return decode_event(await response.body_iterator.__anext__())


async def read_events(response):
    with anyio.fail_after(2):
        return [decode_event(chunk) async for chunk in response.body_iterator]


async def assert_stream_ended(response):
    with anyio.fail_after(2):
        with pytest.raises(StopAsyncIteration):
            await response.body_iterator.__anext__()


async def disconnect(response):
    """Serve the response to a client that goes away immediately."""

    async def receive():
        return {'type': 'http.disconnect'}

    async def send(message):
        pass

    with anyio.fail_after(2):
        await response({'type': 'http', 'method': 'GET', 'headers': []}, receive, send)


def error_body(response):
    body = json.loads(response.body)
    assert body['jsonrpc'] == '2.0'
    assert body['id'] is None
    return body['error']


def recording_transport(**kwargs):
    transport = StreamableHTTPTransport(**kwargs)
    received = []
    transport.onmessage = lambda message, extra: received.append((message, extra))
    return transport, received


async def initialize(transport, make_request):
    response = await transport.handle_request(make_request(body=initialize_request(0)))
    await transport.send(reply(0))
    await read_events(response)
    return response


async def test_initialize_assigns_session_id_and_rejects_second_initialize(make_request):
    transport, received = recording_transport(session_id_generator=lambda: 'session-1')

    response = await transport.handle_request(make_request(body=initialize_request(0)))

    assert response.status_code == 200
    assert response.headers['mcp-session-id'] == 'session-1'
    assert response.headers['content-type'] == 'text/event-stream'
    assert transport.session_id == 'session-1'
    assert received[0][0].root.method == 'initialize'

    await transport.send(reply(0, {'protocolVersion': LATEST_PROTOCOL_VERSION}))
    events = await read_events(response)
    assert [event['id'] for event in events] == [0]

    second = await transport.handle_request(
        make_request(body=initialize_request(1), headers={'mcp-session-id': 'session-1'})
    )
    assert second.status_code == 400
    assert error_body(second) == {
        'code': -32600,
        'message': 'Invalid Request: Server already initialized',
    }


async def test_stateless_initialize_leaves_session_id_unset(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(make_request(body=initialize_request(0)))

    assert response.status_code == 200
    assert transport.session_id is None
    assert 'mcp-session-id' not in response.headers


async def test_initialize_must_be_sent_alone(make_request):
    transport, received = recording_transport(session_id_generator=lambda: 'session-1')

    response = await transport.handle_request(
        make_request(body=[initialize_request(0), tools_list_request(1)])
    )

    assert response.status_code == 400
    assert error_body(response)['code'] == -32600
    assert transport.session_id is None
    assert received == []


async def test_sse_stream_closes_exactly_when_every_request_is_answered(make_request):
    transport, received = recording_transport()

    response = await transport.handle_request(
        make_request(body=[tools_list_request(1), tools_list_request(2)])
    )
    assert [message.root.id for message, _ in received] == [1, 2]

    await transport.send(reply(1))
    assert (await next_event(response))['id'] == 1

    # Request 2 still holds the stream open
    await transport.send(notification('notifications/progress', {'progressToken': 'p', 'progress': 1}), 2)
    assert (await next_event(response))['method'] == 'notifications/progress'

    await transport.send(reply(2))
    assert (await next_event(response))['id'] == 2
    await assert_stream_ended(response)

    with pytest.raises(RoutingError):
        await transport.send(reply(1))


async def test_interleaved_replies_reach_the_stream_of_their_request(make_request):
    transport, _ = recording_transport()

    first = await transport.handle_request(
        make_request(body=[tools_list_request(1), tools_list_request(2)])
    )
    second = await transport.handle_request(make_request(body=tools_list_request(3)))

    await transport.send(reply(3, {'order': 'c'}))
    await transport.send(reply(2, {'order': 'b'}))
    await transport.send(reply(1, {'order': 'a'}))

    assert [event['id'] for event in await read_events(first)] == [2, 1]
    assert [event['result'] for event in await read_events(second)] == [{'order': 'c'}]


async def test_reply_for_unknown_request_is_a_routing_error(make_request):
    transport, _ = recording_transport()

    with pytest.raises(RoutingError, match='No connection established for request ID: 99'):
        await transport.send(reply(99))


async def test_reply_without_id_cannot_be_sent():
    transport, _ = recording_transport()
    orphan = JSONRPCMessage.model_construct(
        JSONRPCError.model_construct(
            jsonrpc='2.0', id=None, error=ErrorData(code=-32603, message='boom')
        )
    )

    with pytest.raises(TransportError, match='Cannot send a response without a related request.'):
        await transport.send(orphan)


async def test_unrelated_message_without_standalone_stream_is_dropped():
    transport, _ = recording_transport()

    await transport.send(notification())


async def test_standalone_stream_carries_unrelated_messages(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(make_request(method='GET'))
    assert response.status_code == 200
    assert response.headers['cache-control'] == 'no-cache'
    assert response.headers['connection'] == 'keep-alive'

    await transport.send(notification('notifications/tools/list_changed'))
    assert (await next_event(response))['method'] == 'notifications/tools/list_changed'


async def test_second_get_conflicts_until_first_stream_closes(make_request):
    transport, _ = recording_transport()

    first = await transport.handle_request(make_request(method='GET'))
    assert first.status_code == 200

    conflict = await transport.handle_request(make_request(method='GET'))
    assert conflict.status_code == 409
    assert error_body(conflict) == {
        'code': -32000,
        'message': 'Conflict: Only one SSE stream is allowed.',
    }

    await disconnect(first)

    again = await transport.handle_request(make_request(method='GET'))
    assert again.status_code == 200


async def test_client_disconnect_forgets_pending_requests(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(make_request(body=tools_list_request(5)))
    await disconnect(response)

    with pytest.raises(RoutingError):
        await transport.send(reply(5))


async def test_json_mode_batch_answers_in_request_order(make_request):
    transport = StreamableHTTPTransport(enable_json_response=True)
    dispatched = anyio.Event()
    received = []

    def onmessage(message, extra):
        received.append(message)
        if len(received) == 3:
            dispatched.set()

    transport.onmessage = onmessage
    result = {}

    async def post():
        request = make_request(
            body=[tools_list_request(1), tools_list_request(2), tools_list_request(3)]
        )
        result['response'] = await transport.handle_request(request)

    async with anyio.create_task_group() as tg:
        tg.start_soon(post)
        with anyio.fail_after(2):
            await dispatched.wait()
        await transport.send(reply(3, {'n': 3}))
        await transport.send(reply(1, {'n': 1}))
        await transport.send(reply(2, {'n': 2}))

    response = result['response']
    assert response.status_code == 200
    body = json.loads(response.body)
    assert [item['id'] for item in body] == [1, 2, 3]
    assert [item['result'] for item in body] == [{'n': 1}, {'n': 2}, {'n': 3}]


async def test_json_mode_single_request_answers_with_an_object(make_request):
    transport = StreamableHTTPTransport(enable_json_response=True)
    dispatched = anyio.Event()
    transport.onmessage = lambda message, extra: dispatched.set()
    result = {}

    async def post():
        result['response'] = await transport.handle_request(make_request(body=tools_list_request(4)))

    async with anyio.create_task_group() as tg:
        tg.start_soon(post)
        with anyio.fail_after(2):
            await dispatched.wait()
        # Unrelated to any JSON waiter, ignored
        await transport.send(notification(), 4)
        await transport.send(reply(4, {'tools': []}))

    body = json.loads(result['response'].body)
    assert body == {'jsonrpc': '2.0', 'id': 4, 'result': {'tools': []}}


async def test_delete_ends_session_and_old_id_is_not_found(make_request):
    transport, _ = recording_transport(session_id_generator=lambda: 'session-1')
    await initialize(transport, make_request)

    deleted = await transport.handle_request(
        make_request(method='DELETE', headers={'mcp-session-id': 'session-1'})
    )
    assert deleted.status_code == 204
    assert transport.session_id is None

    stale = await transport.handle_request(
        make_request(body=tools_list_request(1), headers={'mcp-session-id': 'session-1'})
    )
    assert stale.status_code == 404
    assert error_body(stale) == {'code': -32001, 'message': 'Session not found'}


async def test_delete_without_sessions_is_not_allowed(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(make_request(method='DELETE'))

    assert response.status_code == 405


async def test_missing_session_header_is_a_bad_request(make_request):
    transport, received = recording_transport(session_id_generator=lambda: 'session-1')
    await initialize(transport, make_request)

    response = await transport.handle_request(make_request(body=tools_list_request(1)))

    assert response.status_code == 400
    assert error_body(response) == {
        'code': -32000,
        'message': 'Bad Request: Missing Mcp-Session-Id header',
    }
    assert len(received) == 1


@pytest.mark.parametrize('body', [b'{not json', {'hello': 'world'}, [tools_list_request(1), {'id': 2}]])
async def test_unparseable_body_is_a_parse_error(make_request, body):
    transport, received = recording_transport()
    errors = []
    transport.onerror = errors.append

    response = await transport.handle_request(make_request(body=body))

    assert response.status_code == 400
    assert error_body(response) == {'code': -32700, 'message': 'Parse error'}
    assert len(errors) == 1
    assert received == []


async def test_unsupported_protocol_version_is_rejected(make_request):
    transport, received = recording_transport()

    response = await transport.handle_request(
        make_request(body=tools_list_request(1), headers={'mcp-protocol-version': '1999-01-01'})
    )

    assert response.status_code == 400
    error = error_body(response)
    assert error['code'] == -32000
    assert error['message'].startswith('Bad Request: Unsupported protocol version')
    assert LATEST_PROTOCOL_VERSION in error['message']
    assert received == []


async def test_post_must_accept_json_and_event_stream(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(
        make_request(body=tools_list_request(1), headers={'accept': 'application/json'})
    )

    assert response.status_code == 406


async def test_post_must_send_json(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(
        make_request(body=tools_list_request(1), headers={'content-type': 'text/plain'})
    )

    assert response.status_code == 415


async def test_unsupported_method_lists_allowed_methods(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(make_request(method='PUT'))

    assert response.status_code == 405
    assert response.headers['allow'] == 'GET, POST, DELETE'


async def test_notifications_only_post_is_accepted(make_request):
    transport, received = recording_transport()

    response = await transport.handle_request(
        make_request(body={'jsonrpc': '2.0', 'method': 'notifications/initialized'})
    )

    assert response.status_code == 202
    assert response.body == b''
    assert received[0][0].root.method == 'notifications/initialized'


@pytest.mark.parametrize(
    'headers, status_code',
    [
        ({'host': 'evil.example.com'}, 400),
        ({'host': 'localhost:3000', 'origin': 'http://evil.example.com'}, 400),
        ({'host': 'localhost:3000'}, 202),
        ({'host': 'localhost:8123', 'origin': 'http://localhost:3000'}, 202),
        ({'host': '127.0.0.1:3000'}, 202),
    ],
)
async def test_dns_rebinding_protection(make_request, headers, status_code):
    transport, _ = recording_transport(
        allowed_hosts=['localhost:*', '127.0.0.1:3000'],
        allowed_origins=['http://localhost:3000'],
        enable_dns_rebinding_protection=True,
    )

    response = await transport.handle_request(
        make_request(body={'jsonrpc': '2.0', 'method': 'notifications/initialized'}, headers=headers)
    )

    assert response.status_code == status_code


async def test_dns_rebinding_protection_off_ignores_headers(make_request):
    transport, _ = recording_transport(allowed_hosts=['localhost:3000'])

    response = await transport.handle_request(
        make_request(
            body={'jsonrpc': '2.0', 'method': 'notifications/initialized'},
            headers={'host': 'evil.example.com'},
        )
    )

    assert response.status_code == 202


async def test_failed_dispatch_answers_request_with_internal_error(make_request):
    transport = StreamableHTTPTransport()
    errors = []
    transport.onerror = errors.append

    def onmessage(message, extra):
        raise RuntimeError('boom')

    transport.onmessage = onmessage

    response = await transport.handle_request(make_request(body=tools_list_request(1)))
    events = await read_events(response)

    assert events == [
        {'jsonrpc': '2.0', 'id': 1, 'error': {'code': -32603, 'message': 'Internal error: boom'}}
    ]
    assert [str(error) for error in errors] == ['boom']


async def test_missing_handler_still_answers_json_request(make_request):
    transport = StreamableHTTPTransport(enable_json_response=True)

    with anyio.fail_after(2):
        response = await transport.handle_request(make_request(body=tools_list_request(8)))

    body = json.loads(response.body)
    assert body['id'] == 8
    assert body['error']['code'] == -32603


async def test_close_rejects_pending_json_responses(make_request):
    transport = StreamableHTTPTransport(enable_json_response=True)
    dispatched = anyio.Event()
    transport.onmessage = lambda message, extra: dispatched.set()
    result = {}

    async def post():
        result['response'] = await transport.handle_request(make_request(body=tools_list_request(1)))

    async with anyio.create_task_group() as tg:
        tg.start_soon(post)
        with anyio.fail_after(2):
            await dispatched.wait()
        await transport.close()

    response = result['response']
    assert response.status_code == 500
    assert error_body(response)['code'] == -32000


async def test_close_ends_every_stream_and_notifies_once(make_request):
    transport, _ = recording_transport()
    closed = []
    transport.onclose = lambda: closed.append(True)

    standalone = await transport.handle_request(make_request(method='GET'))
    pending = await transport.handle_request(make_request(body=tools_list_request(1)))

    await transport.close()
    await transport.close()

    await assert_stream_ended(standalone)
    await assert_stream_ended(pending)
    assert closed == [True]
    with pytest.raises(RoutingError):
        await transport.send(reply(1))

    after_close = await transport.handle_request(make_request(method='GET'))
    assert after_close.status_code == 500


async def test_dispatch_carries_auth_and_request_headers(make_request):
    transport, received = recording_transport()
    auth_info = AuthInfo('secret-token', extra={'scheme': 'bearer'})

    await transport.handle_request(
        make_request(body=tools_list_request(1), headers={'x-trace-id': 'abc'}), auth_info
    )

    extra = received[0][1]
    assert isinstance(extra, MessageExtraInfo)
    assert extra.auth_info is auth_info
    assert extra.request_info.headers['x-trace-id'] == 'abc'


async def test_connect_bridges_transport_to_server_streams(make_request):
    transport = StreamableHTTPTransport()
    closed = []
    transport.onclose = lambda: closed.append(True)

    async with transport.connect() as (read_stream, write_stream):
        response = await transport.handle_request(
            make_request(body=tools_list_request(7)), AuthInfo('secret-token')
        )
        with anyio.fail_after(2):
            inbound = await read_stream.receive()
        assert inbound.message.root.id == 7
        assert inbound.metadata.request_context.auth_info.token == 'secret-token'

        progress = notification('notifications/progress', {'progressToken': 'p', 'progress': 0.5})
        await write_stream.send(
            SessionMessage(progress, metadata=ServerMessageMetadata(related_request_id=7))
        )
        await write_stream.send(SessionMessage(reply(7, {'tools': []})))
        events = await read_events(response)

    assert [event.get('method', event.get('id')) for event in events] == ['notifications/progress', 7]
    assert closed == [True]
    assert transport.onmessage is None


async def test_connect_reports_unroutable_messages_to_onerror():
    transport = StreamableHTTPTransport()
    errors = []
    transport.onerror = errors.append

    async with transport.connect() as (_, write_stream):
        await write_stream.send(SessionMessage(reply(42)))
        with anyio.fail_after(2):
            while not errors:
                await anyio.sleep(0.01)

    assert isinstance(errors[0], RoutingError)


def test_sse_frame_is_compact_json():
    assert encode_sse_event(reply(1)) == (
        b'event: message\ndata: {"jsonrpc":"2.0","id":1,"result":{}}\n\n'
    )


async def test_related_id_reported_as_string_reaches_the_request_stream(make_request):
    transport, _ = recording_transport()

    response = await transport.handle_request(make_request(body=tools_list_request(5)))

    await transport.send(notification('notifications/message', {'level': 'info', 'data': 'hi'}), '5')
    await transport.send(reply(5))

    events = await read_events(response)
    assert [event.get('method', event.get('id')) for event in events] == ['notifications/message', 5]


async def test_repeated_request_id_in_batch_is_rejected(make_request):
    transport, received = recording_transport(enable_json_response=True)

    with anyio.fail_after(2):
        response = await transport.handle_request(
            make_request(body=[tools_list_request(1), tools_list_request(1)])
        )

    assert response.status_code == 400
    assert error_body(response) == {
        'code': -32600,
        'message': 'Invalid Request: Duplicate request ID: 1',
    }
    assert received == []


async def test_request_id_still_in_flight_is_rejected(make_request):
    transport, received = recording_transport()

    first = await transport.handle_request(make_request(body=tools_list_request(3)))
    second = await transport.handle_request(make_request(body=tools_list_request(3)))

    assert second.status_code == 400
    assert error_body(second)['code'] == -32600
    assert len(received) == 1

    await transport.send(reply(3))
    assert [event['id'] for event in await read_events(first)] == [3]


async def test_empty_protocol_version_header_is_rejected(make_request):
    transport, received = recording_transport()

    response = await transport.handle_request(
        make_request(body=tools_list_request(1), headers={'mcp-protocol-version': ''})
    )

    assert response.status_code == 400
    assert error_body(response)['message'].startswith('Bad Request: Unsupported protocol version')
    assert received == []
