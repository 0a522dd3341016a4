import json
import pytest
from starlette.requests import Request
from starlette.types import Message
from typing import Any, Callable, Dict, Optional


ACCEPT_JSON_AND_SSE = 'application/json, text/event-stream'


@pytest.fixture
def anyio_backend():
    return 'asyncio'


def build_request(
    method: str = 'POST',
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    path: str = '/mcp',
) -> Request:
    """Build a Starlette request the way an ASGI server would hand it to an endpoint.

    POST requests get JSON and SSE Accept headers and a JSON Content-Type unless overridden.
    Bytes bodies are sent as-is, anything else is JSON encoded.
    """
    all_headers: Dict[str, str] = {'host': 'localhost:3000'}
    if method == 'POST':
        all_headers.update({'accept': ACCEPT_JSON_AND_SSE, 'content-type': 'application/json'})
    all_headers.update({key.lower(): value for key, value in (headers or {}).items()})

    if isinstance(body, bytes):
        raw_body = body
    elif body is None:
        raw_body = b''
    else:
        raw_body = json.dumps(body).encode('utf-8')

    scope = {
        'type': 'http',
        'method': method,
        'path': path,
        'query_string': b'',
        'headers': [(key.encode(), value.encode()) for key, value in all_headers.items()],
    }
    messages = [{'type': 'http.request', 'body': raw_body, 'more_body': False}]

    async def receive() -> Message:
        if messages:
            return messages.pop(0)
        return {'type': 'http.disconnect'}

    return Request(scope, receive)


@pytest.fixture
def make_request() -> Callable[..., Request]:
    return build_request
