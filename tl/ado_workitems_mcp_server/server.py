"""Azure DevOps Work Items MCP Server.

This module provides the main server implementation: the FastMCP server with the work
item tools, the Starlette application serving it over the Streamable HTTP transport,
and the entry point that runs it over HTTP or stdio.
"""

import anyio
import logfire
import sys
import uvicorn
from anyio.abc import TaskStatus
from contextlib import asynccontextmanager
from loguru import logger
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Receive, Scope, Send
from tl.ado_workitems_mcp_server import __version__
from tl.ado_workitems_mcp_server.auth import (
    create_token_provider,
    parse_authorization_header,
    resolve_auth_scheme,
)
from tl.ado_workitems_mcp_server.config import ServerConfig, load_config
from tl.ado_workitems_mcp_server.transport import AuthInfo, StreamableHTTPTransport
from tl.ado_workitems_mcp_server.work_item_tools import WorkItemTools
from typing import AsyncIterator, Optional


# Server constants for Azure DevOps Work Items MCP Server
SERVER_INSTRUCTIONS = """
You are an Azure DevOps expert assistant focused on helping users track work with:

1. Work items: reading, creating and updating bugs, tasks, user stories and features
2. Backlogs and iterations of a team
3. Comments and revision history of work items
4. Links between work items, and links to branches, commits, pull requests and builds
5. Saved work item queries and their results

Prefer batch tools when reading or changing several work items at once. Field values
formatted as Markdown are stored as Markdown on large text fields.
"""

SERVER_DEPENDENCIES: list[str] = [
    'requests',
    'python-dotenv',
    'loguru',
    'logfire',
    'starlette',
    'uvicorn',
]


def create_mcp_server() -> FastMCP:
    """Create the FastMCP server without any tools registered."""
    return FastMCP(
        'tl.ado-workitems-mcp-server',
        instructions=SERVER_INSTRUCTIONS,
        dependencies=SERVER_DEPENDENCIES,
    )


def setup_logging(config: ServerConfig) -> None:
    """Set up logging configuration.

    Loguru writes to stderr so the stdio transport keeps stdout to itself, and every
    record is forwarded to Logfire. Data is only sent to Logfire when a write token is set.
    """
    if not config.logfire_write_token:
        logger.warning('LOGFIRE_WRITE_TOKEN not found in environment variables.')
    else:
        logger.info('LOGFIRE_WRITE_TOKEN successfully loaded.')

    logfire.configure(
        token=config.logfire_write_token or None,
        send_to_logfire='if-token-present',
        service_name='tl.ado-workitems-mcp-server',
        service_version=__version__,
        console=False,
    )
    logger.configure(
        handlers=[
            {'sink': sys.stderr, 'level': config.log_level},
            logfire.loguru_handler(),
        ]
    )


def register_tools(mcp: FastMCP, config: ServerConfig) -> WorkItemTools:
    """Register Azure DevOps work item tools with the MCP server."""
    return WorkItemTools(mcp, config, create_token_provider(config))


def create_transport(config: ServerConfig) -> StreamableHTTPTransport:
    """Create the Streamable HTTP transport described by the configuration."""
    return StreamableHTTPTransport(
        session_id_generator=config.session_id_generator,
        enable_json_response=config.enable_json_response,
        allowed_hosts=config.allowed_hosts,
        allowed_origins=config.allowed_origins,
        enable_dns_rebinding_protection=config.enable_dns_rebinding_protection,
    )


async def run_mcp_server(
    mcp: FastMCP,
    transport: StreamableHTTPTransport,
    stateless: Optional[bool] = None,
    *,
    task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
) -> None:
    """Run the MCP server over the transport until the transport closes.

    Started with ``TaskGroup.start``, it reports ready once the transport is connected,
    so requests handled after that point reach the server.

    Args:
        mcp: The FastMCP server whose handlers answer the messages
        transport: Transport the messages arrive on
        stateless: Skip the initialization handshake check. Defaults to the transport's mode.
        task_status: Set by anyio when started with ``TaskGroup.start``
    """
    if stateless is None:
        stateless = transport.is_stateless

    server = mcp._mcp_server
    async with transport.connect() as (read_stream, write_stream):
        task_status.started()
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
            stateless=stateless,
        )
    logger.info('MCP server stopped')


class StreamableHTTPEndpoint:
    """ASGI endpoint passing every request on the MCP path to the transport.

    The Authorization header is parsed here and its token forwarded to the transport,
    which hands it to the tools. PAT authentication requires the header.
    """

    def __init__(self, transport: StreamableHTTPTransport, authentication_type: str) -> None:
        self.transport = transport
        self.authentication_type = authentication_type
        self.auth_scheme = resolve_auth_scheme(authentication_type)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = await self.handle_request(Request(scope, receive))
        await response(scope, receive, send)

    async def handle_request(self, request: Request) -> Response:
        token = parse_authorization_header(request.headers.get('authorization'))
        if self.authentication_type == 'pat' and not token:
            return PlainTextResponse(
                'Unauthorized', status_code=401, headers={'WWW-Authenticate': 'Bearer'}
            )

        auth_info = None
        if token:
            auth_info = AuthInfo(
                token, client_id='http', scopes=[], extra={'scheme': self.auth_scheme}
            )

        try:
            return await self.transport.handle_request(request, auth_info)
        except Exception as e:
            logger.exception(f'HTTP transport error: {str(e)}')
            logfire.error('HTTP transport error', error=str(e))
            return PlainTextResponse('Internal Server Error', status_code=500)


def create_app(
    config: ServerConfig,
    mcp: Optional[FastMCP] = None,
    transport: Optional[StreamableHTTPTransport] = None,
) -> Starlette:
    """Create the Starlette application serving the MCP endpoint.

    Args:
        config: Server configuration
        mcp: FastMCP server to serve. A server with the work item tools is created when omitted.
        transport: Transport to use, created from the configuration when omitted

    Returns:
        The Starlette application. Its lifespan runs the MCP server.
    """
    if mcp is None:
        mcp = create_mcp_server()
        register_tools(mcp, config)
    if transport is None:
        transport = create_transport(config)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with anyio.create_task_group() as tg:
            await tg.start(run_mcp_server, mcp, transport)
            logger.info(f'Serving MCP over Streamable HTTP at {config.http_path}')
            logfire.info(
                'MCP HTTP server started',
                path=config.http_path,
                organization_url=config.organization_url,
                auth=config.authentication_type,
                stateful=config.stateful,
                json_response=config.enable_json_response,
            )
            try:
                yield
            finally:
                await transport.close()
                tg.cancel_scope.cancel()

    app = Starlette(
        routes=[
            Route(
                config.http_path,
                endpoint=StreamableHTTPEndpoint(transport, config.authentication_type),
            )
        ],
        lifespan=lifespan,
    )
    app.state.mcp = mcp
    app.state.transport = transport
    return app


def main() -> None:
    """Main entry point to start the MCP server."""
    # Load configuration before starting the server
    load_config()
    config = ServerConfig.from_env()

    # Configure logging
    setup_logging(config)

    if config.transport == 'stdio':
        mcp = create_mcp_server()
        register_tools(mcp, config)
        logger.info('Created MCP server with Azure DevOps work item tools (stdio)')
        mcp.run(transport='stdio')
        return

    app = create_app(config)
    logger.info(
        f'Created MCP server with Azure DevOps work item tools on {config.http_host}:{config.http_port}'
    )
    uvicorn.run(app, host=config.http_host, port=config.http_port, log_level=config.log_level.lower())


if __name__ == '__main__':
    main()
