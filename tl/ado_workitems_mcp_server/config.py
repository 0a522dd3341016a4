"""Configuration for the Azure DevOps work items MCP server.

Settings come from environment variables, optionally loaded from a .env file.
"""

import os
import uuid
from dotenv import load_dotenv
from loguru import logger
from pathlib import Path
from typing import Callable, List, Mapping, Optional


TOKEN_ENV_VARS = ('ADO_MCP_AUTH_TOKEN', 'ADO_PAT', 'AZURE_DEVOPS_PAT')
DEFAULT_HTTP_PATH = '/mcp'
DEFAULT_HTTP_HOST = '0.0.0.0'
DEFAULT_HTTP_PORT = 3000


def load_config() -> None:
    """Load configuration from .env file.

    Looks for .env file in the current directory and parent directories.
    """
    current_dir = Path(os.path.dirname(os.path.abspath(__file__)))

    # Look for .env in current directory and up to 3 levels up
    for _ in range(4):
        env_file = current_dir / '.env'
        if env_file.exists():
            logger.info(f'Loading configuration from {env_file}')
            load_dotenv(dotenv_path=env_file)
            break
        current_dir = current_dir.parent
    else:
        logger.warning('No .env file found. Using environment variables if available.')


def parse_csv(value: Optional[str]) -> List[str]:
    """Split a comma separated value, dropping blank entries."""
    if not value:
        return []
    return [entry.strip() for entry in value.split(',') if entry.strip()]


def parse_bool(value: Optional[str]) -> bool:
    """Interpret an environment flag. Only 'true' (any case) is truthy."""
    return (value or '').strip().lower() == 'true'


def _parse_port(value: Optional[str]) -> int:
    try:
        return int(value) if value else DEFAULT_HTTP_PORT
    except ValueError:
        logger.warning(f'Invalid port value {value!r}, falling back to {DEFAULT_HTTP_PORT}')
        return DEFAULT_HTTP_PORT


class ServerConfig:
    """Runtime settings for the server, its transport and the Azure DevOps client."""

    def __init__(
        self,
        organization_url: str,
        project: str,
        authentication_type: str = 'pat',
        access_token: Optional[str] = None,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        transport: str = 'http',
        http_host: str = DEFAULT_HTTP_HOST,
        http_port: int = DEFAULT_HTTP_PORT,
        http_path: str = DEFAULT_HTTP_PATH,
        stateful: bool = False,
        enable_json_response: bool = False,
        allowed_hosts: Optional[List[str]] = None,
        allowed_origins: Optional[List[str]] = None,
        enable_dns_rebinding_protection: bool = False,
        log_level: str = 'INFO',
        logfire_write_token: str = '',
    ) -> None:
        """Initialize the server configuration.

        Args:
            organization_url: Base URL of the Azure DevOps organization, always ending with '/'
            project: Name of the project the work item tools operate on
            authentication_type: One of 'pat', 'envvar', 'clientsecret' or 'bearer'
            access_token: Token read from the environment, used by 'envvar' authentication
            tenant_id: Entra tenant used by 'clientsecret' authentication
            client_id: Application id used by 'clientsecret' authentication
            client_secret: Application secret used by 'clientsecret' authentication
            transport: 'http' to serve Streamable HTTP, 'stdio' to use standard streams
            http_host: Interface to bind when serving HTTP
            http_port: Port to bind when serving HTTP
            http_path: Path the Streamable HTTP endpoint is served on
            stateful: Whether the transport assigns and enforces session ids
            enable_json_response: Answer requests with JSON bodies instead of SSE streams
            allowed_hosts: Host header values accepted by DNS rebinding protection
            allowed_origins: Origin header values accepted by DNS rebinding protection
            enable_dns_rebinding_protection: Turn DNS rebinding protection on
            log_level: Minimum level for log output
            logfire_write_token: Logfire project write token, empty to keep data local
        """
        if not organization_url.endswith('/'):
            organization_url += '/'

        self.organization_url = organization_url
        self.project = project
        self.authentication_type = authentication_type
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.transport = transport
        self.http_host = http_host
        self.http_port = http_port
        self.http_path = http_path
        self.stateful = stateful
        self.enable_json_response = enable_json_response
        self.allowed_hosts = allowed_hosts or []
        self.allowed_origins = allowed_origins or []
        # Supplying an allow-list implies protection should be on
        self.enable_dns_rebinding_protection = (
            enable_dns_rebinding_protection or bool(self.allowed_hosts) or bool(self.allowed_origins)
        )
        self.log_level = log_level.upper()
        self.logfire_write_token = logfire_write_token

    @property
    def session_id_generator(self) -> Optional[Callable[[], str]]:
        """Session id factory for the transport, or None to run stateless."""
        if not self.stateful:
            return None
        return lambda: str(uuid.uuid4())

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ServerConfig':
        """Build the configuration from environment variables.

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            The populated ServerConfig

        Raises:
            ValueError: If the organization or project is not configured
        """
        env = os.environ if environ is None else environ

        organization_url = env.get('AZURE_DEVOPS_ORG_URL', '').strip()
        organization = env.get('ADO_ORG', '').strip()
        if not organization_url and organization:
            organization_url = f'https://dev.azure.com/{organization}'

        project = env.get('ADO_PROJECT', '').strip()

        if not all([organization_url, project]):
            error_message = (
                'Missing required environment variables: ADO_ORG (or AZURE_DEVOPS_ORG_URL) and ADO_PROJECT'
            )
            logger.error(error_message)
            raise ValueError(error_message)

        access_token = next((env[name] for name in TOKEN_ENV_VARS if env.get(name)), None)
        authentication_type = env.get('ADO_AUTH_TYPE') or ('envvar' if access_token else 'pat')

        return cls(
            organization_url=organization_url,
            project=project,
            authentication_type=authentication_type.strip().lower(),
            access_token=access_token,
            tenant_id=env.get('ADO_TENANT_ID'),
            client_id=env.get('ADO_CLIENT_ID'),
            client_secret=env.get('ADO_CLIENT_SECRET'),
            transport=env.get('MCP_TRANSPORT', 'http').strip().lower(),
            http_host=env.get('MCP_HTTP_HOST', DEFAULT_HTTP_HOST),
            http_port=_parse_port(env.get('MCP_HTTP_PORT') or env.get('PORT')),
            http_path=env.get('MCP_HTTP_PATH') or DEFAULT_HTTP_PATH,
            stateful=parse_bool(env.get('MCP_STATEFUL')),
            enable_json_response=parse_bool(env.get('MCP_ENABLE_JSON_RESPONSE')),
            allowed_hosts=parse_csv(env.get('MCP_ALLOWED_HOSTS')),
            allowed_origins=parse_csv(env.get('MCP_ALLOWED_ORIGINS')),
            enable_dns_rebinding_protection=parse_bool(env.get('MCP_ENABLE_DNS_REBINDING_PROTECTION')),
            log_level=env.get('LOG_LEVEL', 'INFO'),
            logfire_write_token=env.get('LOGFIRE_WRITE_TOKEN', ''),
        )
