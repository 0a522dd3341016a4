"""Credential handling for Azure DevOps requests.

Covers the two authorization schemes Azure DevOps accepts (PAT over Basic auth and
bearer tokens), parsing of inbound Authorization headers, and token providers that
pick the credential for each tool call.
"""

import base64
import binascii
import logfire
import requests
import time
from loguru import logger
from tl.ado_workitems_mcp_server.config import ServerConfig
from tl.ado_workitems_mcp_server.transport import MessageExtraInfo
from typing import Callable, Optional


PAT_AUTH_TYPES = {'envvar', 'pat'}
AZURE_DEVOPS_SCOPE = '499b84ac-1321-427f-aa17-267ca6975798/.default'
TOKEN_EXPIRY_MARGIN_SECONDS = 2 * 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

TokenProvider = Callable[[Optional[MessageExtraInfo]], str]


def resolve_auth_scheme(authentication_type: str) -> str:
    """Map an authentication type to the scheme used on outgoing requests.

    Args:
        authentication_type: Configured authentication type

    Returns:
        'pat' for personal access token types, 'bearer' for everything else
    """
    return 'pat' if authentication_type in PAT_AUTH_TYPES else 'bearer'


def format_authorization_header(token: str, scheme: str) -> str:
    """Build the Authorization header value for an Azure DevOps request."""
    if scheme == 'pat':
        encoded = base64.b64encode(f':{token}'.encode('utf-8')).decode('ascii')
        return f'Basic {encoded}'
    return f'Bearer {token}'


def parse_authorization_header(header_value: Optional[str]) -> Optional[str]:
    """Extract the credential from an inbound Authorization header.

    Bearer and PAT schemes carry the token directly. Basic credentials are decoded
    and the password part is used, since PATs are sent with an empty user name.

    Args:
        header_value: Raw header value, may be None

    Returns:
        The token, or None when the header is absent or not understood
    """
    if not header_value:
        return None

    parts = header_value.split(' ')
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None

    scheme, raw_token = parts[0].lower(), parts[1]
    if scheme in ('bearer', 'pat'):
        return raw_token.strip()
    if scheme == 'basic':
        try:
            decoded = base64.b64decode(raw_token).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError):
            return None
        _, separator, password = decoded.partition(':')
        return password if separator else decoded
    return None


class ClientSecretTokenProvider:
    """Acquires Azure DevOps access tokens with the OAuth client credentials grant."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str) -> None:
        """Initialize the provider.

        Args:
            tenant_id: Entra tenant the application is registered in
            client_id: Application (client) id
            client_secret: Application secret
        """
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self._access_token: Optional[str] = None
        self._expires_at = 0.0

    def __call__(self) -> str:
        if self._access_token and time.time() < self._expires_at - TOKEN_EXPIRY_MARGIN_SECONDS:
            return self._access_token

        token_url = f'https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token'
        response = requests.post(
            token_url,
            data={
                'grant_type': 'client_credentials',
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'scope': AZURE_DEVOPS_SCOPE,
            },
            headers={'Content-Type': 'application/x-www-form-urlencoded'},
            timeout=30,
        )

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if not response.ok or not payload.get('access_token'):
            error = payload.get('error_description') or payload.get('error') or f'HTTP {response.status_code}'
            logfire.error('Client credentials token request failed', tenant_id=self.tenant_id, error=error)
            raise RuntimeError(f'Failed to acquire OAuth access token via client credentials: {error}')

        try:
            expires_in = int(payload.get('expires_in', DEFAULT_TOKEN_LIFETIME_SECONDS))
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        if expires_in <= 0:
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS

        self._access_token = payload['access_token']
        self._expires_at = time.time() + expires_in
        logger.info(f'Acquired client credentials token valid for {expires_in} seconds')
        return self._access_token


def create_token_provider(config: ServerConfig) -> TokenProvider:
    """Create the callable that supplies a token for each Azure DevOps call.

    A token forwarded by the HTTP layer always wins. Otherwise the configured
    authentication type decides where the token comes from.

    Args:
        config: Server configuration

    Returns:
        A function taking the request's MessageExtraInfo (or None) and returning a token
    """
    client_secret_provider: Optional[ClientSecretTokenProvider] = None
    if config.authentication_type == 'clientsecret':
        if not all([config.tenant_id, config.client_id, config.client_secret]):
            raise ValueError(
                'Missing required environment variables for clientsecret authentication: '
                'ADO_TENANT_ID, ADO_CLIENT_ID and ADO_CLIENT_SECRET'
            )
        client_secret_provider = ClientSecretTokenProvider(
            config.tenant_id, config.client_id, config.client_secret
        )

    def provide_token(extra: Optional[MessageExtraInfo] = None) -> str:
        if extra is not None and extra.auth_info is not None and extra.auth_info.token:
            return extra.auth_info.token

        if config.authentication_type == 'envvar':
            if not config.access_token:
                raise ValueError('Missing ADO_MCP_AUTH_TOKEN/ADO_PAT for envvar authentication.')
            return config.access_token

        if client_secret_provider is not None:
            return client_secret_provider()

        raise ValueError('Missing Authorization header for PAT authentication.')

    return provide_token
