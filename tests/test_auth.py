import base64
import json
import pytest
import requests
from tl.ado_workitems_mcp_server import auth
from tl.ado_workitems_mcp_server.auth import (
    ClientSecretTokenProvider,
    create_token_provider,
    format_authorization_header,
    parse_authorization_header,
    resolve_auth_scheme,
)
from tl.ado_workitems_mcp_server.config import ServerConfig
from tl.ado_workitems_mcp_server.transport import AuthInfo, MessageExtraInfo
from unittest.mock import patch


def make_config(**kwargs):
    return ServerConfig('https://dev.azure.com/contoso', 'Fabrikam', **kwargs)


def token_response(payload, status_code=200):
    response = requests.Response()
    response.status_code = status_code
    response.encoding = 'utf-8'
    response._content = json.dumps(payload).encode('utf-8')
    return response


@pytest.mark.parametrize(
    'authentication_type, scheme',
    [('pat', 'pat'), ('envvar', 'pat'), ('bearer', 'bearer'), ('clientsecret', 'bearer')],
)
def test_resolve_auth_scheme(authentication_type, scheme):
    assert resolve_auth_scheme(authentication_type) == scheme


def test_format_authorization_header():
    assert format_authorization_header('secret', 'pat') == 'Basic ' + base64.b64encode(b':secret').decode()
    assert format_authorization_header('secret', 'bearer') == 'Bearer secret'


@pytest.mark.parametrize(
    'header, token',
    [
        ('Bearer abc', 'abc'),
        ('bearer abc', 'abc'),
        ('PAT xyz', 'xyz'),
        ('Basic ' + base64.b64encode(b':my-pat').decode(), 'my-pat'),
        ('Basic ' + base64.b64encode(b'user:pass:word').decode(), 'pass:word'),
        ('Basic ' + base64.b64encode(b'nocolon').decode(), 'nocolon'),
        ('Basic !!!not-base64', None),
        ('Digest abc', None),
        ('Bearer', None),
        ('', None),
        (None, None),
    ],
)
def test_parse_authorization_header(header, token):
    assert parse_authorization_header(header) == token


def test_forwarded_token_takes_precedence():
    provide_token = create_token_provider(make_config(authentication_type='envvar', access_token='env'))

    assert provide_token(MessageExtraInfo(auth_info=AuthInfo('forwarded'))) == 'forwarded'
    assert provide_token(MessageExtraInfo()) == 'env'
    assert provide_token(None) == 'env'


def test_envvar_without_token_fails():
    provide_token = create_token_provider(make_config(authentication_type='envvar'))

    with pytest.raises(ValueError, match='Missing ADO_MCP_AUTH_TOKEN/ADO_PAT'):
        provide_token(None)


def test_pat_without_forwarded_token_fails():
    provide_token = create_token_provider(make_config(authentication_type='pat', access_token='ignored'))

    with pytest.raises(ValueError, match='Missing Authorization header for PAT authentication.'):
        provide_token(None)


def test_clientsecret_requires_credentials():
    with pytest.raises(ValueError, match='ADO_TENANT_ID, ADO_CLIENT_ID and ADO_CLIENT_SECRET'):
        create_token_provider(make_config(authentication_type='clientsecret', tenant_id='t'))


def test_clientsecret_provider_is_used_without_forwarded_token():
    config = make_config(
        authentication_type='clientsecret', tenant_id='t', client_id='c', client_secret='s'
    )
    with patch.object(auth.requests, 'post', return_value=token_response({'access_token': 'aad'})):
        provide_token = create_token_provider(config)

        assert provide_token(None) == 'aad'
        assert provide_token(MessageExtraInfo(auth_info=AuthInfo('forwarded'))) == 'forwarded'


def test_client_secret_token_is_cached():
    provider = ClientSecretTokenProvider('tenant', 'client', 'secret')
    response = token_response({'access_token': 'aad-token', 'expires_in': 3600})

    with patch.object(auth.requests, 'post', return_value=response) as post:
        assert provider() == 'aad-token'
        assert provider() == 'aad-token'

    post.assert_called_once()
    url = post.call_args.args[0]
    assert url == 'https://login.microsoftonline.com/tenant/oauth2/v2.0/token'
    assert post.call_args.kwargs['data'] == {
        'grant_type': 'client_credentials',
        'client_id': 'client',
        'client_secret': 'secret',
        'scope': '499b84ac-1321-427f-aa17-267ca6975798/.default',
    }


def test_client_secret_token_refreshed_near_expiry():
    provider = ClientSecretTokenProvider('tenant', 'client', 'secret')
    responses = [
        token_response({'access_token': 'first', 'expires_in': 60}),
        token_response({'access_token': 'second', 'expires_in': 3600}),
    ]

    with patch.object(auth.requests, 'post', side_effect=responses) as post:
        assert provider() == 'first'
        assert provider() == 'second'

    assert post.call_count == 2


@pytest.mark.parametrize('expires_in', ['soon', 0, -5, None])
def test_client_secret_invalid_lifetime_uses_default(expires_in):
    provider = ClientSecretTokenProvider('tenant', 'client', 'secret')
    response = token_response({'access_token': 'aad', 'expires_in': expires_in})

    with patch.object(auth.requests, 'post', return_value=response), patch.object(
        auth.time, 'time', return_value=1000.0
    ):
        provider()

    assert provider._expires_at == 1000.0 + auth.DEFAULT_TOKEN_LIFETIME_SECONDS


def test_client_secret_failure_raises():
    provider = ClientSecretTokenProvider('tenant', 'client', 'secret')
    response = token_response(
        {'error': 'invalid_client', 'error_description': 'AADSTS7000215: Invalid client secret'},
        status_code=401,
    )

    with patch.object(auth.requests, 'post', return_value=response):
        with pytest.raises(RuntimeError, match='AADSTS7000215: Invalid client secret'):
            provider()
