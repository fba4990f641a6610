"""
OAuth authorization-code flow for linking Outlook and Gmail accounts.

The state parameter is base64-encoded JSON carrying the account id, so the
callback knows which account the tokens belong to.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx

from mailboard.config import OAuthClientConfig
from mailboard.errors import ConfigurationError, ProviderError

from .providers.base import ProviderType

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600

AUTHORIZE_URLS = {
    ProviderType.OUTLOOK: "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize",
    ProviderType.GMAIL: "https://accounts.google.com/o/oauth2/v2/auth",
}

TOKEN_URLS = {
    ProviderType.OUTLOOK: "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
    ProviderType.GMAIL: "https://oauth2.googleapis.com/token",
}

SCOPES = {
    ProviderType.OUTLOOK: "offline_access https://graph.microsoft.com/Mail.ReadWrite",
    ProviderType.GMAIL: "https://mail.google.com/",
}


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime


def encode_state(account_id: str) -> str:
    return base64.urlsafe_b64encode(json.dumps({'accountId': account_id}).encode()).decode()


def decode_state(state: str) -> str:
    """
    Extract the account id from a state parameter.

    Raises:
        ValueError: state is not valid base64 JSON with an accountId
    """
    try:
        data = json.loads(base64.urlsafe_b64decode(state.encode()).decode())
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid OAuth state: {e}") from e
    if not isinstance(data, dict) or not data.get('accountId'):
        raise ValueError("OAuth state carries no accountId")
    return str(data['accountId'])


class OAuthClient:
    """
    Builds authorization URLs and exchanges authorization codes for tokens.
    """

    def __init__(
        self,
        outlook: OAuthClientConfig,
        gmail: OAuthClientConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.clients = {ProviderType.OUTLOOK: outlook, ProviderType.GMAIL: gmail}
        self.timeout = timeout
        self._transport = transport

    def _client_config(self, provider: ProviderType) -> OAuthClientConfig:
        config = self.clients.get(provider)
        if config is None:
            raise ValueError(f"{provider.value} accounts do not use OAuth")
        if not config.client_id:
            raise ConfigurationError(f"{provider.value} OAuth client is not configured")
        return config

    def _redirect_uri(self, provider: ProviderType, config: OAuthClientConfig, base_url: str) -> str:
        return config.redirect_uri or f"{base_url.rstrip('/')}/api/mail/oauth/callback?provider={provider.value}"

    def authorization_url(self, provider: ProviderType, account_id: str, base_url: str) -> str:
        config = self._client_config(provider)
        params = {
            'client_id': config.client_id,
            'response_type': 'code',
            'redirect_uri': self._redirect_uri(provider, config, base_url),
            'scope': SCOPES[provider],
            'state': encode_state(account_id),
        }
        if provider == ProviderType.GMAIL:
            # Without these Google omits the refresh token
            params['access_type'] = 'offline'
            params['prompt'] = 'consent'
        return f"{AUTHORIZE_URLS[provider].format(tenant=config.tenant)}?{urlencode(params)}"

    async def exchange_code(self, provider: ProviderType, code: str, base_url: str) -> OAuthTokens:
        """
        Exchange an authorization code for access and refresh tokens.

        Raises:
            ProviderError: token endpoint failed or returned no refresh token
        """
        config = self._client_config(provider)
        data = {
            'code': code,
            'client_id': config.client_id,
            'client_secret': config.client_secret or '',
            'redirect_uri': self._redirect_uri(provider, config, base_url),
            'grant_type': 'authorization_code',
        }

        url = TOKEN_URLS[provider].format(tenant=config.tenant)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, data=data)
        except httpx.HTTPError as e:
            raise ProviderError(f"Token exchange failed: {e}", provider=provider.value) from e

        if response.status_code >= 400:
            logger.error(f"{provider.value} token exchange returned {response.status_code}")
            raise ProviderError("token_exchange_failed", provider=provider.value)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError("invalid_token_response", provider=provider.value) from e

        if not payload.get('access_token') or not payload.get('refresh_token'):
            raise ProviderError("invalid_token_response", provider=provider.value)

        expires_in = payload.get('expires_in')
        if not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN

        return OAuthTokens(
            access_token=payload['access_token'],
            refresh_token=payload['refresh_token'],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        )
