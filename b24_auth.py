"""
Credential providers for Bitrix24 REST calls.

Two providers share the AuthActions contract:

- HookAuth: an inbound webhook. The secret lives in the request path and
  never expires, so "refreshing" just hands back the same credentials.
- OAuthAuth: an OAuth 2.0 access/refresh token pair. Refreshing exchanges
  the refresh token at the authorization server; concurrent refresh
  requests share one in-flight exchange.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import requests
from oauthlib.oauth2 import OAuth2Error
from requests_oauthlib import OAuth2Session

from outcome import AuthRefreshError, MalformedWebhookError

logger = logging.getLogger(__name__)

TOKEN_URL = 'https://oauth.bitrix.info/oauth/token/'
HOOK_REFRESH_TOKEN = 'hook'


@dataclass(frozen=True)
class Credentials:
    access_token: str
    refresh_token: str
    expires_in: int
    domain: str
    member_id: str


class AuthActions(Protocol):
    def get_credentials(self) -> Credentials | bool: ...

    async def refresh_credentials(self) -> Credentials: ...

    def get_target_origin(self) -> str: ...

    def get_target_origin_with_path(self) -> str: ...


# -----------------------------------------------
# Webhook
# -----------------------------------------------

@dataclass(frozen=True)
class HookParams:
    b24_url: str
    user_id: int
    secret: str


def parse_webhook_url(url: str) -> HookParams:
    """Split ``https://{domain}/rest/{user_id}/{secret}`` into HookParams.

    A single trailing slash is accepted. Anything else that deviates from
    that shape raises MalformedWebhookError.
    """
    parsed = urlparse(url.strip())
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise MalformedWebhookError(f'Webhook URL must be http(s)://domain/...: {url!r}')
    if parsed.query or parsed.fragment:
        raise MalformedWebhookError('Webhook URL must not carry a query or fragment')

    path = parsed.path
    if path.endswith('/'):
        path = path[:-1]
    segments = path.split('/')
    # ['', 'rest', user_id, secret]
    if len(segments) != 4 or segments[0] != '' or segments[1] != 'rest':
        raise MalformedWebhookError('Webhook path must be /rest/{user_id}/{secret}')

    user_id, secret = segments[2], segments[3]
    if not user_id.isdigit() or int(user_id) <= 0:
        raise MalformedWebhookError(f'Webhook user id must be a positive integer, got {user_id!r}')
    if not secret:
        raise MalformedWebhookError('Webhook secret is missing')

    return HookParams(
        b24_url=f'{parsed.scheme}://{parsed.netloc}',
        user_id=int(user_id),
        secret=secret,
    )


class HookAuth:
    """Static webhook credentials. Never touches the network."""

    __slots__ = ('_params',)

    def __init__(self, params: HookParams):
        if not isinstance(params, HookParams):
            params = HookParams(**params)
        object.__setattr__(self, '_params', params)

    def __setattr__(self, name, value) -> None:
        raise AttributeError(f'HookAuth is immutable, cannot set {name!r}')

    def __delattr__(self, name) -> None:
        raise AttributeError(f'HookAuth is immutable, cannot delete {name!r}')

    def get_credentials(self) -> Credentials:
        b24_url = self._params.b24_url
        return Credentials(
            access_token=self._params.secret,
            refresh_token=HOOK_REFRESH_TOKEN,
            expires_in=0,
            domain=b24_url.replace('https://', '').replace('http://', ''),
            member_id='',
        )

    async def refresh_credentials(self) -> Credentials:
        return self.get_credentials()

    def get_target_origin(self) -> str:
        """Account address, e.g. https://name.bitrix24.com"""
        return self._params.b24_url

    def get_target_origin_with_path(self) -> str:
        """Account address with REST path, e.g. https://name.bitrix24.com/rest/1/xxxxx

        Contains the secret: pass through logging_utils.mask_secret before logging.
        """
        return f'{self._params.b24_url}/rest/{self._params.user_id}/{self._params.secret}'


# -----------------------------------------------
# OAuth 2.0
# -----------------------------------------------

@dataclass(frozen=True)
class OAuthParams:
    client_id: str
    client_secret: str
    refresh_token: str
    token_url: str = TOKEN_URL
    domain: str = ''
    access_token: str = ''
    expires_at: float = 0.0
    member_id: str = ''
    timeout_seconds: float = 30.0


def _domain_from_token(token: dict, fallback: str) -> str:
    # The exchange reports the oauth server as `domain`; the portal is in client_endpoint
    endpoint = token.get('client_endpoint')
    if endpoint:
        return urlparse(endpoint).netloc
    return token.get('domain') or fallback


class OAuthAuth:
    """Refreshable access token held for one Bitrix24 portal.

    ``on_refresh`` receives the raw token dict after every successful
    exchange, e.g. to persist it with save_token().
    """

    def __init__(
        self,
        params: OAuthParams,
        on_refresh: Callable[[dict], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._params = params
        self._on_refresh = on_refresh
        self._clock = clock
        self._refresh_token = params.refresh_token
        self._expires_at = params.expires_at
        self._domain = params.domain
        self._credentials: Credentials | None = None
        if params.access_token and params.domain:
            self._credentials = Credentials(
                access_token=params.access_token,
                refresh_token=params.refresh_token,
                expires_in=max(0, int(params.expires_at - clock())),
                domain=params.domain,
                member_id=params.member_id,
            )
        self._refresh_task: asyncio.Task | None = None

    @classmethod
    def from_token_file(
        cls,
        token_path: Path,
        client_id: str,
        client_secret: str,
        token_url: str = TOKEN_URL,
        timeout_seconds: float = 30.0,
    ) -> 'OAuthAuth':
        """Build a provider from a saved token, writing refreshed tokens back to the same file."""
        token = load_token(token_path)
        if token is None or not token.get('refresh_token'):
            raise AuthRefreshError(f'No usable token at {token_path}')
        params = OAuthParams(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=token['refresh_token'],
            token_url=token_url,
            domain=_domain_from_token(token, ''),
            access_token=token.get('access_token', ''),
            expires_at=float(token.get('expires_at', 0)),
            member_id=token.get('member_id', ''),
            timeout_seconds=timeout_seconds,
        )
        return cls(params, on_refresh=lambda t: save_token(t, token_path))

    def get_credentials(self) -> Credentials | bool:
        """Current credentials, or False when missing/expired and a refresh is needed."""
        if self._credentials is None or self._expires_at <= self._clock():
            return False
        return self._credentials

    async def refresh_credentials(self) -> Credentials:
        """Exchange the refresh token; callers arriving mid-exchange share its outcome.

        Raises AuthRefreshError if the exchange fails.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._refresh_task)

    def get_target_origin(self) -> str:
        return f'https://{self._domain}' if self._domain else ''

    def get_target_origin_with_path(self) -> str:
        return f'https://{self._domain}/rest' if self._domain else ''

    async def _refresh(self) -> Credentials:
        logger.info('Refreshing access token...')
        try:
            token = await asyncio.to_thread(self._fetch_token)
        except (OAuth2Error, requests.RequestException, ValueError) as e:
            logger.error(f'Token refresh failed: {e}')
            raise AuthRefreshError(f'Token refresh failed: {e}') from e

        if not token.get('access_token'):
            raise AuthRefreshError('Token response carried no access_token')

        expires_in = int(token.get('expires_in', 3600))
        self._expires_at = float(token.get('expires_at') or self._clock() + expires_in)
        self._refresh_token = token.get('refresh_token') or self._refresh_token
        self._domain = _domain_from_token(token, self._domain)
        self._credentials = Credentials(
            access_token=token['access_token'],
            refresh_token=self._refresh_token,
            expires_in=expires_in,
            domain=self._domain,
            member_id=token.get('member_id', self._credentials.member_id if self._credentials else ''),
        )
        logger.info(f'Token refreshed, expires at {self._expires_at:.0f}')

        if self._on_refresh:
            # The new credentials are already usable; a failed save must not fail the call
            try:
                self._on_refresh(token)
            except Exception:
                logger.exception('Token refresh callback failed')
        return self._credentials

    def _fetch_token(self) -> dict:
        oauth = OAuth2Session(
            self._params.client_id,
            token={'refresh_token': self._refresh_token, 'token_type': 'Bearer'},
        )
        return oauth.refresh_token(
            self._params.token_url,
            refresh_token=self._refresh_token,
            client_id=self._params.client_id,
            client_secret=self._params.client_secret,
            timeout=self._params.timeout_seconds,
        )


def load_token(token_path: Path) -> dict | None:
    """Load a saved OAuth token, if it exists."""
    if token_path.exists():
        logger.info('Loading token...')
        with open(token_path, 'r') as f:
            return json.load(f)
    return None


def save_token(token: dict, token_path: Path) -> None:
    """Save an OAuth token to a file."""
    logger.info('Saving token...')
    with open(token_path, 'w') as f:
        json.dump(dict(token), f)
    logger.info('Token saved')
