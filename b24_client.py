"""
Client facade: one credential provider plus one dispatcher per account.
"""

import logging
from collections.abc import AsyncIterator, Mapping

from b24_auth import AuthActions, HookAuth, HookParams, OAuthAuth, OAuthParams, parse_webhook_url
from b24_http import DEFAULT_USER_AGENT, B24Http
from logging_utils import ChannelLogger, mask_secret
from outcome import CallOutcome, NotInitializedError
from rate_limiter import RestrictionParams

logger = logging.getLogger(__name__)

CLIENT_SIDE_WARNING_MESSAGE = (
    'It is not safe to use hook requests on the client side: '
    'the webhook secret grants full REST access to the account'
)


class B24Client:
    """Entry point for calling one Bitrix24 account.

    Build it from a webhook URL or OAuth parameters and use it as an async
    context manager::

        async with B24Client.from_webhook_url(url) as b24:
            outcome = await b24.call('crm.deal.list', {'select': ['ID']})
    """

    _is_init = False

    def __init__(
        self,
        auth: AuthActions,
        restriction_params: RestrictionParams | None = None,
        logger: ChannelLogger | None = None,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client_side_warning: bool = True,
        client_side_warning_message: str = CLIENT_SIDE_WARNING_MESSAGE,
    ):
        self._auth = auth
        self._http = B24Http(
            auth,
            restriction_params=restriction_params,
            logger=logger,
            timeout_seconds=timeout_seconds,
            user_agent=user_agent,
        )
        # Only a static webhook exposes a long-lived secret
        if isinstance(auth, HookAuth) and client_side_warning:
            self._http.set_client_side_warning(True, client_side_warning_message)
        self._is_init = True

    @classmethod
    def from_hook_params(cls, params: HookParams, **kwargs) -> 'B24Client':
        return cls(HookAuth(params), **kwargs)

    @classmethod
    def from_webhook_url(cls, url: str, **kwargs) -> 'B24Client':
        """Build a client from ``https://{domain}/rest/{user_id}/{secret}``.

        Raises MalformedWebhookError for any other shape.
        """
        params = parse_webhook_url(url)
        logger.info(f'Webhook client for {mask_secret(url)}')
        return cls.from_hook_params(params, **kwargs)

    @classmethod
    def from_oauth(cls, params: OAuthParams, on_refresh=None, **kwargs) -> 'B24Client':
        return cls(OAuthAuth(params, on_refresh=on_refresh), **kwargs)

    async def __aenter__(self) -> 'B24Client':
        await self._http.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self._http.close()

    @property
    def auth(self) -> AuthActions:
        self._ensure_initialized()
        return self._auth

    @property
    def is_init(self) -> bool:
        return self._is_init

    def get_http_client(self) -> B24Http:
        self._ensure_initialized()
        return self._http

    def set_logger(self, logger: ChannelLogger | None) -> None:
        self.get_http_client().set_logger(logger)

    def off_client_side_warning(self) -> None:
        """Disable the warning about running webhook requests from client code."""
        self.get_http_client().set_client_side_warning(False, '')

    def get_target_origin(self) -> str:
        """Account address, e.g. https://name.bitrix24.com"""
        self._ensure_initialized()
        return self._auth.get_target_origin()

    def get_target_origin_with_path(self) -> str:
        """Account address with REST path, e.g. https://name.bitrix24.com/rest/1/xxxxx"""
        self._ensure_initialized()
        return self._auth.get_target_origin_with_path()

    async def call(self, method: str, params: Mapping | None = None) -> CallOutcome:
        return await self.get_http_client().dispatch(method, params)

    async def batch(self, calls, halt_on_error: bool = False) -> CallOutcome:
        return await self.get_http_client().batch(calls, halt_on_error)

    async def call_list_method(
        self, method: str, params: Mapping | None = None, item_key: str | None = None,
    ) -> CallOutcome:
        return await self.get_http_client().call_list_method(method, params, item_key)

    def fetch_list_method(
        self, method: str, params: Mapping | None = None, item_key: str | None = None,
    ) -> AsyncIterator[CallOutcome]:
        return self.get_http_client().fetch_list_method(method, params, item_key)

    def _ensure_initialized(self) -> None:
        if not self._is_init:
            raise NotInitializedError('B24Client is not initialized')
