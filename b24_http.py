"""
Bitrix24 REST dispatcher - every outbound REST call goes through here.

B24Http combines a credential provider with the leaky bucket throttle:
each call waits for admission, is POSTed to the provider's base address,
gets one refresh-and-retry on an expired token, and comes back as a
Success or Failure value.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping
from urllib.parse import urlencode

import aiohttp

from b24_auth import HOOK_REFRESH_TOKEN, AuthActions, Credentials
from logging_utils import ChannelLogger
from outcome import AuthRefreshError, CallOutcome, Failure, FailureKind, Success
from rate_limiter import RestrictionManager, RestrictionParams

logger = logging.getLogger(__name__)

EXPIRED_TOKEN_ERRORS = frozenset({'expired_token', 'invalid_token'})
QUERY_LIMIT_ERROR = 'QUERY_LIMIT_EXCEEDED'
MAX_BATCH_COMMANDS = 50
DEFAULT_USER_AGENT = 'b24-rest-client/0.1.0'


def build_query(params: Mapping, prefix: str = '') -> str:
    """Encode nested params the way PHP's http_build_query does.

    ``{'filter': {'>ID': 5}, 'select': ['ID']}`` becomes
    ``filter%5B%3EID%5D=5&select%5B0%5D=ID``. None values are dropped and
    booleans become 1/0.
    """
    return urlencode(list(_flatten(params, prefix)))


def _flatten(value, prefix: str):
    items = enumerate(value) if isinstance(value, (list, tuple)) else value.items()
    for key, item in items:
        name = f'{prefix}[{key}]' if prefix else str(key)
        if isinstance(item, (dict, list, tuple)):
            yield from _flatten(item, name)
        elif item is None:
            continue
        elif isinstance(item, bool):
            yield name, '1' if item else '0'
        else:
            yield name, str(item)


def _as_dict(value) -> dict:
    # PHP serializes empty or sequentially keyed arrays as JSON lists
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {str(i): v for i, v in enumerate(value)}
    return {}


def error_to_failure(error: dict, status: int | None = None) -> Failure:
    """Classify a remote ``{"error": ..., "error_description": ...}`` object."""
    code = str(error.get('error', ''))
    description = error.get('error_description') or code
    if code in EXPIRED_TOKEN_ERRORS:
        kind = FailureKind.AUTH_EXPIRED
    elif code == QUERY_LIMIT_ERROR:
        kind = FailureKind.RATE_LIMITED
    elif status is not None and status >= 500:
        kind = FailureKind.REMOTE_ERROR
    else:
        kind = FailureKind.REMOTE_VALIDATION
    return Failure(kind, f'{code}: {description}' if code != description else code, error, status)


class B24Http:
    """Throttled, authenticated REST dispatcher for one Bitrix24 account.

    Use as an async context manager to ensure the session is properly closed::

        async with B24Http(HookAuth(params)) as http:
            outcome = await http.dispatch('crm.deal.get', {'id': 1})
    """

    def __init__(
        self,
        auth: AuthActions,
        restriction_params: RestrictionParams | None = None,
        logger: ChannelLogger | None = None,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._auth = auth
        self._logger = logger
        self._restriction_manager = RestrictionManager(restriction_params, logger)
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._headers = {
            'Accept': 'application/json',
            'User-Agent': user_agent,
        }
        self._client_side_warning = False
        self._client_side_warning_message = ''
        self._client_side_warned = False
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> 'B24Http':
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def restriction_manager(self) -> RestrictionManager:
        return self._restriction_manager

    def set_logger(self, logger: ChannelLogger | None) -> None:
        self._logger = logger
        self._restriction_manager.set_logger(logger)

    def get_logger(self) -> ChannelLogger | None:
        return self._logger

    def set_client_side_warning(self, value: bool, message: str) -> None:
        """Toggle the one-time warning about shipping a webhook secret in client code."""
        self._client_side_warning = value
        self._client_side_warning_message = message
        self._client_side_warned = False

    # -----------------------------------------------
    # Single call
    # -----------------------------------------------

    async def dispatch(self, method: str, params: Mapping | None = None) -> CallOutcome:
        """Perform one REST call.

        An expired/invalid token triggers one credential refresh and one
        retry; a second expiry is returned as Failure(AUTH_EXPIRED).
        Nothing else is retried here.
        """
        outcome = await self._attempt(method, params)
        if not _is_expired(outcome):
            return outcome

        self._log('info', f'{method}: token expired, refreshing')
        try:
            await self._auth.refresh_credentials()
        except AuthRefreshError as e:
            return Failure(FailureKind.AUTH_UNAVAILABLE, str(e))

        return await self._attempt(method, params)

    async def _attempt(self, method: str, params: Mapping | None) -> CallOutcome:
        credentials = self._auth.get_credentials()
        if credentials is False:
            try:
                credentials = await self._auth.refresh_credentials()
            except AuthRefreshError as e:
                return Failure(FailureKind.AUTH_UNAVAILABLE, str(e))

        base_url = self._auth.get_target_origin_with_path()
        if not base_url:
            return Failure(FailureKind.AUTH_UNAVAILABLE, 'Credential provider has no target address')

        self._warn_client_side()
        await self._restriction_manager.check(method)

        request_id = uuid.uuid4().hex
        body = self._prepare_params(params, credentials)
        headers = {**self._headers, 'X-Request-ID': request_id}
        self._log('trace', f'{method} [{request_id}] ->', body.keys() - {'auth'})

        session = self._ensure_session()
        try:
            async with session.post(
                f'{base_url}/{method}',
                json=body,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                status = response.status
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    self._log('error', f'{method} [{request_id}] undecodable body, HTTP {status}')
                    return Failure(FailureKind.MALFORMED, f'Response is not JSON (HTTP {status})', status=status)
        except asyncio.TimeoutError:
            self._log('error', f'{method} [{request_id}] timed out')
            return Failure(FailureKind.TRANSPORT, f'{method} timed out after {self._timeout.total}s')
        except aiohttp.ClientError as e:
            self._log('error', f'{method} [{request_id}] transport error: {e}')
            return Failure(FailureKind.TRANSPORT, str(e) or type(e).__name__)

        outcome = self._to_outcome(status, data)
        if isinstance(outcome, Failure):
            self._log('error', f'{method} [{request_id}] <-', outcome)
        else:
            self._log('trace', f'{method} [{request_id}] <- HTTP {status}')
        return outcome

    @staticmethod
    def _prepare_params(params: Mapping | None, credentials: Credentials) -> dict:
        body = dict(params or {})
        # Webhook secrets travel in the path; OAuth tokens go in the body
        if credentials.refresh_token != HOOK_REFRESH_TOKEN:
            body['auth'] = credentials.access_token
        return body

    @staticmethod
    def _to_outcome(status: int, data) -> CallOutcome:
        if not isinstance(data, dict):
            return Failure(FailureKind.MALFORMED, 'Response is not a JSON object', status=status)
        if 'error' in data:
            return error_to_failure(data, status)
        if 'result' in data:
            return Success(
                payload=data['result'],
                total=data.get('total'),
                next=data.get('next'),
                time=data.get('time'),
            )
        kind = FailureKind.REMOTE_ERROR if status >= 500 else FailureKind.MALFORMED
        return Failure(kind, f'Response has neither result nor error (HTTP {status})', data, status)

    # -----------------------------------------------
    # Batch
    # -----------------------------------------------

    async def batch(
        self,
        calls: Mapping[str, tuple[str, Mapping]] | Iterable[tuple[str, Mapping]],
        halt_on_error: bool = False,
    ) -> CallOutcome:
        """Run up to 50 calls in one ``batch`` request.

        ``calls`` is a mapping ``key -> (method, params)`` or a sequence of
        ``(method, params)`` keyed by position. Returns Success whose payload
        maps each key to that command's own Success/Failure.
        """
        items = list(calls.items()) if isinstance(calls, Mapping) else list(enumerate(calls))
        if len(items) > MAX_BATCH_COMMANDS:
            raise ValueError(f'batch accepts at most {MAX_BATCH_COMMANDS} commands, got {len(items)}')
        if not items:
            return Success(payload={})

        cmd = {}
        for key, (method, params) in items:
            cmd[str(key)] = f'{method}?{build_query(params)}' if params else method

        outcome = await self.dispatch('batch', {'halt': 1 if halt_on_error else 0, 'cmd': cmd})
        if isinstance(outcome, Failure):
            return outcome
        if not isinstance(outcome.payload, dict):
            return Failure(FailureKind.MALFORMED, 'batch result is not an object', {'result': outcome.payload})

        payload = outcome.payload
        results = _as_dict(payload.get('result'))
        errors = _as_dict(payload.get('result_error'))
        totals = _as_dict(payload.get('result_total'))
        nexts = _as_dict(payload.get('result_next'))
        times = _as_dict(payload.get('result_time'))

        combined: dict = {}
        first_failure: Failure | None = None
        for key, _ in items:
            skey = str(key)
            if skey in errors:
                error = errors[skey] if isinstance(errors[skey], dict) else {'error': str(errors[skey])}
                combined[key] = error_to_failure(error)
                first_failure = first_failure or combined[key]
            elif skey in results:
                combined[key] = Success(
                    payload=results[skey],
                    total=totals.get(skey),
                    next=nexts.get(skey),
                    time=times.get(skey),
                )

        if halt_on_error and first_failure is not None:
            return Failure(FailureKind.REMOTE_VALIDATION, first_failure.message, payload)
        return Success(payload=combined, time=outcome.time)

    # -----------------------------------------------
    # List methods
    # -----------------------------------------------

    async def fetch_list_method(
        self,
        method: str,
        params: Mapping | None = None,
        item_key: str | None = None,
    ) -> AsyncIterator[CallOutcome]:
        """Yield one outcome per page of a ``*.list`` method, following ``next``.

        Each Success payload is that page's list of items. Iteration stops
        after the last page or after the first Failure, which is yielded.
        """
        start = 0
        while True:
            outcome = await self.dispatch(method, {**(params or {}), 'start': start})
            if isinstance(outcome, Failure):
                yield outcome
                return

            items = outcome.payload
            if item_key is not None:
                items = items.get(item_key) if isinstance(items, dict) else None
            if not isinstance(items, list):
                yield Failure(FailureKind.MALFORMED, f'{method} page at start={start} has no item list',
                              {'result': outcome.payload})
                return

            yield Success(payload=items, total=outcome.total, next=outcome.next, time=outcome.time)

            if outcome.next is None:
                return
            start = int(outcome.next)

    async def call_list_method(
        self,
        method: str,
        params: Mapping | None = None,
        item_key: str | None = None,
    ) -> CallOutcome:
        """Collect every page of a ``*.list`` method into one Success."""
        collected: list = []
        total = None
        async for page in self.fetch_list_method(method, params, item_key):
            if isinstance(page, Failure):
                return page
            if total is None:
                total = page.total
            collected.extend(page.payload)
        return Success(payload=collected, total=total)

    # -----------------------------------------------
    # Helpers
    # -----------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _warn_client_side(self) -> None:
        if self._client_side_warning and not self._client_side_warned:
            self._client_side_warned = True
            logger.warning(self._client_side_warning_message)

    def _log(self, channel: str, *params) -> None:
        if self._logger is None:
            return
        getattr(self._logger, channel)(*params)


def _is_expired(outcome: CallOutcome) -> bool:
    return isinstance(outcome, Failure) and outcome.kind is FailureKind.AUTH_EXPIRED
