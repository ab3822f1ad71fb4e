"""
Async leaky bucket throttle for Bitrix24 REST requests.

Every admitted call adds one unit of load; load drains continuously at
`speed` units per millisecond of wall-clock time. While the load is at
`amount`, callers sleep `sleep` milliseconds and check again.

Bitrix24 tracks request intensity per account and per source IP, so one
RestrictionManager should be shared by everything talking to one account.
See https://apidocs.bitrix24.com/limits.html
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from logging_utils import ChannelLogger


def _now_ms() -> float:
    # Wall clock, so time spent suspended still drains the bucket
    return time.time() * 1000


@dataclass(frozen=True)
class RestrictionParams:
    amount: float = 30
    speed: float = 0.001
    sleep: float = 1000


class RestrictionManager:
    """Leaky bucket admission control for async code.

    There is no lock: the decay/check/increment sequence in ``check()``
    contains no await, so it runs as one step on the event loop. Waiting
    callers are not queued and may be admitted out of request order.
    """

    def __init__(
        self,
        params: RestrictionParams | None = None,
        logger: ChannelLogger | None = None,
        clock: Callable[[], float] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._params = params or RestrictionParams()
        self._logger = logger
        self._clock = clock
        self._sleep = sleep
        self._current_amount = 0.0
        self._last_decrement: float | None = None

    @property
    def params(self) -> RestrictionParams:
        return self._params

    @property
    def current_amount(self) -> float:
        """Load as of now, with decay since the last check applied."""
        if self._last_decrement is None:
            return self._current_amount
        # A wall clock stepping backwards must not add load
        elapsed = max(0.0, self._clock() - self._last_decrement)
        return max(0.0, self._current_amount - elapsed * self._params.speed)

    def set_logger(self, logger: ChannelLogger | None) -> None:
        self._logger = logger

    async def check(self, hash: str = '') -> None:
        """Wait until the bucket has room, then take one unit of load.

        Loops until admitted; cancel the awaiting task to give up.
        """
        if self._try_admit():
            self._log('log', f'>> no sleep >>> {hash}')
            return

        while True:
            self._log('info', f'>> go sleep >>> {hash}')
            await self._sleep(self._params.sleep / 1000)
            if self._try_admit():
                self._log('info', f'<< stop sleep <<< {hash}')
                return

    def _try_admit(self) -> bool:
        self._decrement()
        if self._current_amount < self._params.amount:
            self._current_amount += 1
            return True
        return False

    def _decrement(self) -> None:
        now = self._clock()
        if self._last_decrement is not None:
            elapsed = max(0.0, now - self._last_decrement)
            self._current_amount = max(0.0, self._current_amount - elapsed * self._params.speed)
        self._last_decrement = now

    def _status(self) -> str:
        return f'{self._current_amount:.4f} from {self._params.amount}'

    def _log(self, channel: str, message: str) -> None:
        if self._logger is None:
            return
        getattr(self._logger, channel)(message, self._status())
