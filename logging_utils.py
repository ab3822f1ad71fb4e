import logging
import re
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(log_name: str = 'b24_rest', verbose_console_logging: bool = True) -> logging.Logger:
    """Set up logging with both file and console handlers.

    Args:
        log_name: Name for the logger (also used as log filename)
        verbose_console_logging: If True, console shows INFO level; if False, shows WARNING level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(log_name)

    # Guard against adding duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)

    log_dir = Path(__file__).parent / 'logs'
    log_dir.mkdir(exist_ok=True)

    file_formatter = logging.Formatter('%(asctime)s|%(name)s|%(levelname)s|%(funcName)s|%(lineno)d|%(message)s')
    file_handler = RotatingFileHandler(
        log_dir / log_name,
        maxBytes=1024 * 1024,  # 1 MB
        backupCount=5,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    console_formatter = logging.Formatter('%(levelname)s|%(message)s')
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO if verbose_console_logging else logging.WARNING)
    console_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


class LoggerType(str, Enum):
    desktop = 'desktop'
    log = 'log'
    info = 'info'
    warn = 'warn'
    error = 'error'
    trace = 'trace'


_CHANNEL_LEVELS = {
    LoggerType.desktop: logging.INFO,
    LoggerType.log: logging.INFO,
    LoggerType.info: logging.INFO,
    LoggerType.warn: logging.WARNING,
    LoggerType.error: logging.ERROR,
    LoggerType.trace: logging.DEBUG,
}


class ChannelLogger:
    """Logger with independently switchable channels.

    Each channel forwards to a stdlib logger at a fixed level. Channels
    start disabled unless a config mapping turns them on::

        logger = ChannelLogger('b24_rest', {LoggerType.warn: True, 'error': True})
        logger.warn('slow down', '29.0000 from 30')
    """

    def __init__(self, name: str = 'b24_rest', config: dict | None = None):
        self._logger = logging.getLogger(name)
        self._config = {channel: False for channel in LoggerType}
        if config:
            self.set_config(config)

    @property
    def name(self) -> str:
        return self._logger.name

    def set_config(self, config: dict) -> None:
        """Enable/disable channels. Keys are LoggerType members or their names."""
        for key, enabled in config.items():
            self._config[LoggerType(key)] = bool(enabled)

    def is_enabled(self, channel: LoggerType | str) -> bool:
        return self._config[LoggerType(channel)]

    def enable(self, channel: LoggerType | str) -> None:
        self._config[LoggerType(channel)] = True

    def disable(self, channel: LoggerType | str) -> None:
        self._config[LoggerType(channel)] = False

    def desktop(self, *params) -> None:
        self._emit(LoggerType.desktop, params)

    def log(self, *params) -> None:
        self._emit(LoggerType.log, params)

    def info(self, *params) -> None:
        self._emit(LoggerType.info, params)

    def warn(self, *params) -> None:
        self._emit(LoggerType.warn, params)

    def error(self, *params) -> None:
        self._emit(LoggerType.error, params)

    def trace(self, *params) -> None:
        self._emit(LoggerType.trace, params)

    def _emit(self, channel: LoggerType, params: tuple) -> None:
        if not self._config[channel]:
            return
        self._logger.log(_CHANNEL_LEVELS[channel], ' '.join(str(p) for p in params))


_WEBHOOK_SECRET = re.compile(r'(/rest/\d+/)([^/?#]+)')


def mask_secret(url: str) -> str:
    """Hide the secret segment of a webhook address before it is logged."""
    return _WEBHOOK_SECRET.sub(lambda m: m.group(1) + '*' * 6, url)
