from __future__ import annotations

import logging

_NOISY_LOGGERS = ("httpx", "httpcore", "websockets.client")


def silence_httpx_logs(level: int = logging.WARNING) -> None:
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(level)
