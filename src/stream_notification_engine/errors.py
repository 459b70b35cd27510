from __future__ import annotations

from collections.abc import Iterable


class StreamEngineError(Exception):
    """Base class for errors raised by the event plane."""


class EventValidationError(StreamEngineError, ValueError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class ContractError(StreamEngineError):
    def __init__(self, message: str, missing: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


class ConfigError(StreamEngineError):
    def __init__(self, message: str, remediation: str | None = None) -> None:
        text = message if remediation is None else f"{message}. {remediation}"
        super().__init__(text)
        self.remediation = remediation


class TransportError(StreamEngineError):
    pass


class DispatchError(StreamEngineError):
    pass
