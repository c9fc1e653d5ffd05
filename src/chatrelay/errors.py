from __future__ import annotations


class RelayError(Exception):
    kind = "RelayError"


class AuthError(RelayError):
    kind = "AuthError"


class AlreadyRunning(RelayError):
    kind = "AlreadyRunning"


class NotRunning(RelayError):
    kind = "NotRunning"


class RateLimited(RelayError):
    kind = "RateLimited"

    def __init__(self, message: str = "rate limited", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConfigError(RelayError):
    kind = "ConfigError"


class NetworkError(RelayError):
    kind = "NetworkError"


class ChannelNotFound(RelayError):
    kind = "ChannelNotFound"


class ChatCompletionError(RelayError):
    kind = "ChatCompletionError"

