from __future__ import annotations


class UpstreamUnavailable(RuntimeError):
    """Network failure, timeout, or non-2xx response from a third-party API."""


class DecodeError(ValueError):
    """Upstream payload could not be parsed as the declared feed kind."""


class ConfigError(ValueError):
    pass
