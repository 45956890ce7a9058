from typing import Optional


class GatewayError(RuntimeError):
    """Base class for failures talking to the release server or the sync controller."""

    engine = "gateway"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class OctopusApiError(GatewayError):
    engine = "octopus"


class ArgoCDApiError(GatewayError):
    engine = "argocd"


class TerminalError(GatewayError):
    """An error that no retry schedule will retry."""


class ConfigurationError(TerminalError):
    """A project, lifecycle, channel or environment is misconfigured for release creation."""
