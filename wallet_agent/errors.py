"""Error taxonomy for the orchestration core.

Library layers raise these; only the orchestrator boundary (and the HTTP
layer on top of it) turns them into user-facing text.
"""

from typing import Optional


class WalletAgentError(Exception):
    """Base class for every error raised by the wallet agent."""
    pass


class ProtocolError(WalletAgentError):
    """Malformed or unusable action descriptor from the model. Never retried."""
    pass


class UpstreamError(WalletAgentError):
    """Non-2xx status or transport failure from the explorer API."""

    def __init__(self, message: str, *, url: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code

    def __str__(self) -> str:
        detail = []
        if self.status_code is not None:
            detail.append(f"status={self.status_code}")
        if self.url:
            detail.append(f"url={self.url}")
        base = super().__str__()
        return f"{base} ({', '.join(detail)})" if detail else base


class ExecutionError(WalletAgentError):
    """Generated code could not be run, or exited non-zero."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None,
                 stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class ModelError(WalletAgentError):
    """Language-model call failed or returned no text."""
    pass
