"""Exception types shared by the gateway adapters, session store and initializer."""


from typing import Optional


class GatewayError(RuntimeError):
    """A call to an external provider failed and should not be repeated as-is."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Network failure, timeout or 5xx from the email provider or an LLM backend."""


class GatewayNotConfigured(GatewayError):
    """The provider credentials are missing from the environment."""


class ContentGenerationError(RuntimeError):
    """No usable text came back from the content generator."""


class CapExceeded(Exception):
    """Raised when a session is already at its exchange cap."""

    def __init__(self, session_id: str, max_exchanges: int):
        super().__init__(f"Session {session_id} already reached {max_exchanges} exchanges")
        self.session_id = session_id
        self.max_exchanges = max_exchanges


class PartialInitializationFailure(RuntimeError):
    """Demo initialization stopped before both inboxes existed; no session was recorded."""
