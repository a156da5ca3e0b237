"""Exception types shared by the services, tools and the dialogue engine.

Argument validation failures are plain ``pydantic.ValidationError``s raised
by the tool argument models.
"""


class ConfigurationError(RuntimeError):
    """Required process-level configuration is missing. Fatal at startup."""


class CollaboratorError(RuntimeError):
    """An external service (RPC node, DEX aggregator, news feed, chat API) failed."""

    def __init__(self, service: str, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(f"[{service}] {message}")
        self.service = service
        self.cause = cause


class AccountNotFoundError(LookupError):
    """The session has no usable account (or no generated key to deploy)."""


class ToolNotFoundError(LookupError):
    """The model requested a tool that is not registered."""
