class ResolveInputError(ValueError):
    """Resolution request is missing or has malformed identifiers."""


class ExtractionError(Exception):
    """A provider could not yield a manifest URL for a target."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider}: {reason}")


class OriginFetchError(Exception):
    """Every header strategy failed at transport level for an upstream URL."""


class BlockedTargetError(ValueError):
    """Proxy target rejected before any outbound request was made."""

    def __init__(self, reason: str, *, status_code: int = 403) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)
