"""
Error taxonomy for the retrieval engine.

Only InvalidConfigurationError is meant to reach callers; the other types are
raised by adapters and recovered inside the engine.
"""


class RetrievalError(Exception):
    """Base class for retrieval engine errors."""


class ProviderUnavailableError(RetrievalError):
    """The embedding generator or similarity provider failed or timed out."""


class CorpusLoadError(RetrievalError):
    """The document corpus provider could not load a tenant's documents."""

    def __init__(self, tenant_id: str, message: str) -> None:
        super().__init__(f"Failed to load corpus for tenant {tenant_id}: {message}")
        self.tenant_id = tenant_id


class InvalidConfigurationError(RetrievalError, ValueError):
    """A weight, threshold or constant is outside its valid range."""


class CacheBackendError(RetrievalError):
    """The shared cache tier is unreachable or returned garbage."""
