"""Exception taxonomy for the retrieval core.

External-call failures are wrapped once, at the adapter that made the call,
and chained to the original exception. Nothing in the core retries.
An empty retrieval result is not an error and has no exception here.
"""


class SiteChatError(Exception):
    """Base class for all errors raised by the site chatbot core."""


class ConfigurationError(SiteChatError):
    """Runtime configuration is inconsistent or unusable."""


class DependencyUnavailableError(SiteChatError):
    """An external collaborator (embedding model, vector DB) cannot serve the request."""


class EmbeddingProviderError(DependencyUnavailableError):
    """The embedding provider failed, timed out, or returned an unusable vector."""


class VectorStoreError(DependencyUnavailableError):
    """The vector database failed, timed out, or rejected an operation."""


class IndexRebuildInProgressError(SiteChatError):
    """A sparse index rebuild was requested while another one is running."""


class AnswerGenerationError(DependencyUnavailableError):
    """The language model failed, timed out, or returned no answer."""
