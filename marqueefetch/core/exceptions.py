"""
Pipeline exceptions.
Provider errors never escape the fallback loop; they only travel from an
adapter to the worker that drives it.
"""


class MarqueeFetchError(Exception):
    """Base exception for scrape pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ProviderError(MarqueeFetchError):
    """Raised by an adapter when a remote lookup or download fails."""

    def __init__(self, provider_name: str, message: str):
        self.provider_name = provider_name
        super().__init__(f"{provider_name}: {message}")


class ProviderConfigError(ProviderError):
    """Raised when an adapter is missing credentials or cannot handle a system."""


class PipelineClosedError(MarqueeFetchError):
    """Raised when work is submitted after the pipeline has shut down."""

    def __init__(self, message: str = "Scrape pipeline is shut down."):
        super().__init__(message)
