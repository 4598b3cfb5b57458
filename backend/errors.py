"""Exceptions raised by the ePro memory engine."""

from __future__ import annotations


class InvalidIdentifierError(ValueError):
    """Raised when a memory id is not a well-formed UUID."""


class InvalidCategoryError(ValueError):
    """Raised when a category is not one of the six known categories."""


class DimensionMismatchError(ValueError):
    """Raised when a vector width disagrees with the store's fixed dimension."""


class ConfigError(ValueError):
    """Raised when a configuration value is missing or out of range."""


class CapabilityError(RuntimeError):
    """Base class for embedding / completion backend failures."""


class EmbeddingUnavailableError(CapabilityError):
    """Raised when the embedding backend cannot produce a vector."""


class CompletionUnavailableError(CapabilityError):
    """Raised when the completion backend cannot produce a response."""
