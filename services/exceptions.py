"""
Error taxonomy shared by the precompute and recommendation paths.
"""


class RecommendationError(Exception):
    """Base exception for the project."""


class ValidationError(RecommendationError):
    """Raised when a request is missing required fields or carries malformed values."""


class NotFoundError(RecommendationError):
    """Raised when none of the requested source products exist."""


class OracleError(RecommendationError):
    """Raised by a ranking oracle backend on network errors, non-2xx responses or empty output."""


class OracleConfigurationError(OracleError):
    """Raised when no oracle backend can be resolved from configuration."""


class CatalogNotFoundError(RecommendationError):
    """Raised when the product catalog for a shop cannot be loaded."""


class LockTimeoutError(RecommendationError):
    """Raised when the per-shop precompute lock cannot be acquired in time."""
