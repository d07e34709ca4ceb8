"""Contains all models commonly used across different modules."""
from enum import Enum


class RouteClass(str, Enum):
    """Bucket policy classes a request path can fall into."""
    DEFAULT = "default"
    LOGIN = "login"


class FailureReason(str, Enum):
    """Why a credential check failed. Only ever logged, never returned to clients."""

    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    MISSING_IDENTIFIER = "missing_identifier"
    INACTIVE = "inactive"


class IdentifierType(str, Enum):
    """Kinds of identifiers a principal can log in with."""

    EMAIL = "email"
    TAX_ID = "tax_id"
