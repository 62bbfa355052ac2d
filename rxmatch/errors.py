"""
Error taxonomy for the prescription → package pipeline.

Mandatory stages (interpretation, selection feasibility) raise; optional stages
(standardization, cache, audit) catch their own errors and degrade.
"""


class RxMatchError(Exception):
    """Base class for every error raised by rxmatch."""


class InterpretationError(RxMatchError):
    """The oracle refused, failed, or returned a payload that does not match the parse schema."""


class OracleRefusal(RxMatchError):
    """The interpretation oracle explicitly declined to parse the input."""


class StandardizationFailure(RxMatchError):
    """Registry lookup failed. Never escapes standardize(); the pipeline continues without an id."""


class CatalogFailure(RxMatchError):
    """Catalog registry call failed (network, timeout, bad payload)."""


class PackageSelectionError(RxMatchError):
    """Base for selection errors the caller turns into a 'cannot fulfill' message."""


class NoCompatiblePackagesError(PackageSelectionError):
    pass


class InvalidQuantityError(PackageSelectionError, ValueError):
    pass


class AuditPersistenceError(RxMatchError):
    """Audit store write failed. Retried and swallowed by AuditRecorder."""


class OracleConfigurationError(RxMatchError, ValueError):
    """The oracle client cannot be built (missing or placeholder API key)."""
