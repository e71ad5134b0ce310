from __future__ import annotations


class EcRegridError(Exception):
    """Base class for errors raised by ecregrid."""


class ConfigurationError(EcRegridError, ValueError):
    """
    Invalid run configuration.

    Raised before any overlap computation starts: grid resolutions that are
    not exact multiples of each other, malformed elevation-class or chunk
    arguments, unknown grid names and missing input files.
    """


class DataError(EcRegridError):
    """Input data inconsistent with the requested computation; fatal for a chunk."""


class TopographyError(DataError):
    """Missing or malformed field in the topography source."""
