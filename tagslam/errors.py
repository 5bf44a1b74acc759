"""Exceptions raised by the tagslam backend."""


class ConfigurationError(ValueError):
    """Raised for out-of-range ids or malformed static object descriptions."""
