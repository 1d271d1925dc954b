"""facebox: face bounding-box detection over HTTP."""

__version__ = '1.0.0'
