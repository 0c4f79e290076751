"""Browser-fleet load testing for streaming and DRM endpoints."""

__version__ = "0.1.0"
