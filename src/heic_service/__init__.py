"""
HEIC Conversion Service package.

This module provides a FastAPI application that accepts HEIC/HEIF uploads,
converts them to JPEG or PNG, and serves the converted files from `/converted`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
