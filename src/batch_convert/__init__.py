"""
Batch Conversion Service package.

This module provides a FastAPI application that converts a batch of uploaded
files through CloudConvert and returns the results as one zip archive at
`/convert`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
