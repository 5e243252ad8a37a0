"""
PDF Converter service package.

This module provides a FastAPI application that accepts office documents at
`/convert`, renders them to PDF through a headless LibreOffice process and
returns the result with a uniform margin added around every page.
"""

__all__ = ["__version__"]

__version__ = "1.0.0"
