"""Square provider integration."""

from .client import SquareAPIError, SquareClient

__all__ = ["SquareAPIError", "SquareClient"]
