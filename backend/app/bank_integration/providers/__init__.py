"""
Bank Provider Implementations

Abstract base class and concrete implementations for Open Banking APIs.
"""

from .base import BaseBankProvider
from .truelayer import TrueLayerProvider

__all__ = ['BaseBankProvider', 'TrueLayerProvider']
