"""
Remote execution platform access.
"""

from .client import PlatformClient

__all__ = ["PlatformClient"]
