"""
Firebase Cloud Messaging integration.
"""

from .pushTransport import FcmPushTransport

__all__ = ["FcmPushTransport"]
