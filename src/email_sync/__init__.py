"""Email Sync - incremental mailbox synchronization.

This package lists new messages from a remote mailbox, normalizes them into a
protocol-agnostic model and lets pluggable observers decide which bodies and
attachments are worth downloading.
"""

__version__ = "0.1.0"
__author__ = "Trickl"

from email_sync.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__", "__author__"]
