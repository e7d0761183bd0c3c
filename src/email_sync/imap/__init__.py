"""IMAP protocol client.

Lists messages with UID SEARCH, describes them from headers and BODYSTRUCTURE,
and downloads full messages only when a body or attachment is requested.
"""

from .client import ImapEmailClient, SessionState, build_search_criteria, is_loopback_host

__all__ = ["ImapEmailClient", "SessionState", "build_search_criteria", "is_loopback_host"]
