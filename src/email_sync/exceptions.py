"""Custom exceptions for Email Sync."""


class EmailSyncError(Exception):
    """Base exception for all Email Sync errors."""


class MailboxConnectionError(EmailSyncError):
    """Exception raised when a mail session cannot be established or authenticated."""


class MailProtocolError(EmailSyncError):
    """Exception raised when the mail server rejects a query or fetch."""


class ProtocolMismatchError(EmailSyncError):
    """Exception raised when a message is handed to a client of another protocol."""


class AttachmentNotFoundError(EmailSyncError):
    """Exception raised when a message has no attachment with the requested filename."""


class ConfigurationError(EmailSyncError):
    """Exception raised for configuration related errors."""


class SyncAlreadyRunningError(EmailSyncError):
    """Exception raised when a sync pass is started while another one is in flight."""


class SyncCancelledError(EmailSyncError):
    """Exception raised when a sync pass is aborted between messages."""
