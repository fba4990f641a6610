"""
Mail providers for the supported services.
"""

from .base import (
    MailProvider,
    MailMessage,
    MailAddress,
    MailFolder,
    ProviderType,
    BulkActionType,
    FolderType,
)
from .outlook import OutlookProvider
from .gmail import GmailProvider
from .imap import IMAPProvider

__all__ = [
    'MailProvider',
    'MailMessage',
    'MailAddress',
    'MailFolder',
    'ProviderType',
    'BulkActionType',
    'FolderType',
    'OutlookProvider',
    'GmailProvider',
    'IMAPProvider',
]
