"""
Unified mail module: one message model, cache and rate limit across
Outlook, Gmail and IMAP accounts.
"""

from .providers.base import MailProvider, MailMessage, MailFolder
from .storage import MailStorage, MailAccount
from .tokens import TokenManager
from .cache import MessageCache
from .rate_limiter import RateLimiter
from .service import UnifiedMailService

__all__ = [
    'MailProvider',
    'MailMessage',
    'MailFolder',
    'MailStorage',
    'MailAccount',
    'TokenManager',
    'MessageCache',
    'RateLimiter',
    'UnifiedMailService',
]
