"""
Abstract base class for mail providers.
Defines the canonical message shape and the capability interface every
provider adapter (Outlook, Gmail, IMAP) implements.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from mailboard.errors import AuthenticationFailure, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_FOLDER = "inbox"
DEFAULT_MAX_RESULTS = 50
PREVIEW_LENGTH = 255


class ProviderType(str, Enum):
    """Supported mail provider types."""
    OUTLOOK = "outlook"
    GMAIL = "gmail"
    IMAP = "imap"


class BulkActionType(str, Enum):
    """Mutations that can be applied to a set of messages."""
    MARK_READ = "markRead"
    MARK_UNREAD = "markUnread"
    MOVE_TO_JUNK = "moveToJunk"
    DELETE = "delete"


class FolderType(str, Enum):
    """Logical folder names, mapped to provider-native names by each adapter."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    JUNK = "junk"
    TRASH = "trash"
    ARCHIVE = "archive"


@dataclass
class MailAddress:
    """An email address with an optional display name."""
    email: str
    name: Optional[str] = None

    def format(self) -> str:
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email

    def to_dict(self) -> Dict[str, Any]:
        result = {'email': self.email}
        if self.name:
            result['name'] = self.name
        return result


@dataclass
class MailMessage:
    """Canonical message structure produced by every provider."""
    id: str
    account_id: str
    provider: ProviderType
    subject: str
    from_address: MailAddress
    received_at: datetime

    to: List[MailAddress] = field(default_factory=list)
    cc: List[MailAddress] = field(default_factory=list)
    is_read: bool = False
    has_attachments: bool = False
    preview: str = ""
    importance: Optional[str] = None
    conversation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape returned by the API."""
        result = {
            'id': self.id,
            'accountId': self.account_id,
            'provider': self.provider.value,
            'subject': self.subject,
            'from': self.from_address.to_dict(),
            'to': [a.to_dict() for a in self.to],
            'cc': [a.to_dict() for a in self.cc],
            'receivedAt': self.received_at.isoformat(),
            'isRead': self.is_read,
            'hasAttachments': self.has_attachments,
            'preview': self.preview,
        }
        if self.importance:
            result['importance'] = self.importance
        if self.conversation_id:
            result['conversationId'] = self.conversation_id
        return result


@dataclass
class MailFolder:
    """Represents a mail folder/label."""
    id: str
    display_name: str
    type: Optional[FolderType] = None
    unread_count: int = 0
    total_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'displayName': self.display_name,
            'type': self.type.value if self.type else None,
            'unreadCount': self.unread_count,
            'totalCount': self.total_count,
        }


@dataclass
class SearchRequest:
    account_id: str
    query: str
    folder: Optional[str] = None
    max_results: Optional[int] = None


@dataclass
class SearchResult:
    messages: List[MailMessage]
    total_count: int


@dataclass
class BulkActionRequest:
    account_id: str
    message_ids: List[str]
    action: BulkActionType
    folder: Optional[str] = None


@dataclass
class BulkActionResult:
    """Outcome of a bulk action. failed_count > 0 is a partial failure, not an error."""
    success: bool
    processed_count: int
    failed_count: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'processedCount': self.processed_count,
            'failedCount': self.failed_count,
        }
        if self.error:
            result['error'] = self.error
        return result


class UnsupportedAction(Exception):
    """Raised by _prepare_bulk_action when the action cannot run for this account at all."""


# ============ Normalization helpers ============

_TAG_RE = re.compile(r'<[^>]+>')
_STYLE_RE = re.compile(r'<(style|script)[^>]*>.*?</\1>', re.IGNORECASE | re.DOTALL)


def make_preview(text: Optional[str], html: Optional[str] = None, length: int = PREVIEW_LENGTH) -> str:
    """Build a short single-line preview from plain text, falling back to stripped HTML."""
    source = text or ""
    if not source.strip() and html:
        source = _TAG_RE.sub(' ', _STYLE_RE.sub(' ', html))
    preview = ' '.join(source.split())
    return preview[:length]


def normalize_importance(value: Optional[str]) -> Optional[str]:
    """
    Collapse provider importance values to low/normal/high.

    Accepts Graph enum values ('low', 'normal', 'high'), Importance headers,
    and X-Priority headers ('1 (Highest)' .. '5 (Lowest)'). Returns None for
    anything unrecognised.
    """
    if not value:
        return None
    value = value.strip().lower()

    if value in ('low', 'normal', 'high'):
        return value
    if value in ('urgent', 'highest'):
        return 'high'
    if value in ('lowest', 'non-urgent'):
        return 'low'

    # X-Priority: leading digit 1-5
    match = re.match(r'^(\d)', value)
    if match:
        priority = int(match.group(1))
        if priority <= 2:
            return 'high'
        if priority == 3:
            return 'normal'
        return 'low'
    return None


def folder_type(folder: Optional[str]) -> Optional[FolderType]:
    """Resolve a folder argument to a logical folder type, or None for a custom folder."""
    try:
        return FolderType((folder or DEFAULT_FOLDER).lower())
    except ValueError:
        return None


class MailProvider(ABC):
    """
    Abstract base class for mail providers.

    All providers (Outlook, Gmail, IMAP) must implement this interface.
    Adapters hold no per-account state: credentials are fetched from the
    token manager for every call.
    """

    def __init__(self, token_manager, preview_length: int = PREVIEW_LENGTH):
        """
        Initialize the provider.

        Args:
            token_manager: Credential collaborator supplying decrypted tokens
            preview_length: Maximum length of message previews
        """
        self.token_manager = token_manager
        self.preview_length = preview_length

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    def _get_token(self, account_id: str):
        """Fetch decrypted credentials, raising AuthenticationFailure if the account has none."""
        token = self.token_manager.get_token(account_id)
        if token is None:
            raise AuthenticationFailure(
                f"No credentials stored for {self.provider_type.value} account {account_id}",
                account_id=account_id
            )
        return token

    @abstractmethod
    async def list_messages(
        self,
        account_id: str,
        folder: str = DEFAULT_FOLDER,
        max_results: int = DEFAULT_MAX_RESULTS
    ) -> List[MailMessage]:
        """
        Fetch the most recent messages from a folder.

        Args:
            account_id: Mail account to read
            folder: Logical folder name (default inbox)
            max_results: Maximum number of messages to return

        Returns:
            Messages newest first
        """
        pass

    @abstractmethod
    async def search_messages(self, request: SearchRequest) -> SearchResult:
        """
        Search messages using provider-side search.

        Returns:
            SearchResult with the matching messages and the provider's total match count
        """
        pass

    @abstractmethod
    async def get_folder_counts(self, account_id: str, folder: str = DEFAULT_FOLDER) -> Tuple[int, int]:
        """
        Get (unread, total) message counts for a folder.
        """
        pass

    @abstractmethod
    async def list_folders(self, account_id: str) -> List[MailFolder]:
        """
        Get the account's folders/labels.
        """
        pass

    @abstractmethod
    async def empty_folder(self, account_id: str, folder: str) -> int:
        """
        Permanently delete every message in a folder.

        Returns:
            Number of messages deleted
        """
        pass

    async def _prepare_bulk_action(self, request: BulkActionRequest) -> Any:
        """
        Set up whatever a bulk action needs (session, destination folder).

        Raise UnsupportedAction if the action cannot be applied for this
        account; every message id is then reported as failed.
        """
        return None

    @abstractmethod
    async def _apply_action(self, context: Any, request: BulkActionRequest, message_id: str) -> None:
        """Apply the action to one message. Raise on failure."""
        pass

    async def _finish_bulk_action(self, context: Any, request: BulkActionRequest) -> Optional[Dict[str, str]]:
        """
        Release anything _prepare_bulk_action acquired.

        Returns a mapping of message id to reason for ids that were applied
        but could not be committed; those are reported as failed.
        """
        return None

    async def perform_bulk_action(self, request: BulkActionRequest) -> BulkActionResult:
        """
        Apply an action to each message id independently.

        A failure on one id never stops the rest; processed_count +
        failed_count always equals the number of ids given.
        """
        total = len(request.message_ids)

        try:
            action = BulkActionType(request.action)
        except ValueError:
            return BulkActionResult(
                success=False,
                processed_count=0,
                failed_count=total,
                error=f"Unsupported action: {request.action}"
            )
        request.action = action

        try:
            context = await self._prepare_bulk_action(request)
        except UnsupportedAction as e:
            logger.warning(f"{self.provider_type.value} bulk {action.value} unsupported for {request.account_id}: {e}")
            return BulkActionResult(success=False, processed_count=0, failed_count=total, error=str(e))

        applied: List[str] = []
        errors: List[str] = []
        auth_error: Optional[AuthenticationFailure] = None
        uncommitted: Dict[str, str] = {}
        try:
            for message_id in request.message_ids:
                try:
                    await self._apply_action(context, request, message_id)
                    applied.append(message_id)
                except AuthenticationFailure as e:
                    # Credentials are gone for the rest of the batch too
                    auth_error = e
                    break
                except Exception as e:
                    logger.warning(f"{self.provider_type.value} {action.value} failed for message {message_id}: {e}")
                    errors.append(f"{message_id}: {e}")
        finally:
            uncommitted = await self._finish_bulk_action(context, request) or {}

        for message_id, reason in uncommitted.items():
            if message_id in applied:
                logger.warning(f"{self.provider_type.value} {action.value} not committed for message {message_id}: {reason}")
                errors.append(f"{message_id}: {reason}")
        processed = len([m for m in applied if m not in uncommitted])
        failed = total - processed

        if auth_error is not None:
            return BulkActionResult(
                success=processed > 0,
                processed_count=processed,
                failed_count=failed,
                error=auth_error.message
            )

        error = None
        if failed:
            error = f"{failed} of {total} messages failed: " + "; ".join(errors[:5])

        return BulkActionResult(
            success=processed > 0,
            processed_count=processed,
            failed_count=failed,
            error=error
        )

    def _provider_error(self, account_id: str, message: str) -> ProviderError:
        return ProviderError(message, account_id=account_id, provider=self.provider_type.value)
