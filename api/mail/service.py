"""
Unified mail service.

Every account-scoped operation runs in the same order: ownership check,
rate limit, cache lookup, adapter call, cache write. Adapters are looked up
by the account's provider tag.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from mailboard.errors import (
    AccessDenied,
    AuthenticationFailure,
    ConfigurationError,
    MailError,
    ProviderError,
    RateLimited,
)

from .cache import MessageCache
from .providers.base import (
    DEFAULT_FOLDER,
    DEFAULT_MAX_RESULTS,
    BulkActionRequest,
    BulkActionResult,
    BulkActionType,
    FolderType,
    MailFolder,
    MailMessage,
    MailProvider,
    ProviderType,
    SearchRequest,
    SearchResult,
)
from .rate_limiter import RateLimiter, rate_limit_key
from .storage import MailAccount, MailStorage
from .tokens import TokenManager

logger = logging.getLogger(__name__)

MAX_RESULTS_LIMIT = 100
EMPTYABLE_FOLDERS = (FolderType.JUNK.value, FolderType.TRASH.value)


@dataclass
class MessagesResult:
    messages: List[MailMessage]
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messages': [m.to_dict() for m in self.messages],
            'hasMore': self.has_more,
        }


@dataclass
class MailAccountSummary:
    account_id: str
    account_name: str
    provider: ProviderType
    email_address: str
    unread_count: int
    total_count: int
    last_synced_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accountId': self.account_id,
            'accountName': self.account_name,
            'provider': self.provider.value,
            'emailAddress': self.email_address,
            'unreadCount': self.unread_count,
            'totalCount': self.total_count,
            'lastSyncedAt': self.last_synced_at,
        }


@dataclass
class MailSummary:
    accounts: List[MailAccountSummary] = field(default_factory=list)
    total_unread: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accounts': [a.to_dict() for a in self.accounts],
            'totalUnread': self.total_unread,
            'errors': list(self.errors),
        }


class UnifiedMailService:
    """
    Single entry point for mail operations across all linked accounts.
    """

    def __init__(
        self,
        storage: MailStorage,
        token_manager: TokenManager,
        providers: Dict[ProviderType, MailProvider],
        cache: Optional[MessageCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_results_limit: int = MAX_RESULTS_LIMIT,
        default_sync_frequency: int = 5
    ):
        """
        Args:
            storage: Account store (ownership lookups, account CRUD)
            token_manager: Credential collaborator
            providers: Adapter registry keyed by provider tag
            cache: Message cache (a private one is created if omitted)
            rate_limiter: Rate limiter (a private one is created if omitted)
            max_results_limit: Upper bound applied to max_results
        """
        self.storage = storage
        self.token_manager = token_manager
        self.providers = dict(providers)
        self.cache = cache or MessageCache()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_results_limit = max_results_limit
        self.default_sync_frequency = default_sync_frequency

    def register_provider(self, provider: MailProvider) -> None:
        """Register (or replace) the adapter for a provider tag."""
        self.providers[provider.provider_type] = provider
        logger.info(f"Registered mail provider {provider.provider_type.value}")

    # ============ Shared steps ============

    def _authorize(self, user: Optional[Dict[str, Any]], account_id: str) -> MailAccount:
        """Resolve the account, failing unless the caller owns it."""
        if not user or not user.get('id'):
            raise AccessDenied("Not authenticated", authenticated=False)
        account = self.storage.lookup_account(account_id)
        if account is None or account.user_id != user['id']:
            raise AccessDenied("Account not found or access denied")
        return account

    def _check_rate_limit(self, operation: str, user_id: str, account_id: str) -> None:
        key = rate_limit_key(operation, user_id, account_id)
        result = self.rate_limiter.check(key)
        if not result.allowed:
            retry_after = self.rate_limiter.retry_after(key)
            logger.warning(f"Rate limit exceeded for {key}")
            raise RateLimited("Rate limit exceeded", key=key, retry_after=retry_after)

    def _provider_for(self, account: MailAccount) -> MailProvider:
        provider = self.providers.get(account.provider)
        if provider is None:
            raise ConfigurationError(f"No adapter registered for provider {account.provider.value}")
        return provider

    async def _call_adapter(self, account: MailAccount, operation: str, call) -> Any:
        """Await an adapter call, converting unexpected failures to ProviderError."""
        try:
            return await call
        except AuthenticationFailure as e:
            if e.account_id is None:
                e.account_id = account.id
            raise
        except ProviderError as e:
            if e.account_id is None:
                e.account_id = account.id
            raise
        except MailError:
            raise
        except Exception as e:
            logger.error(f"{account.provider.value} {operation} failed for account {account.id}: {e}")
            raise ProviderError(
                f"{operation} failed: {e}", account_id=account.id, provider=account.provider.value
            ) from e

    def _clamp(self, max_results: Optional[int]) -> int:
        if not max_results or max_results < 1:
            return DEFAULT_MAX_RESULTS
        return min(max_results, self.max_results_limit)

    # ============ Messages ============

    async def get_messages(
        self,
        user: Optional[Dict[str, Any]],
        account_id: str,
        folder: str = DEFAULT_FOLDER,
        max_results: int = DEFAULT_MAX_RESULTS
    ) -> MessagesResult:
        """
        List a folder's messages, served from cache when fresh.

        A cache hit always reports has_more=False: the cached list is the
        caller's last full fetch and is not re-paginated.
        """
        account = self._authorize(user, account_id)
        self._check_rate_limit('messages', user['id'], account_id)

        folder = folder or DEFAULT_FOLDER
        cached = self.cache.get_messages(account_id, folder)
        if cached is not None:
            logger.debug(f"Cache hit for {account_id}/{folder}")
            return MessagesResult(messages=list(cached), has_more=False)

        max_results = self._clamp(max_results)
        provider = self._provider_for(account)
        messages = await self._call_adapter(
            account, 'list_messages', provider.list_messages(account_id, folder, max_results)
        )

        self.cache.set_messages(account_id, folder, messages)
        return MessagesResult(messages=messages, has_more=len(messages) >= max_results)

    async def search_messages(self, user: Optional[Dict[str, Any]], request: SearchRequest) -> SearchResult:
        """Provider-side search. Results are never cached."""
        account = self._authorize(user, request.account_id)
        self._check_rate_limit('search', user['id'], request.account_id)

        request.max_results = self._clamp(request.max_results)
        provider = self._provider_for(account)
        return await self._call_adapter(account, 'search_messages', provider.search_messages(request))

    async def perform_bulk_action(self, user: Optional[Dict[str, Any]], request: BulkActionRequest) -> BulkActionResult:
        """
        Apply one action to many messages.

        Partial failure is reported in the result, not raised. When anything
        was processed, every cached folder of the account and the owner's
        summary are invalidated.
        """
        account = self._authorize(user, request.account_id)
        self._check_rate_limit('bulk-action', user['id'], request.account_id)

        provider = self._provider_for(account)
        result = await self._call_adapter(account, 'perform_bulk_action', provider.perform_bulk_action(request))

        if result.processed_count > 0:
            self.cache.invalidate_account(account.id)
            self.cache.invalidate_summary(account.user_id)

        action = request.action.value if isinstance(request.action, BulkActionType) else request.action
        logger.info(
            f"Bulk {action} on account {account.id}: "
            f"{result.processed_count} processed, {result.failed_count} failed"
        )
        return result

    async def list_folders(self, user: Optional[Dict[str, Any]], account_id: str) -> List[MailFolder]:
        account = self._authorize(user, account_id)
        self._check_rate_limit('folders', user['id'], account_id)
        provider = self._provider_for(account)
        return await self._call_adapter(account, 'list_folders', provider.list_folders(account_id))

    async def empty_folder(self, user: Optional[Dict[str, Any]], account_id: str, folder: str) -> int:
        """
        Permanently delete everything in the junk or trash folder.

        Raises:
            ValueError: folder is not junk or trash
        """
        account = self._authorize(user, account_id)
        folder = (folder or '').lower()
        if folder not in EMPTYABLE_FOLDERS:
            raise ValueError("Only junk and trash folders can be emptied")
        self._check_rate_limit('empty-folder', user['id'], account_id)

        provider = self._provider_for(account)
        deleted = await self._call_adapter(account, 'empty_folder', provider.empty_folder(account_id, folder))

        self.cache.invalidate_account(account_id)
        self.cache.invalidate_summary(account.user_id)
        return deleted

    # ============ Summary ============

    async def _account_summary(self, account: MailAccount) -> MailAccountSummary:
        provider = self._provider_for(account)
        unread, total = await self._call_adapter(
            account, 'get_folder_counts', provider.get_folder_counts(account.id, DEFAULT_FOLDER)
        )
        return MailAccountSummary(
            account_id=account.id,
            account_name=account.account_name,
            provider=account.provider,
            email_address=account.email_address,
            unread_count=unread,
            total_count=total,
            last_synced_at=datetime.now(timezone.utc).isoformat()
        )

    async def get_summary(self, user_id: str, refresh: bool = False) -> MailSummary:
        """
        Unread/total inbox counts for every enabled account of a user.

        One account failing never fails the whole summary; its error is
        reported in the errors list. Only error-free summaries are cached.
        """
        if not refresh:
            cached = self.cache.get_summary(user_id)
            if cached is not None:
                return cached

        accounts = self.storage.list_accounts(user_id, enabled_only=True)
        results = await asyncio.gather(
            *(self._account_summary(account) for account in accounts),
            return_exceptions=True
        )

        summary = MailSummary()
        for account, result in zip(accounts, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                message = result.message if isinstance(result, MailError) else str(result)
                logger.warning(f"Summary failed for account {account.id}: {message}")
                summary.errors.append({'accountId': account.id, 'message': message})
                continue
            summary.accounts.append(result)
            summary.total_unread += result.unread_count

        if not summary.errors:
            self.cache.set_summary(user_id, summary)
        return summary

    # ============ Accounts ============

    def list_accounts(self, user: Optional[Dict[str, Any]]) -> List[MailAccount]:
        if not user or not user.get('id'):
            raise AccessDenied("Not authenticated", authenticated=False)
        return self.storage.list_accounts(user['id'])

    def create_account(
        self,
        user: Optional[Dict[str, Any]],
        provider: ProviderType,
        account_name: str,
        email_address: str,
        sync_frequency_minutes: Optional[int] = None
    ) -> MailAccount:
        """
        Link a new account (credentials are stored separately).

        Raises:
            DuplicateAccountError: the same address is already linked for this provider
        """
        if not user or not user.get('id'):
            raise AccessDenied("Not authenticated", authenticated=False)
        account = self.storage.add_account(
            user_id=user['id'],
            provider=ProviderType(provider),
            account_name=account_name,
            email_address=email_address,
            sync_frequency_minutes=sync_frequency_minutes or self.default_sync_frequency
        )
        self.cache.invalidate_summary(user['id'])
        return account

    def update_account(self, user: Optional[Dict[str, Any]], account_id: str, **changes) -> MailAccount:
        account = self._authorize(user, account_id)
        self.storage.update_account(account.id, **changes)
        self.cache.invalidate_user(account.user_id, [account.id])
        return self.storage.get_account(account.id)

    def delete_account(self, user: Optional[Dict[str, Any]], account_id: str) -> bool:
        """Delete an account, its stored credentials and its cached data."""
        account = self._authorize(user, account_id)
        deleted = self.storage.delete_account(account.id)
        self.cache.invalidate_user(account.user_id, [account.id])
        return deleted

    def store_credentials(
        self,
        user: Optional[Dict[str, Any]],
        account_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None
    ) -> None:
        """Encrypt and store credentials for an owned account."""
        account = self._authorize(user, account_id)
        self.token_manager.store_token(account.id, access_token, refresh_token, expires_at)
        self.cache.invalidate_user(account.user_id, [account.id])
