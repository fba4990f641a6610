"""
Mailboard Test Configuration and Fixtures
==========================================

Shared fixtures: a fixed encryption key, temporary SQLite stores, a fake
clock for the cache and rate limiter, and a scriptable in-memory provider.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from mailboard.crypto import TokenVault
from api.mail.cache import MessageCache
from api.mail.providers.base import (
    BulkActionRequest,
    MailAddress,
    MailFolder,
    MailMessage,
    MailProvider,
    ProviderType,
    SearchRequest,
    SearchResult,
)
from api.mail.rate_limiter import RateLimiter
from api.mail.service import UnifiedMailService
from api.mail.storage import MailStorage
from api.mail.tokens import TokenManager

TEST_KEY = "0123456789abcdef" * 4


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(index: int, account_id: str = "acc-1", provider: ProviderType = ProviderType.GMAIL) -> MailMessage:
    return MailMessage(
        id=f"msg-{index}",
        account_id=account_id,
        provider=provider,
        subject=f"Subject {index}",
        from_address=MailAddress(email=f"sender{index}@example.com", name=f"Sender {index}"),
        received_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=index),
        preview=f"Preview {index}",
    )


class FakeProvider(MailProvider):
    """
    In-memory provider with call counting.

    Set `error` to make every call raise it; set `counts` for summaries.
    Message ids listed in `bad_ids` fail during bulk actions.
    """

    def __init__(self, provider: ProviderType = ProviderType.GMAIL, messages: Optional[List[MailMessage]] = None):
        super().__init__(token_manager=None)
        self._provider = provider
        self.messages = messages if messages is not None else []
        self.counts: Tuple[int, int] = (0, 0)
        self.error: Optional[Exception] = None
        self.bad_ids: set = set()
        self.calls: Dict[str, int] = {}
        self.applied: List[Tuple[str, str]] = []

    @property
    def provider_type(self) -> ProviderType:
        return self._provider

    def _record(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.error is not None:
            raise self.error

    async def list_messages(self, account_id, folder="inbox", max_results=50):
        self._record('list_messages')
        return self.messages[:max_results]

    async def search_messages(self, request: SearchRequest) -> SearchResult:
        self._record('search_messages')
        matches = [m for m in self.messages if request.query.lower() in m.subject.lower()]
        return SearchResult(messages=matches[:request.max_results], total_count=len(matches))

    async def get_folder_counts(self, account_id, folder="inbox"):
        self._record('get_folder_counts')
        return self.counts

    async def list_folders(self, account_id) -> List[MailFolder]:
        self._record('list_folders')
        return [MailFolder(id="INBOX", display_name="Inbox")]

    async def empty_folder(self, account_id, folder) -> int:
        self._record('empty_folder')
        return 3

    async def _prepare_bulk_action(self, request: BulkActionRequest) -> Any:
        self._record('perform_bulk_action')
        return None

    async def _apply_action(self, context, request, message_id):
        if message_id in self.bad_ids:
            raise RuntimeError(f"{message_id} not found")
        self.applied.append((request.action.value, message_id))


@pytest.fixture
def vault():
    return TokenVault(TEST_KEY)


@pytest.fixture
def storage(tmp_path):
    return MailStorage(str(tmp_path / "mail_data.db"))


@pytest.fixture
def token_manager(storage, vault):
    return TokenManager(storage, vault)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user():
    return {'id': 'user-1', 'email': 'user1@example.com'}


@pytest.fixture
def other_user():
    return {'id': 'user-2', 'email': 'user2@example.com'}


@pytest.fixture
def gmail_provider():
    return FakeProvider(ProviderType.GMAIL)


@pytest.fixture
def outlook_provider():
    return FakeProvider(ProviderType.OUTLOOK)


@pytest.fixture
def imap_provider():
    return FakeProvider(ProviderType.IMAP)


@pytest.fixture
def service(storage, token_manager, clock, gmail_provider, outlook_provider, imap_provider):
    return UnifiedMailService(
        storage=storage,
        token_manager=token_manager,
        providers={
            ProviderType.GMAIL: gmail_provider,
            ProviderType.OUTLOOK: outlook_provider,
            ProviderType.IMAP: imap_provider,
        },
        cache=MessageCache(clock=clock),
        rate_limiter=RateLimiter(max_requests=30, window_seconds=60, clock=clock),
    )
