"""
Gmail mail provider implementation.
Uses the Gmail API (google-api-python-client) with user OAuth tokens.
Client calls are blocking, so each one runs in the default executor.
"""
from __future__ import annotations

import asyncio
import html
import logging
from typing import List, Dict, Any, Optional, Callable, Tuple
from datetime import datetime, timezone
from email.utils import getaddresses

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailboard.errors import AuthenticationFailure

from .base import (
    DEFAULT_FOLDER,
    DEFAULT_MAX_RESULTS,
    BulkActionRequest,
    BulkActionType,
    FolderType,
    MailAddress,
    MailFolder,
    MailMessage,
    MailProvider,
    ProviderType,
    SearchRequest,
    SearchResult,
    folder_type,
    make_preview,
    normalize_importance,
)
from ..tokens import DecryptedToken, is_token_expired

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"


class _GmailSession:
    """Credentials and API client for one adapter call."""

    def __init__(self, account_id: str, credentials: Credentials, service: Any):
        self.account_id = account_id
        self.credentials = credentials
        self.service = service
        self.refreshed = False


class GmailProvider(MailProvider):
    """
    Gmail mail provider using the Gmail API.
    """

    SCOPES = ['https://mail.google.com/']

    # Logical folder -> Gmail system label
    SYSTEM_LABELS = {
        FolderType.INBOX: 'INBOX',
        FolderType.SENT: 'SENT',
        FolderType.DRAFTS: 'DRAFT',
        FolderType.JUNK: 'SPAM',
        FolderType.TRASH: 'TRASH',
    }

    # Gmail has no archive label; archived mail is whatever left the inbox
    ARCHIVE_QUERY = '-in:inbox -in:spam -in:trash -in:sent -in:drafts'

    def __init__(
        self,
        token_manager,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        service_factory: Optional[Callable[[Credentials], Any]] = None,
        preview_length: int = 255
    ):
        """
        Initialize Gmail provider.

        Args:
            token_manager: Credential collaborator
            client_id: Google OAuth client ID, used for token refresh
            client_secret: Google OAuth client secret
            service_factory: Builds a Gmail API client from credentials
                (defaults to googleapiclient.discovery.build)
        """
        super().__init__(token_manager, preview_length)
        self.client_id = client_id
        self.client_secret = client_secret
        self._service_factory = service_factory or self._build_service

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    @staticmethod
    def _build_service(credentials: Credentials) -> Any:
        return build('gmail', 'v1', credentials=credentials, cache_discovery=False)

    # ============ Authentication ============

    def _make_credentials(self, token: DecryptedToken) -> Credentials:
        expiry = None
        if token.expires_at:
            # google-auth compares against naive UTC
            expiry = token.expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        return Credentials(
            token=token.access_token,
            refresh_token=token.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.SCOPES,
            expiry=expiry
        )

    async def _open_session(self, account_id: str) -> _GmailSession:
        token = self._get_token(account_id)
        credentials = self._make_credentials(token)
        session = _GmailSession(account_id, credentials, None)
        if is_token_expired(token):
            logger.info(f"Gmail token for account {account_id} expired, refreshing")
            await self._refresh(session)
        else:
            session.service = self._service_factory(credentials)
        return session

    def _refresh_credentials(self, credentials: Credentials) -> None:
        credentials.refresh(Request())

    async def _refresh(self, session: _GmailSession) -> None:
        """Refresh the access token, persist it, and rebuild the API client."""
        creds = session.credentials
        if not creds.refresh_token:
            raise AuthenticationFailure(
                "Gmail token expired and no refresh token is stored",
                account_id=session.account_id
            )

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._refresh_credentials, creds)
        except RefreshError as e:
            logger.error(f"Gmail token refresh failed for account {session.account_id}: {e}")
            raise AuthenticationFailure(f"Failed to refresh Gmail token: {e}", account_id=session.account_id) from e

        expires_at = None
        if creds.expiry:
            expires_at = creds.expiry.replace(tzinfo=timezone.utc)
        self.token_manager.store_token(session.account_id, creds.token, creds.refresh_token, expires_at)

        session.refreshed = True
        session.service = self._service_factory(creds)
        logger.info(f"Refreshed Gmail token for account {session.account_id}")

    async def _execute(self, session: _GmailSession, build_request: Callable[[Any], Any]) -> Dict[str, Any]:
        """
        Build and execute one API request in the executor.

        A 401 triggers one token refresh and one retry; any other HTTP error,
        or a second 401, is a ProviderError.
        """
        loop = asyncio.get_running_loop()

        def run():
            return build_request(session.service).execute()

        try:
            try:
                return await loop.run_in_executor(None, run)
            except HttpError as e:
                if e.resp.status != 401 or session.refreshed:
                    raise
                await self._refresh(session)
                return await loop.run_in_executor(None, run)
        except HttpError as e:
            raise self._provider_error(
                session.account_id, f"Gmail API returned {e.resp.status}: {e}"
            ) from e

    # ============ Normalization ============

    def _get_header(self, headers: List[Dict], name: str) -> str:
        """Get header value by name."""
        for header in headers:
            if header.get('name', '').lower() == name.lower():
                return header.get('value', '')
        return ""

    def _parse_addresses(self, value: str) -> List[MailAddress]:
        return [
            MailAddress(email=addr, name=name or None)
            for name, addr in getaddresses([value]) if addr
        ]

    def _has_attachments(self, part: Dict[str, Any]) -> bool:
        if part.get('filename'):
            return True
        return any(self._has_attachments(p) for p in part.get('parts', []))

    def _parse_message(self, account_id: str, msg: Dict[str, Any]) -> MailMessage:
        """Parse a Gmail API message (format=full) into the canonical shape."""
        payload = msg.get('payload', {})
        headers = payload.get('headers', [])

        from_list = self._parse_addresses(self._get_header(headers, 'From'))
        from_address = from_list[0] if from_list else MailAddress(email='')

        internal_date = msg.get('internalDate')
        if internal_date:
            received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        else:
            received_at = datetime.now(timezone.utc)

        importance = normalize_importance(
            self._get_header(headers, 'Importance') or self._get_header(headers, 'X-Priority')
        )

        label_ids = msg.get('labelIds', [])
        return MailMessage(
            id=msg['id'],
            account_id=account_id,
            provider=ProviderType.GMAIL,
            subject=self._get_header(headers, 'Subject'),
            from_address=from_address,
            to=self._parse_addresses(self._get_header(headers, 'To')),
            cc=self._parse_addresses(self._get_header(headers, 'Cc')),
            received_at=received_at,
            is_read='UNREAD' not in label_ids,
            has_attachments=self._has_attachments(payload),
            preview=make_preview(html.unescape(msg.get('snippet', '')), length=self.preview_length),
            importance=importance,
            conversation_id=msg.get('threadId')
        )

    async def _fetch_messages(self, session: _GmailSession, refs: List[Dict[str, Any]]) -> List[MailMessage]:
        messages = []
        for ref in refs:
            msg = await self._execute(
                session,
                lambda service, mid=ref['id']: service.users().messages().get(
                    userId='me', id=mid, format='full'
                )
            )
            try:
                messages.append(self._parse_message(session.account_id, msg))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Error parsing Gmail message {ref.get('id')}: {e}")
        return messages

    def _folder_filter(self, folder: Optional[str]) -> Dict[str, Any]:
        """List-call arguments selecting a logical or custom folder."""
        ftype = folder_type(folder)
        if ftype == FolderType.ARCHIVE:
            return {'q': self.ARCHIVE_QUERY}
        if ftype is not None:
            return {'labelIds': [self.SYSTEM_LABELS[ftype]]}
        # Custom folders are user label ids
        return {'labelIds': [folder]}

    # ============ Capability interface ============

    async def list_messages(
        self,
        account_id: str,
        folder: str = DEFAULT_FOLDER,
        max_results: int = DEFAULT_MAX_RESULTS
    ) -> List[MailMessage]:
        """Fetch messages from a label, newest first."""
        session = await self._open_session(account_id)
        filters = self._folder_filter(folder)
        result = await self._execute(
            session,
            lambda service: service.users().messages().list(userId='me', maxResults=max_results, **filters)
        )
        return await self._fetch_messages(session, result.get('messages', []))

    async def search_messages(self, request: SearchRequest) -> SearchResult:
        """Search with Gmail query syntax."""
        session = await self._open_session(request.account_id)

        kwargs: Dict[str, Any] = {
            'userId': 'me',
            'q': request.query,
            'maxResults': request.max_results or DEFAULT_MAX_RESULTS,
        }
        if request.folder:
            filters = self._folder_filter(request.folder)
            if 'q' in filters:
                kwargs['q'] = f"{request.query} {filters['q']}"
            else:
                kwargs['labelIds'] = filters['labelIds']

        result = await self._execute(session, lambda service: service.users().messages().list(**kwargs))
        messages = await self._fetch_messages(session, result.get('messages', []))
        return SearchResult(messages=messages, total_count=int(result.get('resultSizeEstimate', len(messages))))

    async def get_folder_counts(self, account_id: str, folder: str = DEFAULT_FOLDER) -> Tuple[int, int]:
        session = await self._open_session(account_id)
        filters = self._folder_filter(folder)

        if 'q' in filters:
            total = await self._execute(
                session, lambda service: service.users().messages().list(userId='me', q=filters['q'])
            )
            unread = await self._execute(
                session, lambda service: service.users().messages().list(userId='me', q=f"{filters['q']} is:unread")
            )
            return int(unread.get('resultSizeEstimate', 0)), int(total.get('resultSizeEstimate', 0))

        label = await self._execute(
            session, lambda service: service.users().labels().get(userId='me', id=filters['labelIds'][0])
        )
        return int(label.get('messagesUnread', 0)), int(label.get('messagesTotal', 0))

    async def list_folders(self, account_id: str) -> List[MailFolder]:
        session = await self._open_session(account_id)
        result = await self._execute(session, lambda service: service.users().labels().list(userId='me'))

        label_types = {label: ftype for ftype, label in self.SYSTEM_LABELS.items()}
        folders = []
        for label in result.get('labels', []):
            folders.append(MailFolder(
                id=label['id'],
                display_name=label.get('name', label['id']),
                type=label_types.get(label['id']),
                unread_count=label.get('messagesUnread', 0),
                total_count=label.get('messagesTotal', 0)
            ))
        return folders

    async def empty_folder(self, account_id: str, folder: str) -> int:
        """Permanently delete everything under a label with batchDelete."""
        session = await self._open_session(account_id)
        filters = self._folder_filter(folder)
        deleted = 0

        for _ in range(100):
            result = await self._execute(
                session,
                lambda service: service.users().messages().list(userId='me', maxResults=500, **filters)
            )
            ids = [m['id'] for m in result.get('messages', [])]
            if not ids:
                break
            await self._execute(
                session,
                lambda service, batch=ids: service.users().messages().batchDelete(userId='me', body={'ids': batch})
            )
            deleted += len(ids)

        logger.info(f"Emptied Gmail folder {folder} for account {account_id}: {deleted} deleted")
        return deleted

    # ============ Bulk actions ============

    async def _prepare_bulk_action(self, request: BulkActionRequest) -> _GmailSession:
        return await self._open_session(request.account_id)

    async def _apply_action(self, context: _GmailSession, request: BulkActionRequest, message_id: str) -> None:
        if request.action == BulkActionType.DELETE:
            await self._execute(
                context, lambda service: service.users().messages().trash(userId='me', id=message_id)
            )
            return

        if request.action == BulkActionType.MARK_READ:
            body = {'removeLabelIds': ['UNREAD']}
        elif request.action == BulkActionType.MARK_UNREAD:
            body = {'addLabelIds': ['UNREAD']}
        else:
            body = {'addLabelIds': ['SPAM'], 'removeLabelIds': ['INBOX']}

        await self._execute(
            context, lambda service: service.users().messages().modify(userId='me', id=message_id, body=body)
        )
