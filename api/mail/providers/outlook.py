"""
Outlook / Microsoft 365 mail provider implementation.
Uses the Microsoft Graph API with delegated OAuth tokens; expired tokens are
refreshed through MSAL using the stored refresh token.
"""

import asyncio
import logging
from typing import List, Dict, Any, Optional, Tuple
from datetime import datetime, timedelta, timezone

import httpx
import msal

from mailboard.errors import AuthenticationFailure, ConfigurationError, ProviderError

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


class _GraphSession:
    """Credentials for one adapter call. Refreshed at most once."""

    def __init__(self, account_id: str, token: DecryptedToken):
        self.account_id = account_id
        self.token = token
        self.refreshed = False


class OutlookProvider(MailProvider):
    """
    Outlook mail provider using the Graph API.
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    SCOPES = ["https://graph.microsoft.com/Mail.ReadWrite"]

    # Logical folder -> Graph well-known folder name
    WELL_KNOWN_FOLDERS = {
        FolderType.INBOX: "inbox",
        FolderType.SENT: "sentitems",
        FolderType.DRAFTS: "drafts",
        FolderType.JUNK: "junkemail",
        FolderType.TRASH: "deleteditems",
        FolderType.ARCHIVE: "archive",
    }

    # Graph display names of the default folders
    DISPLAY_NAME_TYPES = {
        "inbox": FolderType.INBOX,
        "sent items": FolderType.SENT,
        "drafts": FolderType.DRAFTS,
        "junk email": FolderType.JUNK,
        "deleted items": FolderType.TRASH,
        "archive": FolderType.ARCHIVE,
    }

    MESSAGE_FIELDS = (
        "id,conversationId,from,toRecipients,ccRecipients,subject,bodyPreview,"
        "receivedDateTime,isRead,hasAttachments,importance"
    )

    def __init__(
        self,
        token_manager,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        tenant: str = "common",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        msal_app: Optional[Any] = None,
        preview_length: int = 255
    ):
        """
        Initialize Outlook provider.

        Args:
            token_manager: Credential collaborator
            client_id: Azure AD application (client) ID, used for token refresh
            client_secret: Client secret value
            tenant: Authority tenant (default "common" for personal + work accounts)
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            msal_app: Optional pre-built MSAL application
        """
        super().__init__(token_manager, preview_length)
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant = tenant
        self.timeout = timeout
        self._transport = transport
        self._msal_app = msal_app

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.OUTLOOK

    def _get_msal_app(self) -> Any:
        """Get or create MSAL application instance."""
        if self._msal_app is None:
            if not self.client_id:
                raise ConfigurationError("Outlook client_id is not configured; cannot refresh tokens")
            authority = f"https://login.microsoftonline.com/{self.tenant}"
            self._msal_app = msal.ConfidentialClientApplication(
                self.client_id,
                authority=authority,
                client_credential=self.client_secret
            )
        return self._msal_app

    def _folder_path(self, folder: Optional[str]) -> str:
        ftype = folder_type(folder)
        if ftype is not None:
            return self.WELL_KNOWN_FOLDERS[ftype]
        # Custom folders are addressed by their Graph id
        return folder

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # ============ Authentication ============

    async def _open_session(self, account_id: str) -> _GraphSession:
        """Load credentials, refreshing first if they are already expired."""
        session = _GraphSession(account_id, self._get_token(account_id))
        if is_token_expired(session.token):
            logger.info(f"Outlook token for account {account_id} expired, refreshing")
            await self._refresh(session)
        return session

    async def _refresh(self, session: _GraphSession) -> None:
        """Exchange the refresh token for a new access token and persist it."""
        token = session.token
        if not token.refresh_token:
            raise AuthenticationFailure(
                "Outlook token expired and no refresh token is stored",
                account_id=session.account_id
            )

        app = self._get_msal_app()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: app.acquire_token_by_refresh_token(token.refresh_token, scopes=self.SCOPES)
        )

        if "access_token" not in result:
            error = result.get("error_description", result.get("error", "Unknown error"))
            logger.error(f"Outlook token refresh failed for account {session.account_id}: {error}")
            raise AuthenticationFailure(f"Failed to refresh Outlook token: {error}", account_id=session.account_id)

        expires_in = int(result.get("expires_in", 3600))
        session.token = DecryptedToken(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token") or token.refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        )
        session.refreshed = True
        self.token_manager.store_token(
            session.account_id,
            session.token.access_token,
            session.token.refresh_token,
            session.token.expires_at
        )
        logger.info(f"Refreshed Outlook token for account {session.account_id}")

    async def _make_request(
        self,
        session: _GraphSession,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
        extra_headers: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Make an authenticated request to the Graph API.

        A 401 triggers one token refresh and one retry; a second 401 is a
        ProviderError.
        """
        url = f"{self.GRAPH_BASE_URL}{endpoint}"

        async with self._client() as client:
            try:
                response = await self._send(client, session, method, url, params, json_data, extra_headers)

                if response.status_code == 401 and not session.refreshed:
                    # Token might be expired, refresh and retry
                    await self._refresh(session)
                    response = await self._send(client, session, method, url, params, json_data, extra_headers)
            except httpx.HTTPError as e:
                raise self._provider_error(session.account_id, f"Graph request failed: {e}") from e

        if response.status_code >= 400:
            raise self._provider_error(
                session.account_id,
                f"Graph API {method} {endpoint} returned {response.status_code}: {self._error_message(response)}"
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise self._provider_error(session.account_id, f"Malformed Graph response: {e}") from e

    async def _send(self, client, session, method, url, params, json_data, extra_headers) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {session.token.access_token}",
            "Content-Type": "application/json"
        }
        if extra_headers:
            headers.update(extra_headers)
        return await client.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json_data
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error", {}).get("message", response.text)
        except ValueError:
            return response.text

    # ============ Normalization ============

    def _parse_address(self, data: Optional[Dict[str, Any]]) -> MailAddress:
        email_data = (data or {}).get('emailAddress', {})
        return MailAddress(email=email_data.get('address', ''), name=email_data.get('name') or None)

    def _parse_message(self, account_id: str, msg: Dict[str, Any]) -> MailMessage:
        """Parse a Graph message resource into the canonical shape."""
        received_str = msg.get('receivedDateTime', '')
        if received_str:
            received_at = datetime.fromisoformat(received_str.replace('Z', '+00:00'))
        else:
            received_at = datetime.now(timezone.utc)

        return MailMessage(
            id=msg.get('id', ''),
            account_id=account_id,
            provider=ProviderType.OUTLOOK,
            subject=msg.get('subject') or '',
            from_address=self._parse_address(msg.get('from')),
            to=[self._parse_address(r) for r in msg.get('toRecipients', [])],
            cc=[self._parse_address(r) for r in msg.get('ccRecipients', [])],
            received_at=received_at,
            is_read=bool(msg.get('isRead', False)),
            has_attachments=bool(msg.get('hasAttachments', False)),
            preview=make_preview(msg.get('bodyPreview'), length=self.preview_length),
            importance=normalize_importance(msg.get('importance')),
            conversation_id=msg.get('conversationId') or None
        )

    def _parse_messages(self, account_id: str, result: Dict[str, Any]) -> List[MailMessage]:
        messages = []
        for msg in result.get('value', []):
            try:
                messages.append(self._parse_message(account_id, msg))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Error parsing Outlook message {msg.get('id')}: {e}")
        return messages

    # ============ Capability interface ============

    async def list_messages(
        self,
        account_id: str,
        folder: str = DEFAULT_FOLDER,
        max_results: int = DEFAULT_MAX_RESULTS
    ) -> List[MailMessage]:
        """Fetch messages from a folder, newest first."""
        session = await self._open_session(account_id)
        result = await self._make_request(
            session,
            "GET",
            f"/me/mailFolders/{self._folder_path(folder)}/messages",
            params={
                "$top": max_results,
                "$orderby": "receivedDateTime desc",
                "$select": self.MESSAGE_FIELDS,
            }
        )
        return self._parse_messages(account_id, result)

    async def search_messages(self, request: SearchRequest) -> SearchResult:
        """Search with Graph $search, scoped to a folder when one is given."""
        session = await self._open_session(request.account_id)

        endpoint = "/me/messages"
        if request.folder:
            endpoint = f"/me/mailFolders/{self._folder_path(request.folder)}/messages"

        query = request.query.replace('"', '\\"')
        result = await self._make_request(
            session,
            "GET",
            endpoint,
            params={
                "$search": f'"{query}"',
                "$top": request.max_results or DEFAULT_MAX_RESULTS,
                "$select": self.MESSAGE_FIELDS,
                "$count": "true",
            },
            extra_headers={"ConsistencyLevel": "eventual"}
        )

        messages = self._parse_messages(request.account_id, result)
        total = result.get('@odata.count', len(messages))
        return SearchResult(messages=messages, total_count=int(total))

    async def get_folder_counts(self, account_id: str, folder: str = DEFAULT_FOLDER) -> Tuple[int, int]:
        session = await self._open_session(account_id)
        result = await self._make_request(
            session, "GET", f"/me/mailFolders/{self._folder_path(folder)}"
        )
        return int(result.get('unreadItemCount', 0)), int(result.get('totalItemCount', 0))

    async def list_folders(self, account_id: str) -> List[MailFolder]:
        session = await self._open_session(account_id)
        result = await self._make_request(
            session, "GET", "/me/mailFolders", params={"$top": 100}
        )

        folders = []
        for folder in result.get('value', []):
            name = folder.get('displayName', '')
            folders.append(MailFolder(
                id=folder.get('id', ''),
                display_name=name,
                type=self.DISPLAY_NAME_TYPES.get(name.lower()),
                unread_count=folder.get('unreadItemCount', 0),
                total_count=folder.get('totalItemCount', 0)
            ))
        return folders

    async def empty_folder(self, account_id: str, folder: str) -> int:
        """Delete every message in a folder, a page at a time."""
        session = await self._open_session(account_id)
        path = self._folder_path(folder)
        deleted = 0

        # Bounded so a folder that refuses deletes cannot loop forever
        for _ in range(100):
            result = await self._make_request(
                session, "GET", f"/me/mailFolders/{path}/messages",
                params={"$top": 100, "$select": "id"}
            )
            ids = [m['id'] for m in result.get('value', []) if m.get('id')]
            if not ids:
                break

            page_deleted = 0
            for message_id in ids:
                try:
                    await self._make_request(session, "DELETE", f"/me/messages/{message_id}")
                    page_deleted += 1
                except ProviderError as e:
                    logger.warning(f"Could not delete Outlook message {message_id}: {e}")
            deleted += page_deleted
            if page_deleted == 0:
                break

        logger.info(f"Emptied Outlook folder {path} for account {account_id}: {deleted} deleted")
        return deleted

    # ============ Bulk actions ============

    async def _prepare_bulk_action(self, request: BulkActionRequest) -> _GraphSession:
        return await self._open_session(request.account_id)

    async def _apply_action(self, context: _GraphSession, request: BulkActionRequest, message_id: str) -> None:
        if request.action == BulkActionType.MARK_READ:
            await self._make_request(context, "PATCH", f"/me/messages/{message_id}", json_data={"isRead": True})
        elif request.action == BulkActionType.MARK_UNREAD:
            await self._make_request(context, "PATCH", f"/me/messages/{message_id}", json_data={"isRead": False})
        elif request.action == BulkActionType.MOVE_TO_JUNK:
            await self._make_request(
                context, "POST", f"/me/messages/{message_id}/move",
                json_data={"destinationId": self.WELL_KNOWN_FOLDERS[FolderType.JUNK]}
            )
        elif request.action == BulkActionType.DELETE:
            await self._make_request(context, "DELETE", f"/me/messages/{message_id}")
