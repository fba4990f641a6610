"""
IMAP mail provider implementation.
Supports generic IMAP servers with SSL/TLS. Every call opens a connection,
logs in with the stored credentials, does its work and logs out again.
"""

import imaplib
import email
from email.header import decode_header
from email.utils import getaddresses, parsedate_to_datetime
import functools
import logging
import asyncio
import re
from typing import List, Dict, Any, Optional, Callable, Tuple
from datetime import datetime, timezone

from mailboard.errors import AuthenticationFailure, ProviderError

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
    UnsupportedAction,
    folder_type,
    make_preview,
    normalize_importance,
)

logger = logging.getLogger(__name__)

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)')
_STATUS_RE = re.compile(r'(MESSAGES|UNSEEN) (\d+)')

# RFC 6154 special-use attributes
SPECIAL_USE = {
    '\\junk': FolderType.JUNK,
    '\\trash': FolderType.TRASH,
    '\\sent': FolderType.SENT,
    '\\drafts': FolderType.DRAFTS,
    '\\archive': FolderType.ARCHIVE,
}


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for the IMAP wire."""
    return '"' + name.replace('\\', '\\\\').replace('"', '\\"') + '"'


class _ImapBulkContext:
    def __init__(self, conn, mailbox: str, junk_mailbox: str):
        self.conn = conn
        self.mailbox = mailbox
        self.junk_mailbox = junk_mailbox
        self.expunge_uids: List[str] = []


class IMAPProvider(MailProvider):
    """
    IMAP mail provider for generic mail servers.

    The account's email address is the login name and the stored access
    token is the password. Message ids are IMAP UIDs, so they stay valid
    across sessions.
    """

    def __init__(
        self,
        token_manager,
        account_lookup: Callable[[str], Any],
        host: Optional[str] = None,
        port: int = 993,
        use_ssl: bool = True,
        folders: Optional[Dict[FolderType, str]] = None,
        connection_factory: Optional[Callable[[str, int, bool], Any]] = None,
        preview_length: int = 255
    ):
        """
        Initialize IMAP provider.

        Args:
            token_manager: Credential collaborator
            account_lookup: Returns the MailAccount for an id (username source)
            host: IMAP server hostname
            port: IMAP port (default 993 for SSL)
            use_ssl: Use SSL/TLS connection (default True)
            folders: Logical folder -> mailbox name overrides
            connection_factory: Opens a connection (tests pass a fake)
        """
        super().__init__(token_manager, preview_length)
        self.account_lookup = account_lookup
        self.host = host
        self.port = int(port)
        self.use_ssl = use_ssl
        self.folders = {
            FolderType.INBOX: 'INBOX',
            FolderType.SENT: 'Sent',
            FolderType.DRAFTS: 'Drafts',
            FolderType.JUNK: 'Junk',
            FolderType.TRASH: 'Trash',
            FolderType.ARCHIVE: 'Archive',
        }
        if folders:
            self.folders.update(folders)
        self._connection_factory = connection_factory or self._open_connection

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    def _mailbox(self, folder: Optional[str]) -> str:
        ftype = folder_type(folder)
        if ftype is not None:
            return self.folders[ftype]
        return folder

    # ============ Connection handling ============

    @staticmethod
    def _open_connection(host: str, port: int, use_ssl: bool):
        if use_ssl:
            return imaplib.IMAP4_SSL(host, port)
        return imaplib.IMAP4(host, port)

    def _connect(self, account_id: str):
        """Open and log in a connection (blocking)."""
        token = self._get_token(account_id)
        account = self.account_lookup(account_id)
        if account is None:
            raise AuthenticationFailure(f"Unknown IMAP account {account_id}", account_id=account_id)
        if not self.host:
            raise self._provider_error(account_id, "IMAP host is not configured")

        try:
            conn = self._connection_factory(self.host, self.port, self.use_ssl)
        except OSError as e:
            raise self._provider_error(account_id, f"Could not connect to {self.host}:{self.port}: {e}") from e

        try:
            conn.login(account.email_address, token.access_token)
        except imaplib.IMAP4.error as e:
            self._close(conn)
            logger.warning(f"IMAP login rejected for account {account_id}")
            raise AuthenticationFailure(f"IMAP login failed: {e}", account_id=account_id) from e
        return conn

    def _close(self, conn) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"IMAP logout failed: {e}")

    def _with_connection(self, account_id: str, operation: Callable[[Any], Any]) -> Any:
        """Run operation against a fresh logged-in connection (blocking)."""
        conn = self._connect(account_id)
        try:
            return operation(conn)
        except (imaplib.IMAP4.error, OSError) as e:
            raise self._provider_error(account_id, f"IMAP operation failed: {e}") from e
        finally:
            self._close(conn)

    async def _run(self, func: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _select(self, conn, account_id: str, mailbox: str, readonly: bool = True) -> None:
        typ, data = conn.select(quote_mailbox(mailbox), readonly=readonly)
        if typ != 'OK':
            raise self._provider_error(account_id, f"Mailbox {mailbox} not found")

    @staticmethod
    def _search_uids(conn, *criteria: str) -> List[bytes]:
        typ, data = conn.uid('SEARCH', None, *criteria)
        if typ != 'OK' or not data or not data[0]:
            return []
        return data[0].split()

    @staticmethod
    def _mailbox_exists(conn, mailbox: str) -> bool:
        typ, data = conn.list('""', quote_mailbox(mailbox))
        return typ == 'OK' and bool(data) and data[0] is not None

    # ============ Normalization ============

    def _decode_header_value(self, value: Optional[str]) -> str:
        """Decode email header value."""
        if not value:
            return ""
        result = []
        for content, charset in decode_header(value):
            if isinstance(content, bytes):
                try:
                    result.append(content.decode(charset or 'utf-8', errors='replace'))
                except LookupError:
                    result.append(content.decode('utf-8', errors='replace'))
            else:
                result.append(content)
        return ''.join(result)

    def _parse_addresses(self, value: Optional[str]) -> List[MailAddress]:
        if not value:
            return []
        return [
            MailAddress(email=addr, name=self._decode_header_value(name) or None)
            for name, addr in getaddresses([value]) if addr
        ]

    def _get_body_content(self, msg: email.message.Message) -> Tuple[str, str, bool]:
        """Extract (text, html, has_attachments) from a parsed message."""
        body_text = ""
        body_html = ""
        has_attachments = False

        for part in msg.walk():
            if part.is_multipart():
                continue
            disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in disposition.lower() or part.get_filename():
                has_attachments = True
                continue

            payload = part.get_payload(decode=True)
            if not payload:
                continue
            charset = part.get_content_charset() or 'utf-8'
            try:
                text = payload.decode(charset, errors='replace')
            except LookupError:
                text = payload.decode('utf-8', errors='replace')

            content_type = part.get_content_type()
            if content_type == "text/plain" and not body_text:
                body_text = text
            elif content_type == "text/html" and not body_html:
                body_html = text

        return body_text, body_html, has_attachments

    def _parse_message(self, account_id: str, uid: str, flags: Tuple, raw: bytes) -> MailMessage:
        msg = email.message_from_bytes(raw)

        from_list = self._parse_addresses(msg.get('From'))
        received_at = datetime.now(timezone.utc)
        if msg.get('Date'):
            try:
                received_at = parsedate_to_datetime(msg['Date'])
                if received_at.tzinfo is None:
                    received_at = received_at.replace(tzinfo=timezone.utc)
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Date header on IMAP message {uid}")

        text, html_body, has_attachments = self._get_body_content(msg)

        # Thread root: first References entry, else the message's own id
        references = (msg.get('References') or '').split()
        conversation_id = references[0] if references else msg.get('Message-ID')

        return MailMessage(
            id=uid,
            account_id=account_id,
            provider=ProviderType.IMAP,
            subject=self._decode_header_value(msg.get('Subject')),
            from_address=from_list[0] if from_list else MailAddress(email=''),
            to=self._parse_addresses(msg.get('To')),
            cc=self._parse_addresses(msg.get('Cc')),
            received_at=received_at,
            is_read=b'\\Seen' in flags,
            has_attachments=has_attachments,
            preview=make_preview(text, html_body, length=self.preview_length),
            importance=normalize_importance(msg.get('Importance') or msg.get('X-Priority')),
            conversation_id=conversation_id
        )

    def _fetch(self, conn, account_id: str, uids: List[bytes]) -> List[MailMessage]:
        """Fetch and parse the given UIDs in the order given."""
        messages = []
        for uid in uids:
            typ, data = conn.uid('FETCH', uid, '(UID FLAGS BODY.PEEK[])')
            if typ != 'OK' or not data:
                continue
            for item in data:
                if not isinstance(item, tuple):
                    continue
                flags = imaplib.ParseFlags(item[0])
                try:
                    messages.append(self._parse_message(account_id, uid.decode(), flags, item[1]))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Error parsing IMAP message {uid!r}: {e}")
                break
        return messages

    # ============ Capability interface ============

    async def list_messages(
        self,
        account_id: str,
        folder: str = DEFAULT_FOLDER,
        max_results: int = DEFAULT_MAX_RESULTS
    ) -> List[MailMessage]:
        """Fetch the newest messages from a mailbox."""
        mailbox = self._mailbox(folder)

        def operation(conn):
            self._select(conn, account_id, mailbox)
            uids = self._search_uids(conn, 'ALL')
            # UIDs ascend with arrival; newest first
            newest = list(reversed(uids[-max_results:])) if max_results > 0 else []
            return self._fetch(conn, account_id, newest)

        return await self._run(self._with_connection, account_id, operation)

    async def search_messages(self, request: SearchRequest) -> SearchResult:
        """
        Search headers and body with IMAP SEARCH TEXT.

        The query travels as a literal, so CR/LF and quotes stay inside the
        search key. Non-ASCII queries are declared as UTF-8.
        """
        mailbox = self._mailbox(request.folder or DEFAULT_FOLDER)
        limit = request.max_results or DEFAULT_MAX_RESULTS
        needle = request.query.encode('utf-8')
        criteria = ('TEXT',) if request.query.isascii() else ('CHARSET', 'UTF-8', 'TEXT')

        def operation(conn):
            self._select(conn, request.account_id, mailbox)
            conn.literal = needle
            typ, data = conn.uid('SEARCH', *criteria)
            if typ != 'OK':
                raise imaplib.IMAP4.error(f"SEARCH rejected by server: {data}")
            uids = data[0].split() if data and data[0] else []
            newest = list(reversed(uids[-limit:]))
            return SearchResult(
                messages=self._fetch(conn, request.account_id, newest),
                total_count=len(uids)
            )

        return await self._run(self._with_connection, request.account_id, operation)

    def _status_counts(self, conn, mailbox: str) -> Tuple[int, int]:
        typ, data = conn.status(quote_mailbox(mailbox), '(MESSAGES UNSEEN)')
        if typ != 'OK' or not data or data[0] is None:
            raise imaplib.IMAP4.error(f"STATUS failed for {mailbox}")
        raw = data[0].decode() if isinstance(data[0], bytes) else str(data[0])
        counts = {name: int(value) for name, value in _STATUS_RE.findall(raw)}
        return counts.get('UNSEEN', 0), counts.get('MESSAGES', 0)

    async def get_folder_counts(self, account_id: str, folder: str = DEFAULT_FOLDER) -> Tuple[int, int]:
        mailbox = self._mailbox(folder)
        return await self._run(
            self._with_connection, account_id, lambda conn: self._status_counts(conn, mailbox)
        )

    async def list_folders(self, account_id: str) -> List[MailFolder]:
        """Get all selectable mailboxes with their counts."""
        configured = {name.lower(): ftype for ftype, name in self.folders.items()}

        def operation(conn):
            typ, listing = conn.list()
            folders = []
            if typ != 'OK':
                return folders
            for entry in listing:
                if not entry:
                    continue
                match = _LIST_RE.match(entry.decode() if isinstance(entry, bytes) else entry)
                if not match:
                    continue
                flags = match.group('flags').lower().split()
                if '\\noselect' in flags:
                    continue
                name = match.group('name').strip()
                if name.startswith('"') and name.endswith('"'):
                    name = name[1:-1].replace('\\"', '"').replace('\\\\', '\\')

                ftype = next((SPECIAL_USE[f] for f in flags if f in SPECIAL_USE), None)
                if ftype is None:
                    ftype = configured.get(name.lower())

                unread = total = 0
                try:
                    unread, total = self._status_counts(conn, name)
                except imaplib.IMAP4.error as e:
                    logger.warning(f"Could not get status for folder {name}: {e}")
                folders.append(MailFolder(
                    id=name,
                    display_name=name,
                    type=ftype,
                    unread_count=unread,
                    total_count=total
                ))
            return folders

        return await self._run(self._with_connection, account_id, operation)

    async def empty_folder(self, account_id: str, folder: str) -> int:
        """Flag everything in the mailbox deleted and expunge."""
        mailbox = self._mailbox(folder)

        def operation(conn):
            self._select(conn, account_id, mailbox, readonly=False)
            uids = self._search_uids(conn, 'ALL')
            if not uids:
                return 0
            uid_set = b','.join(uids).decode()
            typ, _ = conn.uid('STORE', uid_set, '+FLAGS.SILENT', '(\\Deleted)')
            if typ != 'OK':
                raise imaplib.IMAP4.error(f"STORE failed on {mailbox}")
            conn.expunge()
            return len(uids)

        deleted = await self._run(self._with_connection, account_id, operation)
        logger.info(f"Emptied IMAP mailbox {mailbox} for account {account_id}: {deleted} deleted")
        return deleted

    # ============ Bulk actions ============

    def _open_bulk(self, request: BulkActionRequest) -> _ImapBulkContext:
        conn = self._connect(request.account_id)
        mailbox = self._mailbox(request.folder or DEFAULT_FOLDER)
        junk = self.folders[FolderType.JUNK]
        try:
            typ, _ = conn.select(quote_mailbox(mailbox), readonly=False)
            if typ != 'OK':
                raise UnsupportedAction(f"Mailbox {mailbox} does not exist")
            if request.action == BulkActionType.MOVE_TO_JUNK and not self._mailbox_exists(conn, junk):
                raise UnsupportedAction(f"Junk folder '{junk}' does not exist on this server")
        except UnsupportedAction:
            self._close(conn)
            raise
        except (imaplib.IMAP4.error, OSError) as e:
            self._close(conn)
            raise self._provider_error(request.account_id, f"IMAP operation failed: {e}") from e
        return _ImapBulkContext(conn, mailbox, junk)

    def _apply_sync(self, context: _ImapBulkContext, action: BulkActionType, uid: str) -> None:
        if not uid.isdigit():
            raise ValueError(f"Invalid IMAP UID {uid!r}")
        conn = context.conn
        if not self._search_uids(conn, 'UID', uid):
            raise ProviderError(f"Message {uid} not found in {context.mailbox}")

        if action == BulkActionType.MARK_READ:
            typ, _ = conn.uid('STORE', uid, '+FLAGS', '(\\Seen)')
        elif action == BulkActionType.MARK_UNREAD:
            typ, _ = conn.uid('STORE', uid, '-FLAGS', '(\\Seen)')
        elif action == BulkActionType.DELETE:
            typ, _ = conn.uid('STORE', uid, '+FLAGS', '(\\Deleted)')
            if typ == 'OK':
                context.expunge_uids.append(uid)
        elif 'MOVE' in conn.capabilities:
            typ, _ = conn.uid('MOVE', uid, quote_mailbox(context.junk_mailbox))
        else:
            typ, _ = conn.uid('COPY', uid, quote_mailbox(context.junk_mailbox))
            if typ == 'OK':
                typ, _ = conn.uid('STORE', uid, '+FLAGS', '(\\Deleted)')
                if typ == 'OK':
                    context.expunge_uids.append(uid)

        if typ != 'OK':
            raise ProviderError(f"{action.value} rejected by server for message {uid}")

    def _expunge_requested(self, context: _ImapBulkContext) -> Dict[str, str]:
        """Expunge only the UIDs this batch flagged; returns the ones left behind."""
        conn = context.conn
        if 'UIDPLUS' not in conn.capabilities:
            # Plain EXPUNGE is mailbox-wide
            logger.info(
                f"Server lacks UIDPLUS; leaving {len(context.expunge_uids)} messages "
                f"flagged \\Deleted in {context.mailbox}"
            )
            return {}
        try:
            typ, data = conn.uid('EXPUNGE', ','.join(context.expunge_uids))
            reason = None if typ == 'OK' else f"expunge rejected by server: {data}"
        except (imaplib.IMAP4.error, OSError) as e:
            reason = f"expunge failed: {e}"
        if reason is None:
            return {}
        logger.warning(f"IMAP UID EXPUNGE failed on {context.mailbox}: {reason}")
        return {uid: reason for uid in context.expunge_uids}

    def _close_bulk(self, context: _ImapBulkContext) -> Dict[str, str]:
        try:
            if context.expunge_uids:
                return self._expunge_requested(context)
            return {}
        finally:
            self._close(context.conn)

    async def _prepare_bulk_action(self, request: BulkActionRequest) -> _ImapBulkContext:
        return await self._run(self._open_bulk, request)

    async def _apply_action(self, context: _ImapBulkContext, request: BulkActionRequest, message_id: str) -> None:
        await self._run(self._apply_sync, context, request.action, message_id)

    async def _finish_bulk_action(self, context: _ImapBulkContext, request: BulkActionRequest) -> Dict[str, str]:
        return await self._run(self._close_bulk, context)
