"""
IMAP/SMTP provider.

Reads the INBOX over IMAP (aioimaplib) and sends through SMTP (smtplib, run
in a worker thread). The sync cursor is ``"{UIDVALIDITY}:{last UID}"``;
a changed UIDVALIDITY invalidates every stored UID and forces a full sync.
"""

import email
import email.policy
import logging
import re
import smtplib
import ssl
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set, Tuple

import aioimaplib

from mailhub.providers.email.base import (
    LABEL_DRAFT,
    LABEL_INBOX,
    LABEL_STARRED,
    LABEL_TRASH,
    LABEL_UNREAD,
    AuthError,
    BaseEmailProvider,
    CursorInvalidError,
    EmailRecord,
    FolderInfo,
    FolderType,
    NotFoundError,
    ProviderConnectionError,
    ProviderKind,
    SendEmailParams,
    SendError,
    ServerCredentials,
    SyncResult,
    ThreadBundle,
    generate_id,
    utcnow,
)
from mailhub.providers.email.grouping import build_thread, group_by_conversation, imap_conversation_id
from mailhub.providers.email.normalizer import (
    build_outbound_message,
    extract_mime_bodies,
    has_mime_attachments,
    parse_address,
    parse_address_list,
    parse_rfc2822_datetime,
)
from mailhub.providers.registry import register_provider

logger = logging.getLogger(__name__)

INBOX = "INBOX"
DEFAULT_SMTP_PORT = 587
SMTP_SSL_PORT = 465

# How far below the cursor's last UID expunged messages are looked for
DELETION_SCAN_WINDOW = 1000

IMAP_ERRORS = (OSError, aioimaplib.Abort, aioimaplib.CommandTimeout)

SPECIAL_USE_FLAGS = {
    "\\sent": FolderType.SENT,
    "\\drafts": FolderType.DRAFTS,
    "\\trash": FolderType.TRASH,
    "\\junk": FolderType.SPAM,
    "\\archive": FolderType.ARCHIVE,
    "\\all": FolderType.ARCHIVE,
}

FOLDER_NAMES = {
    "inbox": FolderType.INBOX,
    "sent": FolderType.SENT,
    "sent mail": FolderType.SENT,
    "sent items": FolderType.SENT,
    "drafts": FolderType.DRAFTS,
    "trash": FolderType.TRASH,
    "deleted": FolderType.TRASH,
    "deleted items": FolderType.TRASH,
    "spam": FolderType.SPAM,
    "junk": FolderType.SPAM,
    "archive": FolderType.ARCHIVE,
    "all mail": FolderType.ARCHIVE,
}

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delim>"[^"]*"|NIL)\s+(?P<name>.+)$')
_UID_RE = re.compile(r"UID\s+(\d+)")
_FLAGS_RE = re.compile(r"FLAGS\s+\(([^)]*)\)")


def _text(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def quote_mailbox(name: str) -> str:
    if name.startswith('"'):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def parse_cursor(cursor: str) -> Tuple[int, int]:
    """Split ``"uidvalidity:lastuid"``; anything else is an invalid cursor."""
    try:
        validity, last_uid = cursor.split(":")
        return int(validity), int(last_uid)
    except (AttributeError, ValueError):
        raise CursorInvalidError(f"Malformed IMAP cursor: {cursor!r}")


def parse_select_response(lines: List[Any]) -> Dict[str, int]:
    """Pull UIDVALIDITY, UIDNEXT and EXISTS from a SELECT response."""
    info: Dict[str, int] = {}
    for line in lines:
        text = _text(line)
        for key in ("UIDVALIDITY", "UIDNEXT"):
            match = re.search(rf"{key}\s+(\d+)", text)
            if match:
                info[key.lower()] = int(match.group(1))
        match = re.match(r"(?:\*\s+)?(\d+)\s+EXISTS", text)
        if match:
            info["exists"] = int(match.group(1))
    return info


def parse_search_response(lines: List[Any]) -> List[int]:
    uids: List[int] = []
    for line in lines:
        text = _text(line).strip().lstrip("* ")
        if text.upper().startswith("SEARCH"):
            text = text[6:]
        elif not text or not text[0].isdigit():
            continue
        uids.extend(int(token) for token in text.split() if token.isdigit())
    return sorted(set(uids))


def parse_fetch_response(lines: List[Any]) -> List[Dict[str, Any]]:
    """
    Parse ``UID FETCH (UID FLAGS BODY.PEEK[])`` response lines.

    Literal message bodies arrive as bytearray lines following the FETCH
    line that announced them; UID/FLAGS may appear on either side.
    """
    items: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None

    for line in lines:
        if isinstance(line, bytearray):
            if current is not None:
                current["raw"] = bytes(line)
            continue

        text = _text(line)
        if "FETCH" in text and re.match(r"\s*(?:\*\s+)?\d+\s+FETCH", text):
            current = {"flags": []}
            items.append(current)
        if current is None:
            continue

        uid_match = _UID_RE.search(text)
        if uid_match and "uid" not in current:
            current["uid"] = int(uid_match.group(1))
        flags_match = _FLAGS_RE.search(text)
        if flags_match:
            current["flags"] = flags_match.group(1).split()

    return [item for item in items if "uid" in item and "raw" in item]


def parse_list_response(lines: List[Any]) -> List[Tuple[List[str], Optional[str], str]]:
    """Parse LIST lines into (attributes, delimiter, mailbox name)."""
    folders = []
    for line in lines:
        match = _LIST_RE.match(_text(line).strip())
        if not match:
            continue
        delimiter = match.group("delim")
        delimiter = None if delimiter == "NIL" else delimiter.strip('"')
        name = match.group("name").strip()
        if name.startswith('"') and name.endswith('"'):
            name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        folders.append((match.group("flags").split(), delimiter, name))
    return folders


def classify_folder(name: str, attributes: List[str], delimiter: Optional[str] = None) -> FolderType:
    """SPECIAL-USE attributes first, then well-known names."""
    for attribute in attributes:
        folder_type = SPECIAL_USE_FLAGS.get(attribute.lower())
        if folder_type:
            return folder_type
    leaf = name.rsplit(delimiter, 1)[-1] if delimiter else name
    if name.upper() == INBOX:
        return FolderType.INBOX
    return FOLDER_NAMES.get(leaf.strip().lower(), FOLDER_NAMES.get(name.strip().lower(), FolderType.CUSTOM))


@register_provider(ProviderKind.IMAP)
class ImapProvider(BaseEmailProvider):
    """
    IMAP provider for any IMAP4rev1 server with SMTP submission.

    Conversations are derived from References / In-Reply-To / Message-ID.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: Optional[aioimaplib.IMAP4_SSL] = None
        self._selected: Optional[str] = None
        self._folders: Optional[List[FolderInfo]] = None

    # ==================== Session ====================

    def _imap_credentials(self) -> ServerCredentials:
        creds = self.account.imap if self.account else None
        if creds is None or not creds.host or not creds.username or not creds.password:
            raise ProviderConnectionError("IMAP credentials not configured")
        return creds

    def _create_client(self, creds: ServerCredentials):
        return aioimaplib.IMAP4_SSL(
            host=creds.host,
            port=creds.port or 993,
            timeout=self.timeout,
            ssl_context=ssl.create_default_context(),
        )

    async def connect(self) -> None:
        """Connect and log in to the IMAP server."""
        creds = self._imap_credentials()
        try:
            self._client = self._create_client(creds)
            await self._call(self._client.wait_hello_from_server())
            response = await self._call(self._client.login(creds.username, creds.password))
        except IMAP_ERRORS + (ProviderConnectionError,) as e:
            await self._abandon_client()
            raise ProviderConnectionError(f"IMAP connection to {creds.host} failed: {e}")

        if response.result != "OK":
            await self._abandon_client()
            raise AuthError(f"IMAP login rejected for {creds.username}")

        self._selected = None
        self._folders = None
        self._connected = True
        logger.info(f"Connected to IMAP server {creds.host} as {creds.username}")

    async def _abandon_client(self) -> None:
        """Close a half-open session left by a failed connect."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await self._call(client.logout())
        except IMAP_ERRORS + (ProviderConnectionError,) as e:
            logger.debug(f"IMAP logout after failed connect: {e}")

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        was_connected, self._connected = self._connected, False
        self._selected = None
        if client is not None and was_connected:
            try:
                await self._call(client.logout())
            except IMAP_ERRORS + (ProviderConnectionError,) as e:
                logger.warning(f"Error during IMAP logout: {e}")

    async def _command(self, coro, what: str):
        try:
            response = await self._call(coro)
        except IMAP_ERRORS as e:
            raise ProviderConnectionError(f"IMAP {what} failed: {e}")
        if response.result != "OK":
            raise ProviderConnectionError(f"IMAP {what} failed: {response.result} {response.lines}")
        return response

    async def _select(self, mailbox: str = INBOX) -> Dict[str, int]:
        self._require_connected()
        response = await self._command(self._client.select(quote_mailbox(mailbox)), f"SELECT {mailbox}")
        self._selected = mailbox
        return parse_select_response(response.lines)

    async def _ensure_selected(self, mailbox: str = INBOX) -> None:
        if self._selected != mailbox:
            await self._select(mailbox)

    async def _search_uids(self, criteria: str = "ALL") -> List[int]:
        response = await self._command(
            self._client.uid_search(criteria, charset=None), f"UID SEARCH {criteria}"
        )
        return parse_search_response(response.lines)

    async def _fetch_uids(self, uid_set: str) -> List[Dict[str, Any]]:
        response = await self._command(
            self._client.uid("fetch", uid_set, "(UID FLAGS BODY.PEEK[])"),
            f"UID FETCH {uid_set}",
        )
        return parse_fetch_response(response.lines)

    # ==================== Sync ====================

    async def perform_initial_sync(self) -> SyncResult:
        """Fetch the newest INBOX messages and group them into conversations."""
        self._require_connected()
        info = await self._select(INBOX)
        validity = info.get("uidvalidity", 0)

        all_uids = await self._search_uids("ALL") if info.get("exists", 1) else []
        window = all_uids[-self.initial_sync_limit:]
        fetched = await self._fetch_uids(",".join(str(u) for u in window)) if window else []

        last_uid = max(info.get("uidnext", 1) - 1, all_uids[-1] if all_uids else 0)
        bundles = self._bundle(fetched)

        logger.info(f"IMAP initial sync fetched {len(fetched)} messages for {self.account.email}")
        return SyncResult(
            threads=bundles,
            new_cursor=f"{validity}:{last_uid}",
            has_more=len(all_uids) > len(window),
            full_sync=True,
        )

    async def perform_incremental_sync(self, cursor: str) -> SyncResult:
        """Fetch UIDs above the cursor; a UIDVALIDITY change falls back to initial sync."""
        self._require_connected()
        try:
            return await self._sync_since(cursor)
        except CursorInvalidError as e:
            logger.warning(f"IMAP cursor unusable for {self.account.email} ({e}), running initial sync")
            return await self.perform_initial_sync()

    async def _sync_since(self, cursor: str) -> SyncResult:
        validity, last_uid = parse_cursor(cursor)
        info = await self._select(INBOX)
        current_validity = info.get("uidvalidity", 0)
        if current_validity != validity:
            raise CursorInvalidError(f"UIDVALIDITY changed from {validity} to {current_validity}")

        fetched = [
            item for item in await self._fetch_uids(f"{last_uid + 1}:*")
            if item["uid"] > last_uid
        ]

        deleted: List[str] = []
        if last_uid > 0:
            floor = max(1, last_uid - DELETION_SCAN_WINDOW + 1)
            present: Set[int] = set(await self._search_uids(f"UID {floor}:{last_uid}"))
            deleted = [str(uid) for uid in range(floor, last_uid + 1) if uid not in present]

        new_last = max(
            [last_uid, info.get("uidnext", 1) - 1] + [item["uid"] for item in fetched]
        )
        bundles = self._bundle(fetched)

        logger.info(
            f"IMAP incremental sync for {self.account.email}: "
            f"{len(fetched)} new messages, cursor {validity}:{new_last}"
        )
        return SyncResult(
            threads=bundles,
            new_cursor=f"{current_validity}:{new_last}",
            has_more=False,
            deleted_message_ids=deleted,
        )

    def _bundle(self, fetched: List[Dict[str, Any]]) -> List[ThreadBundle]:
        records = []
        for item in fetched:
            record = self._parse_message(item)
            if record is not None:
                records.append(record)

        bundles = []
        groups = group_by_conversation(
            records, lambda r: imap_conversation_id(r.references, r.in_reply_to, r.message_id)
        )
        for conversation_id, emails in groups.items():
            thread_id = generate_id()
            thread = build_thread(self.account_id, conversation_id, emails, thread_id=thread_id)
            bundles.append(ThreadBundle(thread=thread, emails=emails))
        return bundles

    def _parse_message(self, item: Dict[str, Any]) -> Optional[EmailRecord]:
        """Parse one fetched RFC 5322 message into an EmailRecord."""
        try:
            msg = email.message_from_bytes(item["raw"], policy=email.policy.default)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping unparseable IMAP message UID {item.get('uid')}: {e}")
            return None

        flags = {f.lower() for f in item.get("flags", [])}
        labels = [LABEL_INBOX]
        if "\\flagged" in flags:
            labels.append(LABEL_STARRED)
        if "\\draft" in flags:
            labels.append(LABEL_DRAFT)
        if "\\deleted" in flags:
            labels.append(LABEL_TRASH)
        if "\\seen" not in flags:
            labels.append(LABEL_UNREAD)

        def header(name: str) -> Optional[str]:
            value = msg.get(name)
            return str(value).strip() if value is not None else None

        sender = parse_address(header("From"))
        body_text, body_html = extract_mime_bodies(msg)
        sent_at = parse_rfc2822_datetime(header("Date")) or utcnow()

        return EmailRecord(
            id=generate_id(),
            external_id=str(item["uid"]),
            thread_id="",
            account_id=self.account_id,
            from_address=sender.address if sender else "",
            from_name=sender.name if sender else None,
            to_addresses=parse_address_list(header("To")),
            cc_addresses=parse_address_list(header("Cc")),
            bcc_addresses=parse_address_list(header("Bcc")),
            reply_to_addresses=parse_address_list(header("Reply-To")),
            subject=header("Subject") or "(No Subject)",
            body_text=body_text,
            body_html=body_html,
            message_id=header("Message-ID"),
            in_reply_to=header("In-Reply-To"),
            references=header("References"),
            is_read="\\seen" in flags,
            is_starred="\\flagged" in flags,
            is_draft="\\draft" in flags,
            is_deleted="\\deleted" in flags,
            has_attachments=has_mime_attachments(msg),
            labels=labels,
            sent_at=sent_at,
            received_at=sent_at,
        )

    # ==================== Folders ====================

    async def get_folders(self) -> List[FolderInfo]:
        self._require_connected()
        response = await self._command(self._client.list('""', "*"), "LIST")

        folders = []
        for attributes, delimiter, name in parse_list_response(response.lines):
            if any(a.lower() == "\\noselect" for a in attributes):
                continue

            total = unread = 0
            try:
                status = await self._command(
                    self._client.status(quote_mailbox(name), "(MESSAGES UNSEEN)"), f"STATUS {name}"
                )
                status_text = " ".join(_text(line) for line in status.lines)
                messages_match = re.search(r"MESSAGES\s+(\d+)", status_text)
                unseen_match = re.search(r"UNSEEN\s+(\d+)", status_text)
                total = int(messages_match.group(1)) if messages_match else 0
                unread = int(unseen_match.group(1)) if unseen_match else 0
            except ProviderConnectionError as e:
                logger.debug(f"STATUS failed for {name}: {e}")

            leaf = name.rsplit(delimiter, 1)[-1] if delimiter else name
            parent = name.rsplit(delimiter, 1)[0] if delimiter and delimiter in name else None
            folders.append(FolderInfo(
                id=name,
                name=leaf.lower(),
                display_name=leaf,
                type=classify_folder(name, attributes, delimiter),
                parent_id=parent,
                total_count=total,
                unread_count=unread,
            ))

        self._folders = folders
        return folders

    async def _find_folder(self, folder_type: FolderType) -> Optional[str]:
        folders = self._folders if self._folders is not None else await self.get_folders()
        for folder in folders:
            if folder.type == folder_type:
                return folder.id
        return None

    # ==================== Send ====================

    def _smtp_send(self, creds: ServerCredentials, message) -> None:
        port = creds.port or DEFAULT_SMTP_PORT
        context = ssl.create_default_context()
        if port == SMTP_SSL_PORT:
            server = smtplib.SMTP_SSL(creds.host, port, timeout=self.timeout, context=context)
        else:
            server = smtplib.SMTP(creds.host, port, timeout=self.timeout)
        with server:
            if port != SMTP_SSL_PORT:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=context)
                    server.ehlo()
            server.login(creds.username, creds.password)
            server.send_message(message)

    async def send_message(self, params: SendEmailParams) -> str:
        """Send through SMTP; returns the generated Message-ID."""
        self._require_connected()
        creds = self.account.smtp
        if creds is None:
            raise SendError("SMTP not configured for this account", reason="smtp_not_configured")
        if not creds.username and self.account.imap:
            # SMTP login falls back to the IMAP login
            creds = replace(creds, username=self.account.imap.username, password=self.account.imap.password)

        message = build_outbound_message(params, self.account.email)
        try:
            await self._run_blocking(self._smtp_send, creds, message)
        except smtplib.SMTPAuthenticationError as e:
            raise SendError(f"SMTP authentication failed: {e}", reason="auth")
        except (smtplib.SMTPException, OSError, ProviderConnectionError) as e:
            raise SendError(f"SMTP send failed: {e}", reason=str(e))

        logger.info(f"Sent message via SMTP for {self.account.email}")
        return message["Message-ID"]

    # ==================== Mutations ====================

    async def _store(self, uid: str, op: str, flag: str) -> None:
        await self._command(self._client.uid("store", uid, op, f"({flag})"), f"UID STORE {uid}")

    async def _move(self, uid: str, destination: str) -> None:
        target = quote_mailbox(destination)
        if self._client.has_capability("MOVE"):
            await self._command(self._client.uid("move", uid, target), f"UID MOVE {uid}")
            return
        await self._command(self._client.uid("copy", uid, target), f"UID COPY {uid}")
        await self._store(uid, "+FLAGS", "\\Deleted")

    async def _expunge(self) -> None:
        await self._command(self._client.expunge(), "EXPUNGE")

    async def mark_as_read(self, external_ids: List[str], is_read: bool) -> None:
        self._require_connected()
        await self._ensure_selected(INBOX)
        op = "+FLAGS" if is_read else "-FLAGS"
        await self._apply_per_id("mark_as_read", external_ids, lambda i: self._store(i, op, "\\Seen"))

    async def mark_as_starred(self, external_ids: List[str], is_starred: bool) -> None:
        self._require_connected()
        await self._ensure_selected(INBOX)
        op = "+FLAGS" if is_starred else "-FLAGS"
        await self._apply_per_id("mark_as_starred", external_ids, lambda i: self._store(i, op, "\\Flagged"))

    async def _move_all(self, operation: str, external_ids: List[str], destination: str) -> None:
        await self._ensure_selected(INBOX)
        try:
            await self._apply_per_id(operation, external_ids, lambda i: self._move(i, destination))
        finally:
            if not self._client.has_capability("MOVE"):
                await self._expunge()

    async def move_to_folder(self, external_ids: List[str], folder_id: str) -> None:
        self._require_connected()
        await self._move_all("move_to_folder", external_ids, folder_id)

    async def delete_messages(self, external_ids: List[str], permanent: bool = False) -> None:
        self._require_connected()
        trash = None if permanent else await self._find_folder(FolderType.TRASH)
        if trash:
            await self._move_all("delete_messages", external_ids, trash)
            return

        await self._ensure_selected(INBOX)
        try:
            await self._apply_per_id(
                "delete_messages", external_ids, lambda i: self._store(i, "+FLAGS", "\\Deleted")
            )
        finally:
            await self._expunge()

    async def archive_messages(self, external_ids: List[str]) -> None:
        self._require_connected()
        archive = await self._find_folder(FolderType.ARCHIVE)
        if not archive:
            raise NotFoundError("No archive folder on this IMAP server")
        await self._move_all("archive_messages", external_ids, archive)
