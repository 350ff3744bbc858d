"""
Address and content normalization shared by the provider adapters.

Turns provider-specific address strings, MIME trees and Gmail JSON
payloads into the normalized pieces of an EmailRecord.
"""

import base64
import email.errors
import email.header
import email.utils
import html
import logging
import re
from datetime import datetime, timezone
from email.message import EmailMessage as MIMEEmailMessage, Message
from typing import Any, Dict, Iterable, List, Optional, Tuple

from mailhub.providers.email.base import EmailAddress, EmailRecord, SendEmailParams

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"\s+")


def decode_header_value(value: Optional[str]) -> str:
    """Decode a MIME encoded-word header into text."""
    if not value:
        return ""

    try:
        decoded_parts = email.header.decode_header(str(value))
    except email.errors.HeaderParseError:
        return str(value)

    parts = []
    for content, charset in decoded_parts:
        if isinstance(content, bytes):
            try:
                parts.append(content.decode(charset or "utf-8", errors="replace"))
            except LookupError:
                parts.append(content.decode("utf-8", errors="replace"))
        else:
            parts.append(content)
    return "".join(parts).strip()


def parse_address(raw: Optional[str]) -> Optional[EmailAddress]:
    """
    Parse a single RFC 5322 address.

    ``"Ann <ann@x.com>"`` yields name "Ann" and address "ann@x.com";
    a bare address yields no name. The address keeps its original case.

    Returns:
        EmailAddress, or None when no address could be found
    """
    if not raw:
        return None
    name, address = email.utils.parseaddr(decode_header_value(raw))
    if not address:
        return None
    return EmailAddress(address=address, name=name or None)


def parse_address_list(raw: Optional[str]) -> List[EmailAddress]:
    """Parse a comma-separated address header; empty entries are dropped."""
    if not raw:
        return []
    return [
        EmailAddress(address=address, name=name or None)
        for name, address in email.utils.getaddresses([decode_header_value(raw)])
        if address
    ]


def build_outbound_message(params: SendEmailParams, sender: str) -> MIMEEmailMessage:
    """Build an RFC 5322 message for providers that send raw MIME."""
    msg = MIMEEmailMessage()
    msg["From"] = sender
    msg["To"] = ", ".join(params.to)
    if params.cc:
        msg["Cc"] = ", ".join(params.cc)
    if params.bcc:
        msg["Bcc"] = ", ".join(params.bcc)
    msg["Subject"] = params.subject
    msg["Date"] = email.utils.formatdate(localtime=False)
    msg["Message-ID"] = email.utils.make_msgid(domain=sender.rpartition("@")[2] or None)
    if params.reply_to_header_id:
        msg["In-Reply-To"] = params.reply_to_header_id
        msg["References"] = params.reply_to_header_id

    if params.is_html:
        msg.set_content(html_to_text(params.body).strip() or " ")
        msg.add_alternative(params.body, subtype="html")
    else:
        msg.set_content(params.body)

    for attachment in params.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        msg.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
            disposition="inline" if attachment.is_inline else "attachment",
            cid=attachment.content_id,
        )
    return msg


def participants(emails: Iterable[EmailRecord]) -> List[str]:
    """Lowercased, de-duplicated from/to/cc addresses in first-seen order."""
    seen: Dict[str, None] = {}
    for record in emails:
        if record.from_address:
            seen.setdefault(record.from_address.strip().lower(), None)
        for address in list(record.to_addresses) + list(record.cc_addresses):
            if address.address:
                seen.setdefault(address.key, None)
    return list(seen)


# ==================== Bodies ====================

def _is_attachment(part: Message) -> bool:
    disposition = str(part.get("Content-Disposition", "")).lower()
    return "attachment" in disposition


def extract_mime_bodies(msg: Message) -> Tuple[Optional[str], Optional[str]]:
    """First non-attachment text/plain and text/html parts of a MIME message."""
    body_plain: Optional[str] = None
    body_html: Optional[str] = None

    for part in msg.walk():
        if part.is_multipart() or _is_attachment(part):
            continue

        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue

        payload = part.get_payload(decode=True)
        if not payload:
            continue
        charset = part.get_content_charset() or "utf-8"
        try:
            text = payload.decode(charset, errors="replace")
        except LookupError:
            text = payload.decode("utf-8", errors="replace")

        if content_type == "text/plain" and body_plain is None:
            body_plain = text
        elif content_type == "text/html" and body_html is None:
            body_html = text

    return body_plain, body_html


def has_mime_attachments(msg: Message) -> bool:
    for part in msg.walk():
        if part.is_multipart():
            continue
        if _is_attachment(part) or part.get_filename():
            return True
    return False


def decode_base64url(data: str) -> str:
    """Decode Gmail's URL-safe base64 (padding optional)."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        logger.debug("Could not decode base64url body part")
        return ""


def extract_gmail_bodies(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Walk a Gmail message payload and return (text, html)."""
    body_plain: Optional[str] = None
    body_html: Optional[str] = None

    mime_type = payload.get("mimeType", "")
    data = payload.get("body", {}).get("data")
    if data and not payload.get("filename"):
        text = decode_base64url(data)
        if mime_type == "text/html":
            body_html = text
        elif mime_type.startswith("text/"):
            body_plain = text

    for part in payload.get("parts", []) or []:
        nested_plain, nested_html = extract_gmail_bodies(part)
        if body_plain is None:
            body_plain = nested_plain
        if body_html is None:
            body_html = nested_html

    return body_plain, body_html


def gmail_has_attachments(payload: Dict[str, Any]) -> bool:
    if payload.get("filename"):
        return True
    return any(gmail_has_attachments(p) for p in payload.get("parts", []) or [])


def html_to_text(value: str) -> str:
    stripped = _TAG_RE.sub(" ", _BLOCK_RE.sub(" ", value))
    return html.unescape(stripped)


def make_snippet(
    body_text: Optional[str],
    body_html: Optional[str] = None,
    limit: int = SNIPPET_LENGTH,
) -> str:
    """Whitespace-collapsed preview text for providers that supply none."""
    source = body_text or (html_to_text(body_html) if body_html else "")
    return _WS_RE.sub(" ", source).strip()[:limit]


# ==================== Dates ====================

def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp such as Graph's ``2024-01-01T10:00:00Z``."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # Graph may send 7 fractional digits; fromisoformat accepts at most 6
    value = re.sub(r"(\.\d{6})\d+", r"\1", value)
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        logger.debug(f"Unparseable ISO timestamp: {value}")
        return None


def parse_epoch_millis(value: Optional[Any]) -> Optional[datetime]:
    """Parse Gmail's ``internalDate`` (milliseconds since epoch)."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_rfc2822_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a ``Date:`` header."""
    if not value:
        return None
    try:
        return _as_utc(email.utils.parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def header_map(headers: Iterable[Dict[str, str]]) -> Dict[str, str]:
    """Gmail ``payload.headers`` list to a lowercase-keyed dict (first wins)."""
    result: Dict[str, str] = {}
    for header in headers:
        name = header.get("name", "").lower()
        if name and name not in result:
            result[name] = header.get("value", "")
    return result
