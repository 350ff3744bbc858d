"""
Conversation grouping and thread aggregation.

Thread aggregates are always recomputed from the full message set so the
derived flags and counters never drift from the messages they summarize.
"""

import logging
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from mailhub.providers.email.base import (
    LABEL_DRAFT,
    LABEL_INBOX,
    LABEL_SENT,
    LABEL_SPAM,
    LABEL_STARRED,
    LABEL_TRASH,
    EmailRecord,
    ThreadRecord,
    generate_id,
)
from mailhub.providers.email.normalizer import make_snippet, participants

logger = logging.getLogger(__name__)

T = TypeVar("T")


def imap_conversation_id(
    references: Optional[str],
    in_reply_to: Optional[str],
    message_id: Optional[str],
) -> str:
    """
    Conversation key for protocols without native threading.

    The first Message-ID in References (the thread root) wins, then
    In-Reply-To, then the message's own Message-ID. A message with none of
    these becomes its own conversation.
    """
    if references:
        tokens = references.split()
        if tokens:
            return tokens[0]
    if in_reply_to and in_reply_to.strip():
        return in_reply_to.strip()
    if message_id and message_id.strip():
        return message_id.strip()
    return f"<{generate_id()}@mailhub.local>"


def group_by_conversation(items: Iterable[T], key: Callable[[T], str]) -> "OrderedDict[str, List[T]]":
    """Group items by conversation key, keeping first-seen group order."""
    groups: "OrderedDict[str, List[T]]" = OrderedDict()
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


def build_thread(
    account_id: str,
    external_id: str,
    emails: List[EmailRecord],
    *,
    thread_id: Optional[str] = None,
    snippet: Optional[str] = None,
) -> ThreadRecord:
    """
    Build a thread aggregate from its complete message set.

    Args:
        account_id: Owning account
        external_id: Provider conversation id
        emails: Every message of the thread (order irrelevant)
        thread_id: Local id to keep; a new one is generated when omitted
        snippet: Provider-supplied thread snippet, if any

    Returns:
        ThreadRecord whose flags are derived from the union of message labels
    """
    if not emails:
        raise ValueError(f"Thread {external_id} has no messages")

    ordered = sorted(emails, key=lambda e: e.received_at)
    latest = ordered[-1]
    local_id = thread_id or generate_id()

    labels = set()
    for record in ordered:
        labels.update(record.labels)
        # Records carry the thread id they were built with
        record.thread_id = local_id

    in_inbox = LABEL_INBOX in labels
    is_trashed = LABEL_TRASH in labels

    if snippet is None:
        snippet = latest.snippet or make_snippet(latest.body_text, latest.body_html)

    return ThreadRecord(
        id=local_id,
        external_id=external_id,
        account_id=account_id,
        subject=latest.subject or "(No Subject)",
        snippet=snippet or "",
        participants=participants(ordered),
        in_inbox=in_inbox,
        is_sent=LABEL_SENT in labels,
        is_draft=LABEL_DRAFT in labels or any(e.is_draft for e in ordered),
        is_starred=LABEL_STARRED in labels or any(e.is_starred for e in ordered),
        is_archived=not in_inbox and not is_trashed,
        is_trashed=is_trashed,
        is_spam=LABEL_SPAM in labels,
        unread_count=sum(1 for e in ordered if not e.is_read),
        message_count=len(ordered),
        has_attachments=any(e.has_attachments for e in ordered),
        last_message_at=max(max(e.sent_at, e.received_at) for e in ordered),
    )


def merge_emails(
    existing: Iterable[EmailRecord],
    incoming: Iterable[EmailRecord],
) -> List[EmailRecord]:
    """Union of two message sets keyed by external id; incoming wins."""
    merged: Dict[str, EmailRecord] = {e.external_id: e for e in existing}
    for record in incoming:
        previous = merged.get(record.external_id)
        if previous is not None:
            record.id = previous.id
        merged[record.external_id] = record
    return list(merged.values())
