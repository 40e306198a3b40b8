# Inbound email: match replies to grievances by the tracking ID in the subject
#
# Best-effort adapter. Unmatched or unparseable mail is dropped.

import asyncio
import email
import imaplib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.utils import parsedate_to_datetime
from typing import List, Optional

from .config import (
    IMAP_HOST, IMAP_PORT, IMAP_USER, IMAP_PASSWORD, IMAP_POLL_SECONDS, TRACKING_ID_PREFIX,
    new_id, now_utc,
)
from .db import executor

logger = logging.getLogger(__name__)

SUBJECT_TRACKING_RE = re.compile(rf"\b{TRACKING_ID_PREFIX}-(\d{{4}})\b", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass
class InboundEmail:
    message_id: Optional[str]
    subject: str
    from_: str
    to: str
    content: str
    timestamp: datetime = field(default_factory=now_utc)


def extract_tracking_id(subject: Optional[str]) -> Optional[str]:
    """Return the ``GR-####`` ID embedded in a subject line, if any."""
    if not subject:
        return None
    match = SUBJECT_TRACKING_RE.search(subject)
    if not match:
        return None
    return f"{TRACKING_ID_PREFIX}-{match.group(1)}"


def _body_text(message) -> str:
    part = message.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    text = part.get_content()
    if part.get_content_subtype() == "html":
        text = _TAG_RE.sub(" ", text)
    return text.strip()


def parse_message(raw: bytes) -> InboundEmail:
    message = email.message_from_bytes(raw, policy=policy.default)
    timestamp = now_utc()
    if message["Date"]:
        try:
            timestamp = parsedate_to_datetime(str(message["Date"]))
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header: %r", message["Date"])
    return InboundEmail(
        message_id=str(message["Message-ID"]) if message["Message-ID"] else None,
        subject=str(message["Subject"] or ""),
        from_=str(message["From"] or ""),
        to=str(message["To"] or ""),
        content=_body_text(message),
        timestamp=timestamp,
    )


def record_inbound_email(db, inbound: InboundEmail) -> bool:
    """Append a reply to its grievance's thread and comments.

    Returns False when the subject carries no known tracking ID.
    """
    tracking_id = extract_tracking_id(inbound.subject)
    if not tracking_id:
        logger.debug("Dropping inbound email without tracking ID: %r", inbound.subject)
        return False
    received = now_utc()
    entry = {
        "message_id": inbound.message_id, "subject": inbound.subject,
        "from": inbound.from_, "to": inbound.to, "content": inbound.content,
        "timestamp": inbound.timestamp, "is_read": False,
    }
    comment = {
        "id": new_id(), "text": inbound.content, "user_id": None, "created_at": received,
        "is_email_reply": True, "email_message_id": inbound.message_id,
    }
    result = db.grievances.update_one(
        {"tracking_id": tracking_id},
        {"$push": {"email_thread": entry, "comments": comment},
         "$set": {"last_email_received": received, "updated_at": received}})
    if result.matched_count == 0:
        logger.debug("Dropping inbound email for unknown grievance %s", tracking_id)
        return False
    logger.info("Recorded email reply on %s from %s", tracking_id, inbound.from_)
    return True


class MailboxPoller:
    """Polls an IMAP inbox for unseen replies and records them."""

    def __init__(self, db, host: str = IMAP_HOST, port: int = IMAP_PORT,
                 user: str = IMAP_USER, password: str = IMAP_PASSWORD,
                 interval: int = IMAP_POLL_SECONDS, mailbox: str = "INBOX"):
        self.db = db
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.interval = interval
        self.mailbox = mailbox
        self._task: Optional[asyncio.Task] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user and self.password)

    def fetch_unseen(self) -> List[bytes]:
        messages = []
        with imaplib.IMAP4_SSL(self.host, self.port) as imap:
            imap.login(self.user, self.password)
            imap.select(self.mailbox)
            status, data = imap.search(None, "UNSEEN")
            if status != "OK":
                return messages
            for num in data[0].split():
                status, parts = imap.fetch(num, "(RFC822)")
                if status != "OK":
                    continue
                for part in parts:
                    if isinstance(part, tuple):
                        messages.append(part[1])
        return messages

    def poll_once(self) -> int:
        recorded = 0
        for raw in self.fetch_unseen():
            try:
                if record_inbound_email(self.db, parse_message(raw)):
                    recorded += 1
            except Exception as e:
                logger.error("Failed to record inbound email: %s", e)
        return recorded

    async def run(self):
        loop = asyncio.get_event_loop()
        logger.info("Mailbox poller started for %s@%s", self.user, self.host)
        while True:
            try:
                recorded = await loop.run_in_executor(executor, self.poll_once)
                if recorded:
                    logger.info("Recorded %d inbound email(s)", recorded)
            except Exception as e:
                logger.error("IMAP poll error: %s", e)
            await asyncio.sleep(self.interval)

    def start(self) -> Optional[asyncio.Task]:
        if not self.is_configured:
            logger.warning("IMAP not configured, inbound email listener disabled")
            return None
        self._task = asyncio.get_event_loop().create_task(self.run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
