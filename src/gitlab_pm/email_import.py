"""Email import: parse .eml and .msg files into communication records."""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from pathlib import Path

import extract_msg

from gitlab_pm.communications import CommunicationRecord, Stakeholder, resolve_stakeholders
from gitlab_pm.dates import as_utc, utcnow
from gitlab_pm.exceptions import EmailParseError

logger = logging.getLogger(__name__)

TAG_KEYWORDS = {
    "decision": ("decided", "decision", "agreed", "approved"),
    "action": ("action item", "todo", "follow up", "follow-up", "please"),
    "risk": ("risk", "concern", "issue with"),
    "blocker": ("blocker", "blocked", "blocking"),
    "status": ("status", "update", "progress"),
    "escalation": ("escalate", "escalation", "urgent"),
}

DEFAULT_REFERENCE_PREFIXES = {"#": "issue", "&": "epic", "%": "milestone"}


@dataclass
class EmailAddress:
    name: str
    email: str


@dataclass
class Attachment:
    filename: str
    content_type: str
    size: int


@dataclass
class ParsedEmail:
    """Fields extracted from an email file."""

    sender: EmailAddress
    to: list[EmailAddress] = field(default_factory=list)
    cc: list[EmailAddress] = field(default_factory=list)
    bcc: list[EmailAddress] = field(default_factory=list)
    subject: str = ""
    date: datetime | None = None
    message_id: str = ""
    body: str = ""
    attachments: list[Attachment] = field(default_factory=list)

    def addresses(self) -> list[str]:
        return [a.email for a in [self.sender, *self.to, *self.cc, *self.bcc] if a.email]


def _addresses(*values) -> list[EmailAddress]:
    headers = [str(v) for v in values if v]
    return [EmailAddress(name=name, email=address) for name, address in getaddresses(headers) if address]


def _parse_date(value) -> datetime | None:
    if isinstance(value, datetime):
        return as_utc(value)
    if not value:
        return None
    try:
        return as_utc(parsedate_to_datetime(str(value)))
    except (TypeError, ValueError):
        logger.warning("Unparseable email date %r", value)
        return None


def parse_eml(data: bytes) -> ParsedEmail:
    """Parse an RFC 5322 message.

    Raises:
        EmailParseError: If the message has no sender
    """
    message = BytesParser(policy=policy.default).parsebytes(data)

    senders = _addresses(message.get("from"))
    if not senders:
        raise EmailParseError("Email has no From address")

    body = ""
    part = message.get_body(preferencelist=("plain", "html"))
    if part is not None:
        body = part.get_content()

    attachments = []
    for attachment in message.iter_attachments():
        payload = attachment.get_payload(decode=True) or b""
        attachments.append(Attachment(
            filename=attachment.get_filename() or "",
            content_type=attachment.get_content_type(),
            size=len(payload),
        ))

    return ParsedEmail(
        sender=senders[0],
        to=_addresses(message.get("to")),
        cc=_addresses(message.get("cc")),
        bcc=_addresses(message.get("bcc")),
        subject=str(message.get("subject", "")),
        date=_parse_date(message.get("date")),
        message_id=str(message.get("message-id", "")),
        body=body.strip(),
        attachments=attachments,
    )


def parse_msg(path: Path) -> ParsedEmail:
    """Parse an Outlook .msg compound file.

    Raises:
        EmailParseError: If the file cannot be opened as a message
    """
    try:
        msg = extract_msg.openMsg(str(path))
    except Exception as e:
        raise EmailParseError(f"Cannot read Outlook message {path.name}: {e}") from e

    try:
        senders = _addresses(msg.sender)
        attachments = []
        for attachment in msg.attachments:
            data = getattr(attachment, "data", None)
            attachments.append(Attachment(
                filename=getattr(attachment, "longFilename", None) or getattr(attachment, "shortFilename", None) or "",
                content_type=getattr(attachment, "mimetype", None) or "application/octet-stream",
                size=len(data) if isinstance(data, bytes) else 0,
            ))
        return ParsedEmail(
            sender=senders[0] if senders else EmailAddress(name=msg.sender or "", email=""),
            to=_addresses(msg.to),
            cc=_addresses(msg.cc),
            bcc=_addresses(msg.bcc),
            subject=msg.subject or "",
            date=_parse_date(msg.date),
            message_id=msg.messageId or "",
            body=(msg.body or "").strip(),
            attachments=attachments,
        )
    finally:
        msg.close()


def parse_email_file(path: Path) -> ParsedEmail:
    """Parse a .eml or .msg file by extension.

    Raises:
        EmailParseError: For unsupported extensions or unreadable files
    """
    suffix = path.suffix.lower()
    if suffix == ".msg":
        return parse_msg(path)
    if suffix != ".eml":
        raise EmailParseError(f"Unsupported email file type '{suffix}'")
    try:
        data = path.read_bytes()
    except OSError as e:
        raise EmailParseError(f"Cannot read {path}: {e}") from e
    return parse_eml(data)


def detect_tags(text: str) -> list[str]:
    """Tags whose keywords occur in ``text``, in TAG_KEYWORDS order."""
    lowered = text.lower()
    return [tag for tag, keywords in TAG_KEYWORDS.items() if any(k in lowered for k in keywords)]


def extract_references(text: str, prefixes: dict[str, str] | None = None) -> list[dict]:
    """Tracker references such as ``#12`` (issue) or ``&3`` (epic), first occurrence order."""
    prefixes = prefixes or DEFAULT_REFERENCE_PREFIXES
    pattern = re.compile(
        r"(?<![\w&#%])(" + "|".join(re.escape(p) for p in prefixes) + r")(\d+)\b"
    )
    seen = set()
    references = []
    for prefix, number in pattern.findall(text):
        reference = (prefixes[prefix], int(number))
        if reference not in seen:
            seen.add(reference)
            references.append({"type": reference[0], "id": reference[1]})
    return references


def to_communication_record(
    parsed: ParsedEmail,
    stakeholders: list[Stakeholder],
    prefixes: dict[str, str] | None = None,
) -> CommunicationRecord:
    """Build an imported communication record from a parsed email."""
    text = f"{parsed.subject}\n{parsed.body}"
    identity = parsed.message_id or f"{parsed.sender.email}|{parsed.subject}|{parsed.date}"
    return CommunicationRecord(
        id=hashlib.sha1(identity.encode("utf-8")).hexdigest()[:16],
        origin="imported",
        subject=parsed.subject,
        body=parsed.body,
        sent_at=parsed.date or utcnow(),
        stakeholder_ids=resolve_stakeholders(parsed.addresses(), stakeholders),
        tags=detect_tags(text),
        references=extract_references(text, prefixes),
    )
