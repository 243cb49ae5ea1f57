"""
mailer.py - Carrying boundaries in ordinary-looking email.

Each email is a multipart/alternative message (a base64 text/plain part and a
base64 text/html part) whose multipart boundary is one hex-rendered
ciphertext chunk.  Nothing else in the email depends on the hidden message.

Transport:
  SMTP over implicit TLS (port 465) for sending, one boundary per email.
  IMAP over TLS (port 993) for listing the boundaries found in a mailbox.
"""

import ssl
import html
import email
import email.policy
import imaplib
import logging
import smtplib
from dataclasses import dataclass
from email.header import Header
from email.message import Message
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Union

DEFAULT_SMTP_HOST  = "localhost"
DEFAULT_SMTP_PORT  = 465
DEFAULT_IMAP_HOST  = "localhost"
DEFAULT_IMAP_PORT  = 993
DEFAULT_MAILBOX    = "INBOX"
CONNECT_TIMEOUT    = 30

HTML_WRAPPER = '<div style="font-family: Arial, sans-serif; font-size: 14px;">'

log = logging.getLogger("umail.mailer")


class MailError(Exception):
    pass


@dataclass
class InboxEntry:
    seq:      int
    date:     str
    sender:   str
    subject:  str
    boundary: str


def tls_context(verify: bool = True) -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode    = ssl.CERT_NONE
    return ctx


# ─────────────────────────────────────────────────────────────────────────────
# Formatting
# ─────────────────────────────────────────────────────────────────────────────

def html_body(text: str) -> str:
    lines = [HTML_WRAPPER]
    lines += ["<p>" + html.escape(line) + "</p>" for line in text.split("\n")]
    lines.append("</div>")
    return "\n".join(lines)


def build_email(sender: str, recipient: str, subject: str, body: str,
                boundary: str) -> MIMEMultipart:
    """Render one carrier email using `boundary` as its multipart boundary."""
    msg = MIMEMultipart("alternative", boundary=boundary)
    msg["From"]    = sender
    msg["To"]      = recipient
    msg["Subject"] = Header(subject, "utf-8")
    msg.attach(MIMEText(body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body(body), "html", "utf-8"))
    return msg


def extract_boundary(raw: Union[bytes, str, Message]) -> Optional[str]:
    """Return the multipart boundary of an email, or None if it has none."""
    if isinstance(raw, Message):
        msg = raw
    elif isinstance(raw, bytes):
        msg = email.message_from_bytes(raw, policy=email.policy.default)
    else:
        msg = email.message_from_string(raw, policy=email.policy.default)
    return msg.get_boundary()


# ─────────────────────────────────────────────────────────────────────────────
# Transport
# ─────────────────────────────────────────────────────────────────────────────

class SmtpMailer:
    """Delivers carrier emails through an SMTPS server."""

    def __init__(
        self,
        host: str           = DEFAULT_SMTP_HOST,
        port: int           = DEFAULT_SMTP_PORT,
        user: Optional[str] = None,
        password: str       = "",
        verify_tls: bool    = True,
    ) -> None:
        self.host       = host
        self.port       = port
        self.user       = user
        self.password   = password
        self.verify_tls = verify_tls

    def send(self, msg: Message, sender: str, recipient: str) -> None:
        with smtplib.SMTP_SSL(self.host, self.port, timeout=CONNECT_TIMEOUT,
                              context=tls_context(self.verify_tls)) as smtp:
            if self.password:
                smtp.login(self.user or sender, self.password)
            smtp.send_message(msg, from_addr=sender, to_addrs=[recipient])
        log.info("Sent email %s → %s via %s:%d", sender, recipient, self.host, self.port)


def fetch_boundaries(
    host: str              = DEFAULT_IMAP_HOST,
    port: int              = DEFAULT_IMAP_PORT,
    user: str              = "",
    password: str          = "",
    sender: Optional[str]  = None,
    mailbox: str           = DEFAULT_MAILBOX,
    verify_tls: bool       = True,
) -> List[InboxEntry]:
    """
    List the emails of `mailbox` that carry a multipart boundary, oldest
    first.  Only headers are fetched and messages are not marked as seen.
    """
    if sender and any(c in sender for c in "\"\\\r\n"):
        raise MailError(f"Invalid sender address for IMAP search: {sender!r}")

    entries = []
    with imaplib.IMAP4_SSL(host, port, ssl_context=tls_context(verify_tls)) as imap:
        imap.login(user, password)
        typ, data = imap.select(mailbox, readonly=True)
        if typ != "OK":
            raise MailError(f"Cannot select mailbox \"{mailbox}\": {data!r}")

        if sender:
            typ, data = imap.search(None, "FROM", f'"{sender}"')
        else:
            typ, data = imap.search(None, "ALL")
        if typ != "OK":
            raise MailError(f"Cannot search mailbox \"{mailbox}\": {data!r}")

        for num in data[0].split():
            typ, parts = imap.fetch(num, "(BODY.PEEK[HEADER])")
            if typ != "OK":
                raise MailError(f"Cannot fetch message {num.decode()}: {parts!r}")
            header = next((p[1] for p in parts if isinstance(p, tuple)), None)
            if header is None:
                continue
            msg = email.message_from_bytes(header, policy=email.policy.default)
            boundary = msg.get_boundary()
            if boundary is None:
                continue
            entries.append(InboxEntry(
                seq      = int(num),
                date     = str(msg.get("Date", "")),
                sender   = str(msg.get("From", "")),
                subject  = str(msg.get("Subject", "")),
                boundary = boundary,
            ))

    log.info("Found %d emails with a boundary in %s@%s:%d/%s",
             len(entries), user, host, port, mailbox)
    return entries
