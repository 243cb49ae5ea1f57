#!/usr/bin/env python3
"""
umail - Hide a message in the MIME boundaries of ordinary emails.

Usage:
    umail <command> [options] [args...]

Commands:
    info                          Show the application directories
    create-key     <name> <src>   Create a key pool from a file of random bytes
    info-key       <name>         Show a key pool's position and fingerprint
    reset-key      <name> <pos>   Move a key pool's position (reuses key bytes!)
    create-session <name>         Encrypt a message into a new mailing session
    info-session   <name>         Show a session's boundaries and progress
    reset-session  <name>         Restart sending a session from its first email
    send           <name> <from> <to> <subject>
                                  Send the next boundary of a session
    rcv                           List received emails that carry a boundary
    reveal         <boundary...>  Decode boundaries with the receiver's key pool

Environment:
    UMAIL_HOME       application directory (default: ~/.smailer)
    UMAIL_PASSWORD   SMTP/IMAP password used when --password is not given
"""

import io
import os
import sys
import imaplib
import logging
import smtplib
import argparse
from pathlib import Path
from typing import List, NamedTuple, Optional

from keypool import KeyPool, PoolError
from ledger import SessionError, SessionStore, decode_session, validate_name
from mailer import (
    DEFAULT_IMAP_HOST,
    DEFAULT_IMAP_PORT,
    DEFAULT_SMTP_HOST,
    DEFAULT_SMTP_PORT,
    MailError,
    SmtpMailer,
    build_email,
    fetch_boundaries,
)
from otp_utils import (
    BOUNDARY_LENGTH,
    boundary_from_hex,
    boundary_to_hex,
    decode_boundaries,
    generate_key_material,
    load_message,
)

# ============================================================
#  CONFIGURATION
# ============================================================

HOME_ENV              = "UMAIL_HOME"
PASSWORD_ENV          = "UMAIL_PASSWORD"
DEFAULT_APP_DIR_NAME  = ".smailer"
SESSION_SUBDIR        = "sessions"
KEY_SUBDIR            = "keys"

DEFAULT_KEY_NAME      = "key"
DEFAULT_MESSAGE_PATH  = "message.txt"
DEFAULT_BODY_FILE     = "body1.txt"

log = logging.getLogger("umail")


class AppEnv(NamedTuple):
    app_dir:     Path
    session_dir: Path
    key_dir:     Path

    def key_path(self, name: str) -> Path:
        if not validate_name(name):
            raise ValueError(f"Invalid key name: {name!r}")
        return self.key_dir / name


def init_env(home: Optional[str] = None) -> AppEnv:
    """Locate the application directory and create its layout if missing."""
    app_dir = Path(home or os.environ.get(HOME_ENV) or Path.home() / DEFAULT_APP_DIR_NAME)
    if app_dir.exists() and not app_dir.is_dir():
        raise NotADirectoryError(
            f"The application directory \"{app_dir}\" exists but is not a directory")

    env = AppEnv(app_dir, app_dir / SESSION_SUBDIR, app_dir / KEY_SUBDIR)
    for d in (env.session_dir, env.key_dir):
        d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return env


def _password(args) -> str:
    return args.password if args.password is not None else os.environ.get(PASSWORD_ENV, "")


def _confirm(prompt: str) -> bool:
    return input(f"{prompt} [y/N]: ").strip().lower() == 'y'


# ============================================================
#  COMMANDS
# ============================================================

def cmd_info(args, env: AppEnv) -> None:
    print(f"Application directory: \"{env.app_dir}\"")
    print(f"Session directory: \"{env.session_dir}\"")
    print(f"Key directory: \"{env.key_dir}\"")


def cmd_create_key(args, env: AppEnv) -> None:
    if args.random:
        source = io.BytesIO(generate_key_material(args.random))
    elif args.source:
        source = args.source
    else:
        raise ValueError("create-key needs a source file or --random <bytes>")

    with KeyPool.create(env.key_path(args.name), source, overwrite=args.force) as pool:
        print(f"Created key \"{args.name}\" ({pool.path}): {pool.size} bytes")
        print(f"Fingerprint: {pool.fingerprint()}")


def cmd_info_key(args, env: AppEnv) -> None:
    with KeyPool.open(env.key_path(args.name)) as pool:
        print(f"file: \"{pool.path}\"")
        print(f"size: {pool.size} bytes")
        print(f"current read position: {pool.current_offset()}")
        print(f"remaining: {pool.remaining} bytes")
        print(f"fingerprint: {pool.fingerprint()}")


def cmd_reset_key(args, env: AppEnv) -> None:
    with KeyPool.open(env.key_path(args.name)) as pool:
        current = pool.current_offset()
        if args.position < current and not args.yes:
            if not _confirm(f"Move key \"{args.name}\" back from {current} to {args.position}? "
                            f"Key bytes {args.position}..{current} will be reused."):
                print("Cancelled.")
                return
        pool.set_offset(args.position)
        print(f"Key \"{args.name}\" position: {pool.current_offset()}")


def cmd_create_session(args, env: AppEnv) -> None:
    store   = SessionStore(env.session_dir)
    payload = load_message(args.message)
    with KeyPool.open(env.key_path(args.key)) as pool:
        session = store.create(args.name, pool, payload, args.chunk_length)
        print(f"Created session \"{session.name}\": {session.total} emails to send "
              f"(key \"{session.pool_name}\" from position {session.pool_position})")


def cmd_info_session(args, env: AppEnv) -> None:
    store   = SessionStore(env.session_dir)
    session = store.load(args.name)

    print(f"name: \"{session.name}\" ({store.path(session.name)})")
    print(f"pool: \"{session.pool_name}\" ({env.key_dir / session.pool_name}) "
          f"at {session.pool_position}")
    print(f"state: {session.state}")
    print(f"email sent: {session.email_index}")
    print(f"boundaries ({session.total}):")
    for i, b in enumerate(session.boundaries):
        print(f"[{i:3d}]  [{', '.join(str(v) for v in b)}] (len: {len(b)})")
        print(f"       => \"{boundary_to_hex(b)}\"")
    print(f"number of emails to send: {session.remaining()}")

    if args.decode:
        with KeyPool.open(env.key_path(session.pool_name)) as pool:
            message = decode_session(session, pool)
        print(f"\nThe hidden message ({len(message)} bytes) is:\n")
        print(message.decode('utf-8', errors='replace'))


def cmd_reset_session(args, env: AppEnv) -> None:
    store   = SessionStore(env.session_dir)
    session = store.load(args.name)
    session.reset_progress()
    store.save(session)
    print(f"Session \"{session.name}\" reset: {session.remaining()} emails to send")


def cmd_send(args, env: AppEnv) -> None:
    store   = SessionStore(env.session_dir)
    session = store.load(args.name)
    body    = Path(args.body).read_text(encoding='utf-8')

    boundary = boundary_to_hex(session.current_boundary())
    msg      = build_email(args.sender, args.recipient, args.subject, body, boundary)
    mailer   = SmtpMailer(args.smtp, args.port, args.user, _password(args),
                          verify_tls=not args.insecure)
    mailer.send(msg, args.sender, args.recipient)

    session.advance()
    store.save(session)

    print(f"Number of emails sent: {session.email_index} (over {session.total})")
    if session.is_complete:
        print("The session has been entirely processed.")


def cmd_rcv(args, env: AppEnv) -> None:
    entries = fetch_boundaries(args.imap, args.port, args.user, _password(args),
                               sender=args.sender, mailbox=args.mailbox,
                               verify_tls=not args.insecure)
    if not entries:
        print("No emails with a boundary.")
        return
    for e in entries:
        print(f"[{e.seq:4d}] {e.date}")
        print(f"       Subject: {e.subject}")
        print(f"       From: {e.sender}")
        print(f"       Boundary: {e.boundary}")
        print()


def cmd_reveal(args, env: AppEnv) -> None:
    chunks  = [boundary_from_hex(b) for b in args.boundaries]
    lengths = {len(c) for c in chunks}
    if len(lengths) != 1 or 0 in lengths:
        raise ValueError("All boundaries must be non-empty and have the same length")

    with KeyPool.open(env.key_path(args.key)) as pool:
        key_chunks = pool.take_chunks(len(chunks), lengths.pop())
    message = decode_boundaries(chunks, key_chunks)

    print(f"Length of the (hidden) message: {len(message)}")
    print(f"The hidden message is:\n\n{message.decode('utf-8', errors='replace')}\n")


COMMANDS = {
    'info':           cmd_info,
    'create-key':     cmd_create_key,
    'info-key':       cmd_info_key,
    'reset-key':      cmd_reset_key,
    'create-session': cmd_create_session,
    'info-session':   cmd_info_session,
    'reset-session':  cmd_reset_session,
    'send':           cmd_send,
    'rcv':            cmd_rcv,
    'reveal':         cmd_reveal,
}


# ============================================================
#  MAIN
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="umail",
                                description="Hide a message in the MIME boundaries of emails")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--home", help=f"Application directory (default: ${HOME_ENV} or ~/.smailer)")
    sub = p.add_subparsers(dest="command", metavar="command", required=True)

    sub.add_parser("info", help="print information about the application")

    s = sub.add_parser("create-key", help="create a key from a given file")
    s.add_argument("name")
    s.add_argument("source", nargs="?", help="file of random bytes")
    s.add_argument("--random", type=int, metavar="BYTES",
                   help="generate BYTES random bytes instead of reading a file")
    s.add_argument("--force", action="store_true", help="overwrite an existing key")

    s = sub.add_parser("info-key", help="print information about a key")
    s.add_argument("name")

    s = sub.add_parser("reset-key", help="set the key's read position")
    s.add_argument("name")
    s.add_argument("position", type=int)
    s.add_argument("--yes", action="store_true", help="do not ask for confirmation")

    s = sub.add_parser("create-session", help="create a mailing session")
    s.add_argument("name")
    s.add_argument("--key", default=DEFAULT_KEY_NAME, help="name of the key")
    s.add_argument("--message", default=DEFAULT_MESSAGE_PATH, help="path to the message file")
    s.add_argument("--chunk-length", type=int, default=BOUNDARY_LENGTH,
                   help=f"bytes per boundary (default: {BOUNDARY_LENGTH})")

    s = sub.add_parser("info-session", help="print information about a session")
    s.add_argument("name")
    s.add_argument("--decode", action="store_true",
                   help="also print the hidden message (reads the key, consumes nothing)")

    s = sub.add_parser("reset-session", help="reset the session")
    s.add_argument("name")

    s = sub.add_parser("send", help="send the next email of a session")
    s.add_argument("name")
    s.add_argument("sender")
    s.add_argument("recipient")
    s.add_argument("subject")
    s.add_argument("--body", default=DEFAULT_BODY_FILE, help="file holding the email's body")
    s.add_argument("--smtp", default=DEFAULT_SMTP_HOST, help="SMTP server address")
    s.add_argument("--port", type=int, default=DEFAULT_SMTP_PORT, help="SMTP server port")
    s.add_argument("--user", help="SMTP user (default: sender)")
    s.add_argument("--password", help=f"SMTP password (default: ${PASSWORD_ENV})")
    s.add_argument("--insecure", action="store_true", help="do not verify the TLS certificate")

    s = sub.add_parser("rcv", help="list received emails that carry a boundary")
    s.add_argument("--imap", default=DEFAULT_IMAP_HOST, help="IMAP server address")
    s.add_argument("--port", type=int, default=DEFAULT_IMAP_PORT, help="IMAP server port")
    s.add_argument("--user", default="", help="IMAP user")
    s.add_argument("--password", help=f"IMAP password (default: ${PASSWORD_ENV})")
    s.add_argument("--from", dest="sender", help="only emails from this address")
    s.add_argument("--mailbox", default="INBOX")
    s.add_argument("--insecure", action="store_true", help="do not verify the TLS certificate")

    s = sub.add_parser("reveal", help="decode boundaries (consumes the receiver's key)")
    s.add_argument("boundaries", nargs="+", metavar="boundary")
    s.add_argument("--key", default=DEFAULT_KEY_NAME, help="name of the key")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [UMAIL] %(levelname)s %(message)s",
    )

    try:
        env = init_env(args.home)
        COMMANDS[args.command](args, env)
    except (PoolError, SessionError, MailError, ValueError, OSError,
            smtplib.SMTPException, imaplib.IMAP4.error) as e:
        log.error("%s: %s", args.command, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
