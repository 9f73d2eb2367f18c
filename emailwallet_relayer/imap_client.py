"""
Mailbox watcher: IMAP IDLE with automatic reconnection.

Blocking ``imaplib`` calls run through ``asyncio.to_thread()``. The live
connection is owned by the client and only replaced by ``reconnect()``;
the ImapConfig it was built from never changes.
"""

import asyncio
import imaplib
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog

from .config import ImapConfig, OAuthAuth, PasswordAuth
from .oauth import XOAuth2Authenticator, obtain_access_token

logger = structlog.get_logger()

MAX_RETRIES = 5
RETRY_DELAY_SECONDS = 1.0
# RFC 2177: clients should re-issue IDLE at least every 29 minutes.
IDLE_TIMEOUT_SECONDS = 25 * 60


class ImapIdleError(Exception):
    """The server answered IDLE with something other than new data."""


class ImapReconnectError(Exception):
    """Every reconnect attempt failed."""


# Failures after which the connection is rebuilt.
# imaplib.IMAP4.abort is a subclass of imaplib.IMAP4.error.
RECOVERABLE_ERRORS = (imaplib.IMAP4.error, OSError, ImapIdleError)


@dataclass
class FetchedEmail:
    """Raw message fetched after a new-data notification."""

    uid: str
    raw_bytes: bytes
    envelope: Optional[bytes] = None


def open_session(config: ImapConfig, access_token: Optional[str] = None) -> imaplib.IMAP4_SSL:
    """Connect over TLS, authenticate and select the mailbox (blocking)."""
    conn = imaplib.IMAP4_SSL(config.domain_name, config.port)
    try:
        if isinstance(config.auth, PasswordAuth):
            conn.login(config.auth.user_id, config.auth.password)
        else:
            conn.authenticate(
                "XOAUTH2", XOAuth2Authenticator(config.auth.user_id, access_token or "")
            )

        status, data = conn.select(config.mailbox)
        if status != "OK":
            raise imaplib.IMAP4.error(f"cannot select {config.mailbox}: {data!r}")
    except Exception:
        _shutdown_quietly(conn)
        raise
    return conn


def _shutdown_quietly(conn: imaplib.IMAP4) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


def _envelope_from(segment: bytes) -> Optional[bytes]:
    """Cut the parenthesised ENVELOPE list out of a FETCH response line."""
    start = segment.find(b"ENVELOPE (")
    if start == -1:
        return None
    start += len(b"ENVELOPE ")

    depth = 0
    in_quote = False
    i = start
    while i < len(segment):
        char = segment[i:i + 1]
        if in_quote:
            if char == b"\\":
                i += 1
            elif char == b'"':
                in_quote = False
        elif char == b'"':
            in_quote = True
        elif char == b"(":
            depth += 1
        elif char == b")":
            depth -= 1
            if depth == 0:
                return segment[start:i + 1]
        i += 1
    return None


def parse_fetch_response(uid: str, msg_data: list) -> Optional[FetchedEmail]:
    """Pick BODY[] and ENVELOPE out of imaplib's FETCH result."""
    raw_bytes: Optional[bytes] = None
    envelope: Optional[bytes] = None

    for part in msg_data:
        if isinstance(part, tuple):
            header, literal = part[0], part[1]
            if raw_bytes is None and b"BODY[]" in header:
                raw_bytes = literal
            envelope = envelope or _envelope_from(header)
        elif isinstance(part, bytes):
            envelope = envelope or _envelope_from(part)

    if raw_bytes is None:
        return None
    return FetchedEmail(uid=uid, raw_bytes=raw_bytes, envelope=envelope)


class ImapClient:
    """
    Long-lived IMAP session waiting for push notifications.

    States: connected (after connect()), idling (wait_new_email), fetching
    (retrieve_new_emails) and reconnecting on any I/O or protocol error.
    """

    def __init__(
        self,
        config: ImapConfig,
        idle_timeout: float = IDLE_TIMEOUT_SECONDS,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        open_browser: bool = True,
    ):
        self.config = config
        self.idle_timeout = idle_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._open_browser = open_browser
        self._conn: Optional[imaplib.IMAP4_SSL] = None
        self._access_token: Optional[str] = None
        self._idle_count = 0

    @classmethod
    async def connect(cls, config: ImapConfig, **kwargs) -> "ImapClient":
        """
        Open the first session.

        Failures here (bad password, refused OAuth consent) propagate
        without any retry; retries only apply to reconnect().
        """
        client = cls(config, **kwargs)
        client._conn = await client._open()
        logger.info(
            "imap_connected",
            host=config.domain_name,
            port=config.port,
            mailbox=config.mailbox,
        )
        return client

    async def _open(self) -> imaplib.IMAP4_SSL:
        auth = self.config.auth
        if isinstance(auth, OAuthAuth) and self._access_token is None:
            self._access_token = await obtain_access_token(auth, open_browser=self._open_browser)

        try:
            return await asyncio.to_thread(open_session, self.config, self._access_token)
        except imaplib.IMAP4.error as e:
            # A rejected token is re-consented on the next attempt.
            if isinstance(auth, OAuthAuth) and not isinstance(e, imaplib.IMAP4.abort):
                self._access_token = None
            raise

    async def reconnect(self) -> None:
        """Rebuild the session from the retained config, with bounded retries."""
        old = self._conn
        self._conn = None
        if old is not None:
            await asyncio.to_thread(_shutdown_quietly, old)

        for attempt in range(1, self.max_retries + 1):
            try:
                self._conn = await self._open()
            except Exception as e:
                logger.warning(
                    "imap_reconnect_failed",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    error=str(e),
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)
                continue

            logger.info("imap_reconnected", attempt=attempt, host=self.config.domain_name)
            return

        raise ImapReconnectError(
            f"could not reconnect to {self.config.domain_name} after {self.max_retries} attempts"
        )

    async def logout(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(self._logout_sync, conn)
            logger.info("imap_disconnected")

    @staticmethod
    def _logout_sync(conn: imaplib.IMAP4_SSL) -> None:
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    # ------------------------------------------------------------------
    # IDLE and fetch
    # ------------------------------------------------------------------

    async def wait_new_email(self) -> None:
        """Block in IDLE until the server pushes new data, then end IDLE."""
        await asyncio.to_thread(self._idle_sync)

    async def retrieve_new_emails(self) -> list[FetchedEmail]:
        """
        Wait for a notification and fetch every unseen message.

        On any failure the session is rebuilt and unseen mail is searched
        before idling again, so mail that arrived while disconnected is
        not missed. The same search runs when the server announced new mail
        during an earlier command. Raises ImapReconnectError once
        reconnecting gives up.
        """
        check_backlog = False
        while True:
            try:
                if check_backlog or self._take_pending_notification():
                    check_backlog = False
                    emails = await asyncio.to_thread(self._fetch_unseen_sync)
                    if emails:
                        return emails

                await self.wait_new_email()
                return await asyncio.to_thread(self._fetch_unseen_sync)
            except RECOVERABLE_ERRORS as e:
                logger.warning("imap_connection_lost", error=str(e), error_type=type(e).__name__)
                await self.reconnect()
                check_backlog = True

    async def watch(self) -> AsyncIterator[FetchedEmail]:
        """Yield new messages forever."""
        while True:
            for email in await self.retrieve_new_emails():
                yield email

    def _take_pending_notification(self) -> bool:
        """
        Consume EXISTS/RECENT that arrived during an earlier command.

        imaplib files unsolicited responses in untagged_responses; IDLE would
        not report them again.
        """
        if self._conn is None:
            return False
        pending = self._conn.untagged_responses
        exists = pending.pop("EXISTS", None)
        recent = pending.pop("RECENT", None)
        return bool(exists or recent)

    def _require_conn(self) -> imaplib.IMAP4_SSL:
        if self._conn is None:
            raise imaplib.IMAP4.abort("not connected")
        return self._conn

    def _idle_sync(self) -> None:
        conn = self._require_conn()
        self._idle_count += 1
        tag = f"IDLE{self._idle_count}".encode()

        conn.sock.settimeout(self.idle_timeout)
        try:
            conn.send(tag + b" IDLE\r\n")
            line = conn.readline()
            if not line.startswith(b"+"):
                raise ImapIdleError(f"server refused IDLE: {line!r}")

            while True:
                line = conn.readline()
                if not line:
                    raise imaplib.IMAP4.abort("connection closed while idling")
                if line.startswith(b"* BYE"):
                    raise imaplib.IMAP4.abort(f"server closed the session: {line!r}")
                if line.startswith(b"* OK"):
                    continue  # keep-alive
                if line.startswith(b"* "):
                    logger.debug("imap_idle_notification", line=line.strip())
                    break
                raise ImapIdleError(f"unexpected response while idling: {line!r}")

            conn.send(b"DONE\r\n")
            while True:
                line = conn.readline()
                if not line:
                    raise imaplib.IMAP4.abort("connection closed while ending IDLE")
                if line.startswith(tag + b" "):
                    if not line[len(tag) + 1:].startswith(b"OK"):
                        raise ImapIdleError(f"IDLE completed with {line!r}")
                    break
        except TimeoutError:
            raise ImapIdleError(f"no notification within {self.idle_timeout}s") from None

        conn.sock.settimeout(None)

    def _fetch_unseen_sync(self) -> list[FetchedEmail]:
        conn = self._require_conn()
        status, data = conn.uid("SEARCH", None, "UNSEEN")
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH failed: {data!r}")
        if not data or not data[0]:
            return []

        results: list[FetchedEmail] = []
        for uid_bytes in data[0].split():
            uid = uid_bytes.decode()
            status, msg_data = conn.uid("FETCH", uid, "(BODY[] ENVELOPE)")
            if status != "OK":
                raise imaplib.IMAP4.error(f"UID FETCH {uid} failed: {msg_data!r}")

            email = parse_fetch_response(uid, msg_data or [])
            if email is None:
                logger.warning("imap_fetch_without_body", uid=uid)
                continue
            results.append(email)

        logger.info("imap_fetched_unseen", count=len(results))
        return results
