"""Tests for emailwallet_relayer.imap_client."""

from __future__ import annotations

import imaplib
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from emailwallet_relayer.config import ImapConfig, OAuthAuth
from emailwallet_relayer.imap_client import (
    FetchedEmail,
    ImapClient,
    ImapIdleError,
    ImapReconnectError,
    parse_fetch_response,
)

RAW_EMAIL = b"From: alice@example.com\r\nSubject: Claim\r\n\r\nhello\r\n"


@pytest.fixture
def oauth_config() -> ImapConfig:
    return ImapConfig(
        domain_name="imap.test.com",
        port=993,
        auth=OAuthAuth(
            user_id="relayer@test.com",
            client_id="client-id",
            client_secret="client-secret",
            auth_url="https://auth.test/authorize",
            token_url="https://auth.test/token",
            redirect_url="http://127.0.0.1:8765",
        ),
    )


def _fetch_response(uid: bytes, raw: bytes) -> list:
    header = b"1 (UID " + uid + b' ENVELOPE ("Mon, 1 Jan 2024 00:00:00 +0000" "Claim" NIL) BODY[] {%d}' % len(raw)
    return [(header, raw), b")"]


def _make_mock_imap(
    *,
    search_uids: list[bytes] | None = None,
    fetch_data: dict[bytes, bytes] | None = None,
    idle_lines: list | None = None,
) -> MagicMock:
    """Create a mock imaplib.IMAP4_SSL with programmed responses."""
    mock = MagicMock()
    mock.login.return_value = ("OK", [b"Logged in"])
    mock.authenticate.return_value = ("OK", [b"Authenticated"])
    mock.select.return_value = ("OK", [b"1"])
    mock.logout.return_value = ("BYE", [b"Bye"])
    mock.readline.side_effect = idle_lines or []
    mock.untagged_responses = {}

    search_data = b" ".join(search_uids) if search_uids else b""
    fetch_data = fetch_data or {}

    def uid_handler(command: str, *args):
        if command == "SEARCH":
            return ("OK", [search_data])
        if command == "FETCH":
            uid = args[0].encode()
            return ("OK", _fetch_response(uid, fetch_data[uid]))
        return ("OK", [b""])

    mock.uid.side_effect = uid_handler
    return mock


def _idle_lines(tag: bytes = b"IDLE1") -> list[bytes]:
    return [
        b"+ idling\r\n",
        b"* 3 EXISTS\r\n",
        tag + b" OK IDLE terminated\r\n",
    ]


class TestImapClientConnect:
    @pytest.mark.asyncio
    async def test_connect_with_password(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn

            await ImapClient.connect(imap_config)

            MockSSL.assert_called_once_with("imap.test.com", 993)
            mock_conn.login.assert_called_once_with("relayer@test.com", "testpass")
            mock_conn.select.assert_called_once_with("INBOX")

    @pytest.mark.asyncio
    async def test_invalid_password_fails_without_retry(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
            MockSSL.return_value = mock_conn

            with pytest.raises(imaplib.IMAP4.error, match="AUTHENTICATIONFAILED"):
                await ImapClient.connect(imap_config)

            assert MockSSL.call_count == 1
            mock_conn.shutdown.assert_called_once()
            mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_select_failure_raises(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.select.return_value = ("NO", [b"no such mailbox"])
            MockSSL.return_value = mock_conn

            with pytest.raises(imaplib.IMAP4.error, match="cannot select INBOX"):
                await ImapClient.connect(imap_config)

    @pytest.mark.asyncio
    async def test_connect_with_xoauth2(self, oauth_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.obtain_access_token",
            new_callable=AsyncMock,
            return_value="ya29.token",
        ) as mock_obtain:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn

            await ImapClient.connect(oauth_config)

            mock_obtain.assert_awaited_once()
            mock_conn.login.assert_not_called()
            mechanism, authenticator = mock_conn.authenticate.call_args.args
            assert mechanism == "XOAUTH2"
            assert authenticator(b"") == b"user=relayer@test.com\x01auth=Bearer ya29.token\x01\x01"


class TestImapClientReconnect:
    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            MockSSL.return_value = _make_mock_imap()
            client = await ImapClient.connect(imap_config, max_retries=5, retry_delay=1.0)

            MockSSL.reset_mock()
            MockSSL.side_effect = OSError("connection refused")

            with pytest.raises(ImapReconnectError):
                await client.reconnect()

            assert MockSSL.call_count == 5
            assert mock_sleep.await_count == 4
            mock_sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_stops_at_first_successful_attempt(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            first = _make_mock_imap()
            fresh = _make_mock_imap()
            MockSSL.return_value = first
            client = await ImapClient.connect(imap_config)

            MockSSL.reset_mock()
            MockSSL.return_value = None
            MockSSL.side_effect = [OSError("refused"), OSError("refused"), fresh]

            await client.reconnect()

            assert MockSSL.call_count == 3
            assert mock_sleep.await_count == 2
            first.shutdown.assert_called_once()
            fresh.login.assert_called_once_with("relayer@test.com", "testpass")

    @pytest.mark.asyncio
    async def test_oauth_token_reused_across_reconnect(self, oauth_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.obtain_access_token",
            new_callable=AsyncMock,
            return_value="ya29.token",
        ) as mock_obtain:
            MockSSL.side_effect = [_make_mock_imap(), _make_mock_imap()]
            client = await ImapClient.connect(oauth_config)

            await client.reconnect()

            mock_obtain.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rejected_token_is_renewed(self, oauth_config: ImapConfig):
        rejecting = _make_mock_imap()
        rejecting.authenticate.side_effect = imaplib.IMAP4.error("invalid credentials")

        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.obtain_access_token",
            new_callable=AsyncMock,
            side_effect=["expired-token", "fresh-token"],
        ) as mock_obtain, patch("emailwallet_relayer.imap_client.asyncio.sleep", new_callable=AsyncMock):
            fresh = _make_mock_imap()
            MockSSL.side_effect = [_make_mock_imap(), rejecting, fresh]
            client = await ImapClient.connect(oauth_config)

            await client.reconnect()

            assert mock_obtain.await_count == 2
            _, authenticator = fresh.authenticate.call_args.args
            assert b"Bearer fresh-token" in authenticator(b"")


class TestImapClientIdle:
    @pytest.mark.asyncio
    async def test_idle_returns_on_new_data(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(idle_lines=_idle_lines())
            MockSSL.return_value = mock_conn
            client = await ImapClient.connect(imap_config, idle_timeout=60)

            await client.wait_new_email()

            assert mock_conn.send.call_args_list == [call(b"IDLE1 IDLE\r\n"), call(b"DONE\r\n")]
            mock_conn.sock.settimeout.assert_any_call(60)

    @pytest.mark.asyncio
    async def test_idle_skips_keepalive(self, imap_config: ImapConfig):
        lines = [
            b"+ idling\r\n",
            b"* OK Still here\r\n",
            b"* 1 RECENT\r\n",
            b"IDLE1 OK IDLE terminated\r\n",
        ]
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(idle_lines=lines)
            MockSSL.return_value = mock_conn
            client = await ImapClient.connect(imap_config)

            await client.wait_new_email()

            assert mock_conn.readline.call_count == 4

    @pytest.mark.asyncio
    async def test_idle_refused(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(idle_lines=[b"IDLE1 BAD unknown command\r\n"])
            client = await ImapClient.connect(imap_config)

            with pytest.raises(ImapIdleError, match="refused IDLE"):
                await client.wait_new_email()

    @pytest.mark.asyncio
    async def test_idle_timeout(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(idle_lines=[b"+ idling\r\n", TimeoutError()])
            client = await ImapClient.connect(imap_config, idle_timeout=5)

            with pytest.raises(ImapIdleError, match="no notification within 5s"):
                await client.wait_new_email()

    @pytest.mark.asyncio
    async def test_idle_bye_aborts(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(
                idle_lines=[b"+ idling\r\n", b"* BYE server shutting down\r\n"]
            )
            client = await ImapClient.connect(imap_config)

            with pytest.raises(imaplib.IMAP4.abort):
                await client.wait_new_email()


class TestImapClientRetrieve:
    @pytest.mark.asyncio
    async def test_retrieve_fetches_unseen(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(
                search_uids=[b"7", b"8"],
                fetch_data={b"7": RAW_EMAIL, b"8": RAW_EMAIL},
                idle_lines=_idle_lines(),
            )
            MockSSL.return_value = mock_conn
            client = await ImapClient.connect(imap_config)

            emails = await client.retrieve_new_emails()

            assert [e.uid for e in emails] == ["7", "8"]
            assert all(isinstance(e, FetchedEmail) for e in emails)
            assert emails[0].raw_bytes == RAW_EMAIL
            mock_conn.uid.assert_any_call("SEARCH", None, "UNSEEN")
            mock_conn.uid.assert_any_call("FETCH", "7", "(BODY[] ENVELOPE)")

    @pytest.mark.asyncio
    async def test_exists_seen_during_fetch_is_handled_before_idle(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(search_uids=[b"9"], fetch_data={b"9": RAW_EMAIL})
            MockSSL.return_value = mock_conn
            client = await ImapClient.connect(imap_config)
            # imaplib files an unsolicited EXISTS from the previous UID FETCH here
            mock_conn.untagged_responses["EXISTS"] = [b"4"]

            emails = await client.retrieve_new_emails()

            assert [e.uid for e in emails] == ["9"]
            assert "EXISTS" not in mock_conn.untagged_responses
            mock_conn.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_pending_search_falls_through_to_idle(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(idle_lines=_idle_lines())
            MockSSL.return_value = mock_conn
            client = await ImapClient.connect(imap_config)
            mock_conn.untagged_responses["RECENT"] = [b"0"]

            emails = await client.retrieve_new_emails()

            assert emails == []
            assert mock_conn.send.call_args_list == [call(b"IDLE1 IDLE\r\n"), call(b"DONE\r\n")]

    @pytest.mark.asyncio
    async def test_connection_loss_reconnects_and_checks_backlog(self, imap_config: ImapConfig):
        broken = _make_mock_imap(idle_lines=[ConnectionResetError("reset by peer")])
        fresh = _make_mock_imap(search_uids=[b"3"], fetch_data={b"3": RAW_EMAIL})

        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.asyncio.sleep", new_callable=AsyncMock
        ):
            MockSSL.side_effect = [broken, fresh]
            client = await ImapClient.connect(imap_config)

            emails = await client.retrieve_new_emails()

            assert [e.uid for e in emails] == ["3"]
            broken.shutdown.assert_called_once()
            # mail that arrived while disconnected is picked up without idling
            fresh.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnect_exhaustion_propagates(self, imap_config: ImapConfig):
        broken = _make_mock_imap(idle_lines=[b"+ idling\r\n", b""])

        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL, patch(
            "emailwallet_relayer.imap_client.asyncio.sleep", new_callable=AsyncMock
        ):
            MockSSL.side_effect = [broken] + [OSError("refused")] * 3
            client = await ImapClient.connect(imap_config, max_retries=3)

            with pytest.raises(ImapReconnectError):
                await client.retrieve_new_emails()

    @pytest.mark.asyncio
    async def test_logout(self, imap_config: ImapConfig):
        with patch("emailwallet_relayer.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            client = await ImapClient.connect(imap_config)

            await client.logout()
            await client.logout()

            mock_conn.logout.assert_called_once()


class TestParseFetchResponse:
    def test_extracts_body_and_envelope(self):
        email = parse_fetch_response("4", _fetch_response(b"4", RAW_EMAIL))

        assert email is not None
        assert email.raw_bytes == RAW_EMAIL
        assert email.envelope == b'("Mon, 1 Jan 2024 00:00:00 +0000" "Claim" NIL)'

    def test_missing_body_returns_none(self):
        assert parse_fetch_response("4", [b"4 (UID 4)"]) is None
