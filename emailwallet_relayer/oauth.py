"""
OAuth2 Authorization Code + PKCE for IMAP XOAUTH2 login.

The consent flow runs through google-auth-oauthlib's InstalledAppFlow: it
opens the consent page, captures the redirect on the loopback address of
the redirect URL, checks ``state`` and exchanges the code.
"""

import asyncio
from typing import Optional
from urllib.parse import urlsplit

import structlog
from google_auth_oauthlib.flow import InstalledAppFlow

from .config import OAuthAuth

logger = structlog.get_logger()

SCOPE = "https://mail.google.com/"


class OAuthError(Exception):
    """The authorization or token exchange step failed."""


def build_flow(auth: OAuthAuth) -> InstalledAppFlow:
    """Installed-app flow for the configured endpoints, with an S256 verifier."""
    client_config = {
        "installed": {
            "client_id": auth.client_id,
            "client_secret": auth.client_secret,
            "auth_uri": auth.auth_url,
            "token_uri": auth.token_url,
            "redirect_uris": [auth.redirect_url],
        }
    }
    return InstalledAppFlow.from_client_config(
        client_config,
        scopes=[SCOPE],
        autogenerate_code_verifier=True,
    )


def run_consent(
    auth: OAuthAuth,
    open_browser: bool = True,
    redirect_timeout: Optional[float] = 300.0,
) -> str:
    """Run the consent flow (blocking) and return a bearer token."""
    redirect = urlsplit(auth.redirect_url)
    flow = build_flow(auth)

    try:
        credentials = flow.run_local_server(
            host=redirect.hostname or "127.0.0.1",
            port=redirect.port or 80,
            open_browser=open_browser,
            timeout_seconds=redirect_timeout,
            redirect_uri_trailing_slash=auth.redirect_url.endswith("/"),
        )
    except Exception as e:
        # Denied consent, state mismatch, token endpoint errors and a
        # redirect that never arrives all end the flow here.
        raise OAuthError(f"OAuth consent failed: {e}") from e

    if not credentials.token:
        raise OAuthError("token response has no access_token")
    return credentials.token


async def obtain_access_token(
    auth: OAuthAuth,
    open_browser: bool = True,
    redirect_timeout: Optional[float] = 300.0,
) -> str:
    """Obtain a bearer token without blocking the event loop."""
    logger.info("oauth_consent_requested", user=auth.user_id, redirect=auth.redirect_url)
    access_token = await asyncio.to_thread(run_consent, auth, open_browser, redirect_timeout)
    logger.info("oauth_token_obtained", user=auth.user_id)
    return access_token


class XOAuth2Authenticator:
    """SASL XOAUTH2 response for imaplib's authenticate()."""

    def __init__(self, user_id: str, access_token: str):
        self.user_id = user_id
        self.access_token = access_token

    def __call__(self, challenge: bytes) -> bytes:
        if challenge:
            # A non-empty challenge carries the server's error report; an
            # empty reply lets it finish with a tagged NO.
            logger.warning("xoauth2_rejected", user=self.user_id, detail=challenge.decode(errors="replace"))
            return b""
        return f"user={self.user_id}\x01auth=Bearer {self.access_token}\x01\x01".encode()
