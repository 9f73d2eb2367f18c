"""
Configuration for the Email Wallet relayer.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .blind_point import reduce_to_field


@dataclass(frozen=True)
class PasswordAuth:
    """Plain LOGIN credentials."""

    user_id: str
    password: str


@dataclass(frozen=True)
class OAuthAuth:
    """OAuth2 Authorization Code + PKCE client registration."""

    user_id: str
    client_id: str
    client_secret: str
    auth_url: str
    token_url: str
    redirect_url: str


ImapAuth = Union[PasswordAuth, OAuthAuth]


@dataclass(frozen=True)
class ImapConfig:
    """IMAP connection target, retained across reconnects."""

    domain_name: str
    port: int
    auth: ImapAuth
    mailbox: str = "INBOX"


class Settings(BaseSettings):
    """
    Relayer configuration settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Server
    host: str = Field(default="127.0.0.1", description="API host")
    port: int = Field(default=4500, description="API port")

    # Chain
    chain_rpc_url: str = Field(
        default="http://localhost:8545",
        description="EVM RPC URL",
    )
    relayer_handler: Optional[str] = Field(
        default=None,
        description="RelayerHandler contract address",
    )
    unclaims_handler: Optional[str] = Field(
        default=None,
        description="UnclaimsHandler contract address",
    )
    account_handler: Optional[str] = Field(
        default=None,
        description="AccountHandler contract address",
    )

    # PSI
    circuits_dir_path: str = Field(
        default="../circuits",
        description="Circuits package that implements psi-step1/2/3",
    )
    input_files_dir: str = Field(
        default="./.psi",
        description="Scratch directory for blind-point outputs",
    )
    relayer_rand: Optional[str] = Field(
        default=None,
        description="Relayer's standing PSI secret (hex field element)",
    )
    blind_point_timeout_seconds: float = Field(
        default=120.0,
        description="Upper bound for one blind-point computation",
    )
    skip_failed_relayers: bool = Field(
        default=False,
        description="Log and skip relayers whose check fails instead of aborting find()",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./relayer.db",
        description="Claim store (sqlite:///... or postgresql://...)",
    )
    claim_record_retry_seconds: float = Field(
        default=1.0,
        description="First backoff delay after a failed claim insert (doubles up to 30s)",
    )

    # IMAP
    imap_domain_name: str = Field(default="imap.gmail.com", description="IMAP host")
    imap_port: int = Field(default=993, description="IMAPS port")
    imap_auth_type: str = Field(default="password", description="password or oauth")
    imap_user_id: str = Field(default="", description="Mailbox user")
    imap_password: str = Field(default="", description="Mailbox password")
    imap_client_id: str = Field(default="", description="OAuth2 client id")
    imap_client_secret: str = Field(default="", description="OAuth2 client secret")
    imap_auth_url: str = Field(
        default="https://accounts.google.com/o/oauth2/auth",
        description="OAuth2 authorization endpoint",
    )
    imap_token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth2 token endpoint",
    )
    imap_redirect_url: str = Field(
        default="http://127.0.0.1:8000",
        description="OAuth2 redirect captured on loopback",
    )
    imap_idle_timeout: float = Field(
        default=1500.0,
        description="Seconds to wait in IDLE before treating the connection as stale",
    )
    imap_max_retries: int = Field(default=5, description="Reconnect attempts")
    imap_retry_delay_seconds: float = Field(default=1.0, description="Delay between reconnects")

    @field_validator("relayer_rand")
    @classmethod
    def _canonical_relayer_rand(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return reduce_to_field(value)

    @field_validator("imap_auth_type")
    @classmethod
    def _known_auth_type(cls, value: str) -> str:
        value = value.lower()
        if value not in ("password", "oauth"):
            raise ValueError("imap_auth_type must be 'password' or 'oauth'")
        return value

    def imap_config(self) -> ImapConfig:
        """Build the immutable IMAP target from the flat env settings."""
        auth: ImapAuth
        if self.imap_auth_type == "oauth":
            auth = OAuthAuth(
                user_id=self.imap_user_id,
                client_id=self.imap_client_id,
                client_secret=self.imap_client_secret,
                auth_url=self.imap_auth_url,
                token_url=self.imap_token_url,
                redirect_url=self.imap_redirect_url,
            )
        else:
            auth = PasswordAuth(user_id=self.imap_user_id, password=self.imap_password)
        return ImapConfig(domain_name=self.imap_domain_name, port=self.imap_port, auth=auth)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
