"""Summary: OAuth token gateways for Gmail and Outlook.

Importance: Wraps authorization URLs, code exchange, refresh, and profile lookup behind one interface.
Alternatives: Use provider SDKs for OAuth flows.
"""

from __future__ import annotations

import logging
import secrets
import urllib.parse
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from mailharvest.config import AppConfig
from mailharvest.errors import AuthError, HttpStatusError, MalformedResponseError, ValidationError
from mailharvest.http import Deadline, HttpClient
from mailharvest.models import GMAIL, OUTLOOK, OAuthTokens, UserInfo, utcnow, validate_provider


logger = logging.getLogger(__name__)

GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/gmail.readonly "
    "https://www.googleapis.com/auth/userinfo.email "
    "https://www.googleapis.com/auth/userinfo.profile"
)
MICROSOFT_SCOPES = (
    "offline_access openid email profile "
    "https://graph.microsoft.com/Mail.Read https://graph.microsoft.com/User.Read"
)

_GMAIL_DOMAINS = {"gmail.com", "googlemail.com"}
_OUTLOOK_DOMAINS = {"outlook.com", "hotmail.com", "live.com", "msn.com"}


class TokenResponse(BaseModel):
    """Token endpoint payload shared by Google and the Microsoft identity platform."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None
    scope: str | None = None

    def to_tokens(self, fallback_refresh: str | None = None) -> OAuthTokens:
        """Summary: Convert the wire payload into canonical tokens.

        Importance: Normalizes expiry into an absolute timestamp for storage.
        Alternatives: Store expires_in and compute expiry on every read.
        """

        expires_at = utcnow() + timedelta(seconds=self.expires_in) if self.expires_in else None
        return OAuthTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token or fallback_refresh,
            expires_at=expires_at,
            token_type=self.token_type,
        )


class GoogleUserInfoResponse(BaseModel):
    id: str = ""
    email: str = ""
    verified_email: bool | None = None
    name: str = ""
    picture: str = ""


class GraphUserResponse(BaseModel):
    id: str = ""
    mail: str | None = None
    userPrincipalName: str | None = None
    displayName: str | None = None


def create_state_token() -> str:
    """Summary: Generate an OAuth state value with 256 bits of entropy.

    Importance: Protects OAuth flows from CSRF and callback forgery.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(32)


def infer_provider(email: str) -> str:
    """Summary: Guess the provider from a well-known consumer mail domain.

    Importance: Lets callers start a handshake with only an email address.
    Alternatives: Always require the caller to name the provider.
    """

    domain = email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""
    if domain in _GMAIL_DOMAINS:
        return GMAIL
    if domain in _OUTLOOK_DOMAINS:
        return OUTLOOK
    raise ValidationError(f"Cannot infer provider for {email!r}; pass provider explicitly")


class TokenGateway(ABC):
    """Summary: Abstract interface for one OAuth provider.

    Importance: Lets the account lifecycle stay provider-agnostic.
    Alternatives: Branch on the provider name inside each operation.
    """

    provider: str

    def __init__(self, config: AppConfig, http: HttpClient) -> None:
        self._config = config
        self._http = http

    @abstractmethod
    def build_auth_url(self, state: str) -> str:
        """Build the provider's authorization URL for the given state."""

    @abstractmethod
    def exchange_code(self, code: str, deadline: Deadline | None = None) -> OAuthTokens:
        """Exchange an authorization code for tokens."""

    @abstractmethod
    def refresh_token(self, refresh_token: str, deadline: Deadline | None = None) -> OAuthTokens:
        """Exchange a refresh token for a new access token."""

    @abstractmethod
    def fetch_user_info(self, access_token: str, deadline: Deadline | None = None) -> UserInfo:
        """Return the authenticated identity for an access token."""

    def _post_token(
        self, url: str, payload: dict[str, str], deadline: Deadline | None, operation: str
    ) -> TokenResponse:
        try:
            raw = self._http.post_form(url, payload, deadline=deadline)
        except HttpStatusError as exc:
            logger.warning("%s %s rejected with HTTP %s.", self.provider, operation, exc.status)
            raise AuthError(
                f"{self.provider} {operation} failed with status {exc.status}",
                provider=self.provider,
                status=exc.status,
            ) from exc
        return _decode(TokenResponse, raw, f"{self.provider} {operation}")

    def _get_profile(self, url: str, access_token: str, deadline: Deadline | None) -> dict[str, Any]:
        try:
            return self._http.get_json(
                url, headers={"Authorization": f"Bearer {access_token}"}, deadline=deadline
            )
        except HttpStatusError as exc:
            raise AuthError(
                f"{self.provider} user info failed with status {exc.status}",
                provider=self.provider,
                status=exc.status,
            ) from exc


class GmailTokenGateway(TokenGateway):
    """Summary: Google OAuth2 gateway for Gmail accounts.

    Importance: Requests offline access so Google always issues a refresh token.
    Alternatives: Use google-auth-oauthlib flows.
    """

    provider = GMAIL

    def build_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._config.google_client_id,
            "redirect_uri": self._config.oauth_redirect_uri,
            "response_type": "code",
            "access_type": "offline",
            "prompt": "consent",
            "scope": GOOGLE_SCOPES,
            "state": state,
        }
        return self._config.google_auth_url + "?" + urllib.parse.urlencode(params)

    def exchange_code(self, code: str, deadline: Deadline | None = None) -> OAuthTokens:
        response = self._post_token(
            self._config.google_token_url, _token_payload(self._config, GMAIL, code), deadline, "code exchange"
        )
        return response.to_tokens()

    def refresh_token(self, refresh_token: str, deadline: Deadline | None = None) -> OAuthTokens:
        response = self._post_token(
            self._config.google_token_url,
            _refresh_payload(self._config, GMAIL, refresh_token),
            deadline,
            "token refresh",
        )
        # Google omits refresh_token on refresh; the existing one stays valid.
        return response.to_tokens(fallback_refresh=refresh_token)

    def fetch_user_info(self, access_token: str, deadline: Deadline | None = None) -> UserInfo:
        raw = self._get_profile(self._config.google_userinfo_url, access_token, deadline)
        profile = _decode(GoogleUserInfoResponse, raw, "gmail user info")
        return UserInfo(id=profile.id, email=profile.email, name=profile.name, picture=profile.picture)


class OutlookTokenGateway(TokenGateway):
    """Summary: Microsoft identity platform gateway for Outlook accounts.

    Importance: Handles refresh token rotation issued by Microsoft.
    Alternatives: Use the MSAL library.
    """

    provider = OUTLOOK

    def build_auth_url(self, state: str) -> str:
        params = {
            "client_id": self._config.microsoft_client_id,
            "redirect_uri": self._config.oauth_redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": MICROSOFT_SCOPES,
            "state": state,
        }
        return self._config.microsoft_auth_url + "?" + urllib.parse.urlencode(params)

    def exchange_code(self, code: str, deadline: Deadline | None = None) -> OAuthTokens:
        response = self._post_token(
            self._config.microsoft_token_url,
            _token_payload(self._config, OUTLOOK, code),
            deadline,
            "code exchange",
        )
        return response.to_tokens()

    def refresh_token(self, refresh_token: str, deadline: Deadline | None = None) -> OAuthTokens:
        response = self._post_token(
            self._config.microsoft_token_url,
            _refresh_payload(self._config, OUTLOOK, refresh_token),
            deadline,
            "token refresh",
        )
        return response.to_tokens(fallback_refresh=refresh_token)

    def fetch_user_info(self, access_token: str, deadline: Deadline | None = None) -> UserInfo:
        raw = self._get_profile(f"{self._config.microsoft_graph_base_url.rstrip('/')}/me", access_token, deadline)
        profile = _decode(GraphUserResponse, raw, "outlook user info")
        return UserInfo(
            id=profile.id,
            email=profile.mail or profile.userPrincipalName or "",
            name=profile.displayName or "",
        )


def build_gateways(config: AppConfig, http: HttpClient) -> dict[str, TokenGateway]:
    """Summary: Construct one gateway per supported provider.

    Importance: Keeps provider selection logic centralized.
    Alternatives: Wire gateways manually at the application entrypoint.
    """

    return {GMAIL: GmailTokenGateway(config, http), OUTLOOK: OutlookTokenGateway(config, http)}


def _token_payload(config: AppConfig, provider: str, code: str) -> dict[str, str]:
    """Summary: Build token request parameters for OAuth code exchange.

    Importance: Ensures provider-specific payloads include required fields.
    Alternatives: Assemble payloads inline inside the exchange function.
    """

    client_id, client_secret = _client_credentials(config, provider)
    payload = {
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config.oauth_redirect_uri,
    }
    if provider == OUTLOOK:
        payload["scope"] = MICROSOFT_SCOPES
    return payload


def _refresh_payload(config: AppConfig, provider: str, refresh_token: str) -> dict[str, str]:
    """Build token request parameters for a refresh grant."""

    client_id, client_secret = _client_credentials(config, provider)
    payload = {
        "client_id": client_id,
        "client_secret": client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    if provider == OUTLOOK:
        payload["scope"] = MICROSOFT_SCOPES
    return payload


def _client_credentials(config: AppConfig, provider: str) -> tuple[str, str]:
    """Summary: Resolve and validate OAuth client credentials for a provider.

    Importance: Prevents confusing token exchange errors when credentials are missing.
    Alternatives: Allow requests to fail at the provider endpoint.
    """

    provider = validate_provider(provider)
    if provider == GMAIL:
        client_id, client_secret = config.google_client_id, config.google_client_secret
    else:
        client_id, client_secret = config.microsoft_client_id, config.microsoft_client_secret
    if not client_id or not client_secret:
        raise ValidationError(f"Missing OAuth client credentials for {provider}")
    return client_id, client_secret


def _decode(schema: type[BaseModel], raw: dict[str, Any], what: str) -> Any:
    try:
        return schema.model_validate(raw)
    except SchemaError as exc:
        raise MalformedResponseError(f"Malformed {what} response") from exc
