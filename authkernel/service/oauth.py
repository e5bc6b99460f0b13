from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from authkernel.logging import get_logger

logger = get_logger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}


@dataclass
class FederatedIdentity:
    provider: str
    provider_subject_id: str
    email: Optional[str]
    display_name: Optional[str] = None


class OAuthClient:
    """Authorization-code exchange against the supported OAuth providers."""

    def __init__(
        self,
        credentials: Dict[str, Tuple[Optional[str], Optional[str]]],
        redirect_uri: Optional[str],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.credentials = credentials
        self.redirect_uri = redirect_uri
        self.transport = transport
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls, settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "OAuthClient":
        return cls(
            {
                "google": (
                    settings.oauth_google_client_id,
                    settings.oauth_google_client_secret,
                ),
                "github": (
                    settings.oauth_github_client_id,
                    settings.oauth_github_client_secret,
                ),
            },
            settings.oauth_redirect_uri,
            transport=transport,
        )

    def is_configured(self, provider: str) -> bool:
        client_id, client_secret = self.credentials.get(provider, (None, None))
        return bool(provider in OAUTH_PROVIDERS and client_id and client_secret)

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValueError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValueError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValueError("OAuth redirect URI must include host")
        return redirect_uri

    def authorization_url(self, provider: str, state: str) -> str:
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self.credentials.get(provider, (None, None))
        if not client_id:
            raise ValueError(f"OAuth provider {provider} is not configured")
        if not self.redirect_uri:
            raise ValueError("No OAuth redirect URI configured")
        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._validate_redirect_uri(self.redirect_uri),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        return f"{provider_config['auth_url']}?{urlencode(params)}"

    @staticmethod
    def parse_userinfo(provider: str, userinfo: dict) -> FederatedIdentity:
        """Map a provider's userinfo document onto a federated identity."""
        if provider == "google":
            subject = userinfo.get("sub") or userinfo.get("id")
            return FederatedIdentity(
                provider=provider,
                provider_subject_id=str(subject) if subject else "",
                email=userinfo.get("email"),
                display_name=userinfo.get("name"),
            )
        if provider == "github":
            subject = userinfo.get("id")
            return FederatedIdentity(
                provider=provider,
                provider_subject_id=str(subject) if subject is not None else "",
                email=userinfo.get("email"),
                display_name=userinfo.get("name") or userinfo.get("login"),
            )
        subject = userinfo.get("sub") or userinfo.get("id")
        return FederatedIdentity(
            provider=provider,
            provider_subject_id=str(subject) if subject else "",
            email=userinfo.get("email"),
        )

    async def exchange_code(self, provider: str, code: str) -> Optional[FederatedIdentity]:
        """Exchange an authorization code for the provider's view of the user.

        Returns None when the provider is unknown or unconfigured, or when the
        exchange fails; the reason is logged.
        """
        if provider not in OAUTH_PROVIDERS:
            logger.error("oauth_unknown_provider", provider=provider)
            return None
        client_id, client_secret = self.credentials.get(provider, (None, None))
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        if not self.redirect_uri:
            logger.error("oauth_redirect_uri_missing", provider=provider)
            return None

        provider_config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self.transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                identity = self.parse_userinfo(provider, userinfo)

                # GitHub hides private emails from /user
                if provider == "github" and not identity.email:
                    emails_response = await client.get(
                        provider_config["emails_url"], headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        identity.email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as e:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("oauth_exchange_error", provider=provider, error=str(e))
            return None

        logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_subject_id=identity.provider_subject_id,
        )
        return identity
