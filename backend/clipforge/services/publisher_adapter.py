"""
Unified publishing layer for social platforms.

Each platform adapter implements the `PublisherAdapter` interface:
    publish(account, text, content_type) -> PublishResult
    refresh_token(refresh_token) -> TokenSet

Results (including errors) are always returned explicitly; only token
refresh raises, with `TokenRefreshFailed`.
"""
from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx

from clipforge.errors import TokenRefreshFailed
from clipforge.models import SocialAccount
from clipforge.settings import get_settings

logger = logging.getLogger(__name__)


# ── Result dataclasses ───────────────────────────────────────

# Errors that are considered transient (network, rate-limit, upstream)
RETRYABLE_INDICATORS = (
    "timeout", "timed out", "429", "too many requests",
    "502", "503", "504", "connection", "reset by peer",
    "temporary", "service unavailable", "rate limit",
    "network", "ssl", "eof", "broken pipe",
)


def _is_retryable_error(error: str | None) -> bool:
    """Determine if an error message indicates a retryable failure."""
    if not error:
        return False
    lower = error.lower()
    return any(ind in lower for ind in RETRYABLE_INDICATORS)


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]+", re.IGNORECASE), "Basic ***"),
    (re.compile(r"access_token[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"refresh_token[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "refresh_token=***"),
    (re.compile(r"client_secret[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    # generic long opaque tokens
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]


def sanitize_error(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


@dataclass
class PublishResult:
    """Unified result of a publish attempt."""
    success: bool
    external_id: str | None = None
    url: str | None = None
    platform: str | None = None
    error: str | None = None
    retryable: bool = False
    raw_response: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "external_id": self.external_id,
            "url": self.url,
            "platform": self.platform,
            "error": self.error,
            "retryable": self.retryable,
        }


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


# ── Abstract adapter ─────────────────────────────────────────

class PublisherAdapter(abc.ABC):
    """Base class for platform-specific publishers."""

    platform: str = "unknown"
    supports_refresh: bool = False

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        return self._client or httpx.AsyncClient(timeout=30)

    @abc.abstractmethod
    async def publish(self, account: SocialAccount, text: str, content_type: str | None = None) -> PublishResult:
        """Post ``text`` as ``account`` and return the public URL."""
        ...

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        raise TokenRefreshFailed(f"{self.platform} does not support token refresh")

    def _fail(self, account_id: int, msg: str) -> PublishResult:
        msg = sanitize_error(msg)
        logger.error(f"[{self.platform}][account={account_id}] {msg}")
        return PublishResult(success=False, platform=self.platform, error=msg, retryable=_is_retryable_error(msg))

    def _log(self, account_id: int, msg: str):
        logger.info(f"[{self.platform}][account={account_id}] {msg}")


# ── Twitter / X ──────────────────────────────────────────────

THREAD_SEPARATOR = "\n---\n"


def split_thread(text: str) -> list[str]:
    return [part.strip() for part in text.split(THREAD_SEPARATOR) if part.strip()]


class TwitterPublisher(PublisherAdapter):
    """OAuth 2.0 user-context posting via API v2. Threads become reply chains."""

    platform = "twitter"
    supports_refresh = True

    API_BASE = "https://api.twitter.com/2"
    TOKEN_URL = "https://api.twitter.com/2/oauth2/token"

    async def _post_tweet(self, client: httpx.AsyncClient, access_token: str, text: str, reply_to: str | None) -> str:
        body: dict = {"text": text}
        if reply_to:
            body["reply"] = {"in_reply_to_tweet_id": reply_to}
        resp = await client.post(
            f"{self.API_BASE}/tweets",
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            json=body,
        )
        if resp.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"Failed to post tweet: {resp.status_code} {resp.text[:300]}", request=resp.request, response=resp
            )
        return resp.json()["data"]["id"]

    async def publish(self, account: SocialAccount, text: str, content_type: str | None = None) -> PublishResult:
        tweets = split_thread(text) if content_type and content_type.endswith("_thread") else [text.strip()]
        if not tweets or not tweets[0]:
            return self._fail(account.id, "No content to publish")

        client = self._http()
        ids: list[str] = []
        try:
            previous = None
            for tweet in tweets:
                previous = await self._post_tweet(client, account.access_token, tweet, previous)
                ids.append(previous)
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            posted = f" after {len(ids)} tweet(s)" if ids else ""
            return self._fail(account.id, f"Twitter publish failed{posted}: {exc}")
        finally:
            if self._client is None:
                await client.aclose()

        url = f"https://twitter.com/i/status/{ids[0]}"
        self._log(account.id, f"Published {len(ids)} tweet(s): {url}")
        return PublishResult(
            success=True, external_id=ids[0], url=url, platform=self.platform, raw_response={"tweet_ids": ids}
        )

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        settings = get_settings()
        if not settings.twitter_client_id or not settings.twitter_client_secret:
            raise TokenRefreshFailed("Twitter client credentials missing")
        client = self._http()
        try:
            resp = await client.post(
                self.TOKEN_URL,
                auth=(settings.twitter_client_id, settings.twitter_client_secret),
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshFailed(sanitize_error(f"Failed to refresh Twitter token: {exc}")) from exc
        finally:
            if self._client is None:
                await client.aclose()
        if resp.status_code >= 400:
            raise TokenRefreshFailed(f"Failed to refresh Twitter token: HTTP {resp.status_code}")
        data = resp.json()
        if not data.get("access_token"):
            raise TokenRefreshFailed("Twitter token response missing access_token")
        expires_in = data.get("expires_in")
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)) if expires_in else None,
        )


# ── LinkedIn ─────────────────────────────────────────────────

class LinkedInPublisher(PublisherAdapter):
    """UGC post as the member identified by ``platform_user_id``.

    Member tokens are not refreshable here; an expired token fails the post.
    """

    platform = "linkedin"

    API_BASE = "https://api.linkedin.com/v2"

    async def publish(self, account: SocialAccount, text: str, content_type: str | None = None) -> PublishResult:
        body = {
            "author": f"urn:li:person:{account.platform_user_id}",
            "lifecycleState": "PUBLISHED",
            "specificContent": {
                "com.linkedin.ugc.ShareContent": {
                    "shareCommentary": {"text": text},
                    "shareMediaCategory": "NONE",
                },
            },
            "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
        }
        client = self._http()
        try:
            resp = await client.post(
                f"{self.API_BASE}/ugcPosts",
                headers={
                    "Authorization": f"Bearer {account.access_token}",
                    "Content-Type": "application/json",
                    "X-Restli-Protocol-Version": "2.0.0",
                },
                json=body,
            )
        except httpx.HTTPError as exc:
            return self._fail(account.id, f"LinkedIn publish failed: {exc}")
        finally:
            if self._client is None:
                await client.aclose()

        if resp.status_code >= 400:
            return self._fail(account.id, f"LinkedIn publish failed: {resp.status_code} {resp.text[:300]}")
        post_id = resp.headers.get("x-restli-id") or (resp.json().get("id", "") if resp.content else "")
        url = f"https://www.linkedin.com/feed/update/{post_id}"
        self._log(account.id, f"Published: {url}")
        return PublishResult(success=True, external_id=post_id, url=url, platform=self.platform)


# ── Registry ─────────────────────────────────────────────────

_ADAPTERS: dict[str, PublisherAdapter] = {
    "twitter": TwitterPublisher(),
    "linkedin": LinkedInPublisher(),
}


def get_publisher(platform: str) -> PublisherAdapter | None:
    return _ADAPTERS.get(platform)


def register_publisher(platform: str, adapter: PublisherAdapter | None) -> None:
    if adapter is None:
        _ADAPTERS.pop(platform, None)
    else:
        _ADAPTERS[platform] = adapter
