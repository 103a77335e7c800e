"""GitHub API client for cigate.

Handles webhook signature verification and mirrors status checks to the
commit status API via httpx. Authenticates either with a static token
(``GITHUB_TOKEN``) or as a GitHub App (JWT → installation token).
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone

import httpx
import jwt as pyjwt

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"

# GitHub rejects status descriptions longer than this
MAX_STATUS_DESCRIPTION = 140


class GitHubClient:
    """Async GitHub API client."""

    def __init__(
        self,
        *,
        token: str | None = None,
        app_id: str | None = None,
        private_key: str | None = None,
        installation_id: str | None = None,
        webhook_secret: str | None = None,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.installation_id = installation_id
        self.webhook_secret = webhook_secret

        # Static token, or the cached installation token (1-hour TTL)
        self._static_token = token
        self._token: str | None = None
        self._token_expires_at: float = 0

        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=GITHUB_API,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "cigate/0.1.0",
            },
            timeout=30.0,
        )
        logger.info("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    # ── Authentication ───────────────────────────────────────────────────

    async def _ensure_token(self) -> str:
        """Get a valid token, exchanging an App JWT for an installation token if needed.

        Retries the exchange on failure with exponential backoff.
        """
        if self._static_token:
            return self._static_token
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token

        if not self.app_id or not self.private_key or not self.installation_id:
            raise RuntimeError(
                "GitHub credentials not configured. Set GITHUB_TOKEN, or "
                "GITHUB_APP_ID, GITHUB_PRIVATE_KEY and GITHUB_INSTALLATION_ID"
            )

        last_error: httpx.Response | None = None
        max_retries = 5
        for attempt in range(max_retries):
            resp = await self.client.post(
                f"/app/installations/{self.installation_id}/access_tokens",
                headers={"Authorization": f"Bearer {self._generate_jwt()}"},
            )
            if resp.status_code == 201:
                self._token = resp.json()["token"]
                self._token_expires_at = time.time() + 3500  # ~58 min (conservative)
                logger.info("Refreshed GitHub installation token (expires in ~58m)")
                return self._token

            last_error = resp
            wait = min(2**attempt, 16)
            logger.warning(
                "Token exchange attempt %d/%d failed (%d): %s — retrying in %ds",
                attempt + 1,
                max_retries,
                resp.status_code,
                resp.text[:100],
                wait,
            )
            await asyncio.sleep(wait)

        if last_error is not None:
            last_error.raise_for_status()
        raise RuntimeError("GitHub installation token exchange failed")

    def _generate_jwt(self) -> str:
        """Generate JWT for GitHub App authentication."""
        now = int(time.time())
        payload = {
            "iat": now - 10,  # clock skew
            "exp": now + 540,  # under GitHub's 10-minute limit
            "iss": self.app_id,
        }
        return pyjwt.encode(payload, self.private_key, algorithm="RS256")

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._ensure_token()
        return {"Authorization": f"token {token}"}

    # ── Webhook Verification ─────────────────────────────────────────────

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify HMAC-SHA256 webhook signature.

        Args:
            payload: Raw request body bytes.
            signature: X-Hub-Signature-256 header value.
        """
        if not self.webhook_secret:
            logger.warning("No webhook secret configured — skipping signature verification")
            return True

        expected = (
            "sha256="
            + hmac.new(
                self.webhook_secret.encode(),
                payload,
                hashlib.sha256,
            ).hexdigest()
        )

        return hmac.compare_digest(expected, signature)

    # ── Requests ─────────────────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Execute an authenticated request and track rate limits."""
        headers = await self._auth_headers()
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    # ── Commit Statuses ──────────────────────────────────────────────────

    async def create_commit_status(
        self,
        owner: str,
        repo: str,
        sha: str,
        *,
        state: str,
        context: str,
        description: str = "",
        target_url: str | None = None,
    ) -> dict:
        """Create a commit status (state: pending, success, failure, error)."""
        body: dict = {
            "state": state,
            "context": context,
            "description": description[:MAX_STATUS_DESCRIPTION],
        }
        if target_url:
            body["target_url"] = target_url
        resp = await self._request("POST", f"/repos/{owner}/{repo}/statuses/{sha}", json=body)
        return resp.json()
