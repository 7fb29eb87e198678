"""TokenStore: GitHub token bootstrap and the Copilot token lifecycle."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

import httpx

from copilotlink.config import Settings
from copilotlink.errors import AuthError
from copilotlink.models import Credential, DeviceCode
from copilotlink.upstream import GITHUB_API_BASE_URL, github_headers

logger = logging.getLogger(__name__)

GITHUB_BASE_URL = "https://github.com"
GITHUB_CLIENT_ID = "Iv1.b507a08c87ecfe98"
GITHUB_APP_SCOPES = "read:user"

_SLOW_DOWN_STEP = 5  # seconds added to the poll interval on "slow_down" (RFC 8628)
_TRANSIENT_RETRY_DELAY = 1.0
_REAUTH_STATUSES = {401, 403, 404}


def load_github_token(path: Path) -> str | None:
    """Read a previously stored GitHub token, or None if there is none."""
    if not path.exists():
        return None
    token = path.read_text().strip()
    return token or None


def save_github_token(path: Path, token: str) -> None:
    """Persist the GitHub token, readable only by the current user."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(token)
    os.chmod(path, 0o600)


def _mask(token: str) -> str:
    return f"{token[:4]}…{token[-4:]}" if len(token) > 12 else "****"


class TokenStore:
    """Owns the credential pair and serializes every refresh.

    ``get_valid()`` hands out the cached Copilot token while it is outside the
    safety margin. Otherwise it joins the single in-flight refresh, so any
    number of concurrent callers cause exactly one exchange call and all see
    the same outcome.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._http = http_client
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._github_token: str | None = settings.github_token or None
        self._credential: Credential | None = None
        self._inflight: asyncio.Task[Credential] | None = None

    @property
    def github_token(self) -> str | None:
        return self._github_token

    @property
    def credential(self) -> Credential | None:
        return self._credential

    # -- Bootstrap ------------------------------------------------------------

    async def bootstrap(
        self,
        existing_github_token: str | None = None,
        on_user_code: Callable[[DeviceCode], None] | None = None,
    ) -> None:
        """Make sure a GitHub token is available, running the device flow if needed."""
        token = existing_github_token or self._github_token
        if token:
            logger.info("Using provided GitHub token")
        else:
            token_path = Path(self._settings.github_token_path)
            token = load_github_token(token_path)
            if token:
                logger.info("Using GitHub token from %s", token_path)
            else:
                logger.info("No GitHub token found, starting device authorization")
                token = await self.run_device_flow(on_user_code)
                save_github_token(token_path, token)
                logger.info("Saved GitHub token to %s", token_path)

        if self._settings.show_token:
            logger.info("GitHub token: %s", token)
        self._github_token = token

    async def request_device_code(self) -> DeviceCode:
        try:
            resp = await self._http.post(
                f"{GITHUB_BASE_URL}/login/device/code",
                headers=github_headers(self._settings),
                json={"client_id": GITHUB_CLIENT_ID, "scope": GITHUB_APP_SCOPES},
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Failed to request device code: {e}") from e
        if not resp.is_success:
            raise AuthError(f"Failed to request device code: HTTP {resp.status_code}")
        return DeviceCode(**resp.json())

    async def run_device_flow(
        self, on_user_code: Callable[[DeviceCode], None] | None = None
    ) -> str:
        """Run the device authorization grant and return the GitHub token."""
        device = await self.request_device_code()
        if on_user_code is not None:
            on_user_code(device)
        else:
            logger.info(
                "Please enter the code %s at %s", device.user_code, device.verification_uri
            )
        return await self.poll_access_token(device)

    async def poll_access_token(self, device: DeviceCode) -> str:
        """Poll until the user authorizes, a terminal error occurs, or the deadline passes."""
        interval = float(device.interval)
        deadline = self._clock() + min(float(device.expires_in), self._settings.device_flow_timeout)

        while True:
            if self._clock() + interval > deadline:
                raise AuthError("Device authorization timed out", reauth_required=True)
            await self._sleep(interval)

            try:
                resp = await self._http.post(
                    f"{GITHUB_BASE_URL}/login/oauth/access_token",
                    headers=github_headers(self._settings),
                    json={
                        "client_id": GITHUB_CLIENT_ID,
                        "device_code": device.device_code,
                        "grant_type": "urn:ietf:params:oauth:grant-type:device_code",
                    },
                    timeout=30.0,
                )
            except httpx.HTTPError as e:
                logger.debug("Device token poll failed: %s", e)
                continue
            if not resp.is_success:
                logger.debug("Device token poll returned HTTP %d", resp.status_code)
                continue

            data = resp.json()
            if data.get("access_token"):
                logger.info("Device authorization complete")
                return str(data["access_token"])

            error = data.get("error")
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval = max(interval + _SLOW_DOWN_STEP, float(data.get("interval") or 0))
                logger.debug("Device flow asked to slow down, polling every %.0fs", interval)
                continue
            if error == "expired_token":
                raise AuthError("Device code expired before authorization", reauth_required=True)
            if error == "access_denied":
                raise AuthError("Device authorization was denied", reauth_required=True)
            raise AuthError(
                f"Device authorization failed: {data.get('error_description') or error}",
                reauth_required=True,
            )

    # -- Copilot token ----------------------------------------------------------

    async def get_valid(self) -> Credential:
        """Return a credential valid for at least the configured safety margin."""
        cred = self._credential
        if cred is not None and not cred.expires_within(
            self._settings.token_refresh_margin, self._clock()
        ):
            return cred
        return await self.refresh()

    async def refresh(self) -> Credential:
        """Exchange the GitHub token for a new Copilot token (single-flight)."""
        task = self._inflight
        if task is None:
            task = asyncio.ensure_future(self._refresh_with_retry())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        # shield: a canceled caller must not cancel the refresh others wait on
        return await asyncio.shield(task)

    def invalidate(self) -> None:
        """Drop the cached Copilot token so the next get_valid() refreshes it."""
        self._credential = None

    def _clear_inflight(self, task: asyncio.Task[Credential]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            task.exception()  # mark retrieved even if every waiter went away

    async def _refresh_with_retry(self) -> Credential:
        try:
            cred = await self._exchange()
        except AuthError as e:
            if e.reauth_required:
                raise
            logger.warning("Copilot token exchange failed (%s), retrying once", e.reason)
            await self._sleep(_TRANSIENT_RETRY_DELAY)
            cred = await self._exchange()
        self._credential = cred
        return cred

    async def _exchange(self) -> Credential:
        github_token = self._github_token
        if not github_token:
            raise AuthError("No GitHub token available; run the auth flow", reauth_required=True)

        logger.debug("Exchanging GitHub token for a Copilot token")
        try:
            resp = await self._http.get(
                f"{GITHUB_API_BASE_URL}/copilot_internal/v2/token",
                headers=github_headers(self._settings, github_token),
                timeout=30.0,
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Copilot token exchange failed: {e}") from e

        if resp.status_code in _REAUTH_STATUSES:
            raise AuthError(
                f"GitHub token rejected by the token exchange (HTTP {resp.status_code}); "
                "re-authentication required",
                reauth_required=True,
            )
        if not resp.is_success:
            raise AuthError(f"Copilot token exchange failed: HTTP {resp.status_code}")

        data = resp.json()
        token = data.get("token")
        if not token:
            raise AuthError("Copilot token exchange returned no token")

        now = self._clock()
        if data.get("expires_at"):
            expires_at = float(data["expires_at"])
        else:
            expires_at = now + float(data.get("refresh_in", 1500))
        api_base = (data.get("endpoints") or {}).get("api")

        if self._settings.show_token:
            logger.info("Copilot token: %s", token)
        else:
            logger.info(
                "Copilot token refreshed (%s), valid for %ds", _mask(token), expires_at - now
            )
        return Credential(
            github_token=github_token,
            upstream_token=token,
            expires_at=expires_at,
            api_base=api_base,
        )
