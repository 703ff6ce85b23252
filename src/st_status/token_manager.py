"""
Token Manager for the status poller.

Owns the Credential Record for a session: loads it from the vault,
refreshes the access token before it expires and persists every new
token pair. A legacy static token is supported as a simpler parallel
path in which refreshing is a no-op.

State flow (OAuth mode):
    NO_CREDENTIALS -> HAS_CREDENTIALS -> VALID -> REFRESH_PENDING
    REFRESH_PENDING -> VALID | PERMANENTLY_FAILED

A permanent refresh failure (invalid_grant, or HTTP 401 on the token
endpoint) latches: nothing refreshes automatically again until the
operator re-authorizes.
"""

import time
from typing import Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from .config import ModuleConfig
from .credential_vault import CredentialVault
from .enums import AuthMode, LogLevel, TokenState
from .exceptions import (
    AuthenticationError,
    NoCredentialsError,
    PersistenceError,
    TokenRefreshError,
)
from .models import CredentialRecord

TOKEN_URL = "https://api.smartthings.com/oauth/token"
AUTHORIZE_URL = "https://api.smartthings.com/oauth/authorize"
DEFAULT_SCOPES = "r:devices:* x:devices:* r:locations:*"
DEFAULT_REDIRECT_URI = "https://httpbin.org/get"

DEFAULT_EXPIRES_IN = 86400
REFRESH_BUFFER_SECONDS = 300

# Timer cadence; access tokens live for 24 hours
PROACTIVE_REFRESH_SECONDS = 20 * 3600
EXPIRING_SOON_SECONDS = 3600
EXPIRING_SOON_DELAY_SECONDS = 30.0
OPPORTUNISTIC_REFRESH_SECONDS = 600

REFRESH_TASK = "token-refresh"
EXPIRING_SOON_TASK = "token-refresh-soon"


def build_authorize_url(
    client_id: str,
    state: str,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
    scopes: str = DEFAULT_SCOPES,
) -> str:
    """Build the authorization-code grant URL the operator opens in a browser."""
    params = urlencode({
        "response_type": "code",
        "client_id": client_id,
        "scope": scopes,
        "redirect_uri": redirect_uri,
        "state": state,
    })
    return f"{AUTHORIZE_URL}?{params}"


def extract_code(value: str) -> Optional[str]:
    """
    Pull the authorization code out of a redirect URL.

    A bare code is returned unchanged.
    """
    value = value.strip()
    if not value:
        return None
    if "://" not in value:
        return value
    codes = parse_qs(urlparse(value).query).get("code")
    return codes[0] if codes else None


class TokenManager:
    """
    Access token lifecycle for one session.

    All timestamps come from the injected wall clock so tests can move
    time without sleeping.
    """

    def __init__(
        self,
        config: ModuleConfig,
        vault: CredentialVault,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[object] = None,
        token_url: str = TOKEN_URL,
    ) -> None:
        self._config = config
        self._vault = vault
        self._client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._logger = logger
        self._token_url = token_url

        self._record: Optional[CredentialRecord] = None
        self._mode: Optional[AuthMode] = None
        self._state = TokenState.NO_CREDENTIALS
        self._auth_failed = False

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def mode(self) -> Optional[AuthMode]:
        return self._mode

    @property
    def auth_failed(self) -> bool:
        """True once a refresh has failed permanently (or a legacy token was rejected)."""
        return self._auth_failed

    @property
    def record(self) -> Optional[CredentialRecord]:
        return self._record

    @property
    def access_token(self) -> Optional[str]:
        if self._mode == AuthMode.LEGACY:
            return self._config.token
        return self._record.access_token if self._record else None

    def initialize(self) -> TokenState:
        """
        Load credentials.

        Order: encrypted store (current generation, then legacy), then a
        static token from configuration.

        Raises:
            NoCredentialsError: If nothing usable exists; setup must be run
            VaultKeyError: If the key file is unusable
        """
        record = self._vault.load(self._config.oauth)
        if record is not None and record.access_token:
            if self._config.oauth:
                record.client_id = record.client_id or self._config.oauth.client_id
                record.client_secret = record.client_secret or self._config.oauth.client_secret
            self._record = record
            self._mode = AuthMode.OAUTH
            self._state = TokenState.HAS_CREDENTIALS
            if not self.needs_refresh():
                self._state = TokenState.VALID
            self._log(LogLevel.INFO, "Loaded OAuth credentials", {
                "expires_at": record.expires_at,
                "state": self._state.value,
            })
            return self._state

        if self._config.token:
            self._mode = AuthMode.LEGACY
            self._state = TokenState.VALID
            self._log(LogLevel.INFO, "Using legacy static token", {})
            return self._state

        self._state = TokenState.NO_CREDENTIALS
        raise NoCredentialsError(
            code="no_credentials",
            message="No credentials found. Run the OAuth setup or configure a token.",
            details={"data_file": str(self._vault.data_file)},
        )

    def remaining_seconds(self) -> Optional[float]:
        """Seconds until the access token expires, None when unknown."""
        if self._record is None or self._record.expires_at is None:
            return None
        return self._record.expires_at - self._clock()

    def needs_refresh(self, buffer_seconds: float = REFRESH_BUFFER_SECONDS) -> bool:
        """
        True if the token expires within buffer_seconds.

        An unknown expiry counts as stale. Always False in legacy mode.
        """
        if self._mode == AuthMode.LEGACY:
            return False
        remaining = self.remaining_seconds()
        if remaining is None:
            return True
        return remaining <= buffer_seconds

    def authorization_header(self) -> dict[str, str]:
        token = self.access_token
        if not token:
            raise NoCredentialsError(
                code="no_access_token",
                message="No access token available",
            )
        return {"Authorization": f"Bearer {token}"}

    def mark_rejected(self) -> None:
        """Latch the failure flag after the provider rejects a legacy token."""
        if self._mode == AuthMode.LEGACY:
            self._auth_failed = True
            self._state = TokenState.PERMANENTLY_FAILED
            self._log(LogLevel.ERROR, "Legacy token rejected by provider", {})

    async def refresh(self) -> bool:
        """
        Exchange the refresh token for a new token pair.

        Returns:
            True if a new token was obtained, False in legacy mode

        Raises:
            TokenRefreshError: permanent=True if re-authorization is required
        """
        if self._mode == AuthMode.LEGACY:
            return False
        if self._auth_failed:
            raise TokenRefreshError(
                code="refresh_latched",
                message="Token refresh failed permanently; re-authorization required",
                permanent=True,
            )

        record = self._record
        if record is None or not record.refresh_token:
            self._latch()
            raise TokenRefreshError(
                code="no_refresh_token",
                message="No refresh token available; re-authorization required",
                permanent=True,
            )
        client_id, client_secret = self._client_credentials(record)

        previous_state = self._state
        self._state = TokenState.REFRESH_PENDING
        self._log(LogLevel.INFO, "Refreshing access token", {})

        try:
            response = await self._post_token({
                "grant_type": "refresh_token",
                "refresh_token": record.refresh_token,
                "client_id": client_id,
            }, client_id, client_secret)
        except httpx.HTTPError as e:
            self._state = previous_state
            raise TokenRefreshError(
                code="network_error",
                message=f"Token refresh request failed: {e}",
                details={"url": self._token_url},
            ) from e

        body = self._json_body(response)
        if response.status_code == 401 or body.get("error") == "invalid_grant":
            self._latch()
            self._log(LogLevel.ERROR, "Refresh token rejected; re-authorization required", {
                "response_status_code": response.status_code,
                "error_code": body.get("error"),
            })
            raise TokenRefreshError(
                code=body.get("error") or "unauthorized",
                message="Refresh token is invalid or revoked",
                permanent=True,
                details={"status_code": response.status_code},
            )

        if response.status_code != 200 or not body.get("access_token"):
            self._state = previous_state
            raise TokenRefreshError(
                code=body.get("error") or "refresh_failed",
                message=f"Token refresh failed (HTTP {response.status_code})",
                details={
                    "status_code": response.status_code,
                    "error_description": body.get("error_description"),
                },
            )

        self._apply_tokens(record, body)
        self._auth_failed = False
        self._state = TokenState.VALID
        try:
            self._persist()
        except PersistenceError as e:
            # The new token still works for this process
            if self._logger:
                self._logger.log_error("TokenManager", "Failed to persist refreshed token", error=e)
        self._log(LogLevel.INFO, "Access token refreshed", {"expires_at": record.expires_at})
        return True

    async def ensure_fresh(
        self,
        min_remaining_seconds: float = OPPORTUNISTIC_REFRESH_SECONDS,
    ) -> bool:
        """
        Refresh before a batch of API calls if the token is about to expire.

        Returns:
            True if a refresh was performed
        """
        if self._mode != AuthMode.OAUTH or self._auth_failed:
            return False
        if not self.needs_refresh(min_remaining_seconds):
            return False
        return await self.refresh()

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str = DEFAULT_REDIRECT_URI,
    ) -> CredentialRecord:
        """
        Exchange an authorization code for tokens and persist them.

        Raises:
            NoCredentialsError: If no client id/secret is configured
            AuthenticationError: If the provider rejects the exchange
        """
        oauth = self._config.oauth
        if oauth is None:
            raise NoCredentialsError(
                code="no_client_credentials",
                message="clientId and clientSecret are required to exchange a code",
            )

        try:
            response = await self._post_token({
                "grant_type": "authorization_code",
                "code": code,
                "client_id": oauth.client_id,
                "redirect_uri": redirect_uri,
            }, oauth.client_id, oauth.client_secret)
        except httpx.HTTPError as e:
            raise AuthenticationError(
                code="network_error",
                message=f"Token exchange request failed: {e}",
            ) from e

        body = self._json_body(response)
        if response.status_code != 200 or not body.get("access_token"):
            raise AuthenticationError(
                code=body.get("error") or "exchange_failed",
                message=(
                    f"Token exchange failed (HTTP {response.status_code}): "
                    f"{body.get('error_description') or body.get('error') or 'no details'}"
                ),
                details={"status_code": response.status_code},
            )

        record = CredentialRecord(client_id=oauth.client_id, client_secret=oauth.client_secret)
        self._apply_tokens(record, body)
        self._record = record
        self._mode = AuthMode.OAUTH
        self._persist()
        self._auth_failed = False
        self._state = TokenState.VALID
        self._log(LogLevel.INFO, "Authorization code exchanged", {"expires_at": record.expires_at})
        return record

    def schedule_refreshes(
        self,
        scheduler,
        on_error: Optional[Callable[[TokenRefreshError], None]] = None,
    ) -> None:
        """
        Start the proactive refresh timers.

        A recurring refresh every 20 hours, plus a one-shot refresh shortly
        after startup when less than an hour of token lifetime remains.
        """
        if self._mode != AuthMode.OAUTH:
            return

        async def run() -> None:
            await self._timed_refresh(on_error)

        scheduler.every(REFRESH_TASK, PROACTIVE_REFRESH_SECONDS, run)

        remaining = self.remaining_seconds()
        if remaining is None or remaining < EXPIRING_SOON_SECONDS:
            self._log(LogLevel.INFO, "Token expiring soon, scheduling refresh", {
                "remaining_seconds": remaining,
            })
            scheduler.once(EXPIRING_SOON_TASK, EXPIRING_SOON_DELAY_SECONDS, run)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _timed_refresh(
        self,
        on_error: Optional[Callable[[TokenRefreshError], None]],
    ) -> None:
        if self._auth_failed:
            return
        try:
            await self.refresh()
        except TokenRefreshError as e:
            self._log(LogLevel.WARN, "Scheduled token refresh failed", {
                "error_code": e.code,
                "permanent": e.permanent,
            })
            if on_error:
                on_error(e)

    async def _post_token(
        self,
        form: dict[str, str],
        client_id: str,
        client_secret: str,
    ) -> httpx.Response:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout_seconds),
            )
        return await self._client.post(
            self._token_url,
            data=form,
            auth=httpx.BasicAuth(client_id, client_secret),
            headers={"Accept": "application/json"},
        )

    def _client_credentials(self, record: CredentialRecord) -> tuple[str, str]:
        client_id = record.client_id or (self._config.oauth.client_id if self._config.oauth else None)
        client_secret = record.client_secret or (
            self._config.oauth.client_secret if self._config.oauth else None
        )
        if not client_id or not client_secret:
            self._latch()
            raise TokenRefreshError(
                code="no_client_credentials",
                message="Client credentials missing; re-authorization required",
                permanent=True,
            )
        return client_id, client_secret

    def _apply_tokens(self, record: CredentialRecord, body: dict) -> None:
        now = self._clock()
        record.access_token = body["access_token"]
        record.refresh_token = body.get("refresh_token") or record.refresh_token
        record.token_type = body.get("token_type") or record.token_type
        record.scope = body.get("scope") or record.scope
        try:
            expires_in = float(body.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        record.expires_at = now + expires_in
        record.obtained_at = now

    def _persist(self) -> None:
        # Always written in the current generation, which migrates legacy files
        self._vault.save(self._record)

    def _latch(self) -> None:
        self._auth_failed = True
        self._state = TokenState.PERMANENTLY_FAILED

    @staticmethod
    def _json_body(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, "TokenManager", message, data)
