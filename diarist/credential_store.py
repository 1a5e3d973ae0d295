from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from diarist.errors import AuthError, CalendarWriteError, ConsentError
from diarist.models import Credential, OAuthConfig

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else 3600
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        return 3600
    return parsed if parsed > 0 else 3600


def _safe_error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error_description") or payload.get("error")
        if isinstance(error, str) and error.strip():
            return " ".join(error.split())[:200]
    text = (response.text or "").strip()
    if text:
        return " ".join(text.split())[:200]
    return f"HTTP {response.status_code}"


def extract_authorization_code(value: str) -> str:
    text = value.strip()
    if "code=" not in text:
        return text
    query = urlparse(text).query if "://" in text else text.lstrip("?")
    codes = parse_qs(query).get("code") or []
    return codes[0].strip() if codes else ""


class OAuthTokenClient:
    def __init__(self, config: OAuthConfig, timeout_seconds: int = 30) -> None:
        self.config = config
        self.timeout_seconds = timeout_seconds

    def refresh(self, refresh_token: str) -> Credential:
        payload = self._post(
            {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        credential = self._credential_from_payload(payload)
        if not credential.refresh_token:
            credential.refresh_token = refresh_token
        return credential

    def exchange_code(self, code: str) -> Credential:
        payload = self._post(
            {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "code": code,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        return self._credential_from_payload(payload)

    def _post(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = requests.post(
                self.config.token_uri,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise CalendarWriteError(f"OAuth token endpoint unreachable: {exc}") from exc
        if response.status_code in (400, 401, 403):
            raise AuthError(f"OAuth token request rejected ({response.status_code}): {_safe_error_message(response)}")
        if not response.ok:
            raise CalendarWriteError(
                f"OAuth token endpoint failed ({response.status_code}): {_safe_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarWriteError("OAuth token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CalendarWriteError("OAuth token endpoint returned an unexpected payload")
        return payload

    def _credential_from_payload(self, payload: dict[str, Any]) -> Credential:
        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise AuthError("OAuth token response is missing access_token")
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return Credential(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or "").strip(),
            expiry=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            scope=str(payload.get("scope") or " ".join(self.config.scopes)),
        )


class ConsoleConsentFlow:
    def __init__(
        self,
        config: OAuthConfig,
        token_client: OAuthTokenClient,
        *,
        input_func: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
        is_interactive: Callable[[], bool] | None = None,
    ) -> None:
        self.config = config
        self.token_client = token_client
        self._input = input_func
        self._output = output
        self._is_interactive = is_interactive or (lambda: sys.stdin is not None and sys.stdin.isatty())

    def authorization_url(self) -> str:
        query = urlencode(
            {
                "client_id": self.config.client_id,
                "redirect_uri": self.config.redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.config.scopes),
                "access_type": "offline",
                "prompt": "consent",
            }
        )
        return f"{self.config.auth_uri}?{query}"

    def run(self) -> Credential:
        if not self._is_interactive():
            raise ConsentError("Calendar authorization required but no interactive console is attached.")
        self._output("Calendar authorization required. Open this URL in a browser and grant access:")
        self._output(self.authorization_url())
        try:
            answer = self._input("Paste the authorization code (or the full redirect URL): ")
        except EOFError as exc:
            raise ConsentError("No authorization code was entered.") from exc
        code = extract_authorization_code(answer or "")
        if not code:
            raise ConsentError("No authorization code was entered.")
        try:
            credential = self.token_client.exchange_code(code)
        except (AuthError, CalendarWriteError) as exc:
            raise ConsentError(f"Authorization code exchange failed: {exc}") from exc
        if not credential.refresh_token:
            logger.warning("Token endpoint issued no refresh token; the next expiry will need consent again.")
        return credential


class CredentialStore:
    """Process-wide owner of the calendar credential.

    Readers get the cached credential without locking. Refresh and consent run
    under one lock, so concurrent callers that observe an expiring credential
    wait for the first caller's refresh and reuse its result.
    """

    def __init__(
        self,
        config: OAuthConfig,
        *,
        token_client: OAuthTokenClient | None = None,
        consent_flow: ConsoleConsentFlow | None = None,
    ) -> None:
        self.config = config
        self.path = Path(config.credential_path)
        self.token_client = token_client or OAuthTokenClient(config)
        self.consent_flow = consent_flow or ConsoleConsentFlow(config, self.token_client)
        self._lock = threading.Lock()
        self._credential: Credential | None = self._load()

    def initialize(self) -> Credential:
        return self.get_valid_credential()

    def get_valid_credential(self) -> Credential:
        credential = self._credential
        if self._is_usable(credential):
            return credential  # type: ignore[return-value]
        with self._lock:
            credential = self._credential
            if self._is_usable(credential):
                return credential  # type: ignore[return-value]
            renewed = self._renew(credential)
            self._credential = renewed
            self._persist(renewed)
            return renewed

    def authorize(self) -> Credential:
        """Run the consent flow unconditionally and store its credential."""
        with self._lock:
            credential = self.consent_flow.run()
            self._credential = credential
            self._persist(credential)
            return credential

    def invalidate(self, access_token: str | None = None) -> None:
        with self._lock:
            current = self._credential
            if current is None:
                return
            if access_token is not None and access_token != current.access_token:
                # Someone already replaced the token this caller saw rejected.
                return
            current.expiry = EPOCH
            logger.info("Calendar access token invalidated; next use will refresh it.")

    def _is_usable(self, credential: Credential | None) -> bool:
        return credential is not None and not credential.expires_within(self.config.refresh_skew_seconds)

    def _renew(self, credential: Credential | None) -> Credential:
        if credential is not None and credential.refresh_token:
            try:
                refreshed = self.token_client.refresh(credential.refresh_token)
                logger.info("Calendar access token refreshed; valid until %s.", refreshed.expiry)
                return refreshed
            except AuthError as exc:
                logger.error("Calendar refresh token rejected (%s); starting interactive consent.", exc)
        else:
            logger.warning("No stored calendar credential; starting interactive consent.")
        credential = self.consent_flow.run()
        logger.info("Calendar authorization completed.")
        return credential

    def _load(self) -> Credential | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable credential cache %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            return None
        credential = Credential.from_dict(data)
        if not credential.access_token and not credential.refresh_token:
            return None
        return credential

    def _persist(self, credential: Credential) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(credential.to_dict(), handle, indent=2)
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.path)
