import json
import os
import stat
import tempfile
import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import requests

from diarist.credential_store import (
    ConsoleConsentFlow,
    CredentialStore,
    OAuthTokenClient,
    extract_authorization_code,
)
from diarist.errors import AuthError, CalendarWriteError, ConsentError
from diarist.models import Credential, OAuthConfig


def _fresh(token: str, refresh_token: str = "refresh-1") -> Credential:
    return Credential(
        access_token=token,
        refresh_token=refresh_token,
        expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        scope="calendar",
    )


class CredentialStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.credential_path = Path(self.temp_dir.name) / "credential.json"
        self.config = OAuthConfig(client_id="client", client_secret="secret", credential_path=str(self.credential_path))
        self.token_client = mock.Mock(spec=OAuthTokenClient)
        self.consent_flow = mock.Mock(spec=ConsoleConsentFlow)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _write_cached(self, credential: Credential) -> None:
        self.credential_path.write_text(json.dumps(credential.to_dict()), encoding="utf-8")

    def _store(self) -> CredentialStore:
        return CredentialStore(self.config, token_client=self.token_client, consent_flow=self.consent_flow)

    def test_valid_cached_credential_is_used_without_network(self) -> None:
        self._write_cached(_fresh("cached"))
        store = self._store()

        self.assertEqual(store.get_valid_credential().access_token, "cached")
        self.token_client.refresh.assert_not_called()
        self.consent_flow.run.assert_not_called()

    def test_concurrent_callers_share_one_refresh(self) -> None:
        expired = _fresh("old")
        expired.expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        self._write_cached(expired)
        store = self._store()

        def slow_refresh(refresh_token: str) -> Credential:
            time.sleep(0.05)
            return _fresh("new", refresh_token)

        self.token_client.refresh.side_effect = slow_refresh
        barrier = threading.Barrier(8)
        tokens: list[str] = []
        tokens_lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            token = store.get_valid_credential().access_token
            with tokens_lock:
                tokens.append(token)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        self.assertEqual(self.token_client.refresh.call_count, 1)
        self.assertEqual(tokens, ["new"] * 8)

    def test_credential_expiring_within_skew_is_refreshed(self) -> None:
        soon = _fresh("old")
        soon.expiry = datetime.now(timezone.utc) + timedelta(seconds=30)
        self._write_cached(soon)
        self.token_client.refresh.return_value = _fresh("new")

        self.assertEqual(self._store().get_valid_credential().access_token, "new")
        self.token_client.refresh.assert_called_once_with("refresh-1")

    def test_rejected_refresh_runs_consent_and_persists(self) -> None:
        expired = _fresh("old")
        expired.expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        self._write_cached(expired)
        self.token_client.refresh.side_effect = AuthError("invalid_grant")
        self.consent_flow.run.return_value = _fresh("consented", "refresh-2")

        credential = self._store().get_valid_credential()

        self.assertEqual(credential.access_token, "consented")
        self.consent_flow.run.assert_called_once_with()
        saved = json.loads(self.credential_path.read_text(encoding="utf-8"))
        self.assertEqual(saved["refresh_token"], "refresh-2")
        self.assertFalse(Path(str(self.credential_path) + ".tmp").exists())
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE(self.credential_path.stat().st_mode), 0o600)

    def test_transport_failure_during_refresh_does_not_prompt(self) -> None:
        expired = _fresh("old")
        expired.expiry = datetime.now(timezone.utc) - timedelta(minutes=5)
        self._write_cached(expired)
        self.token_client.refresh.side_effect = CalendarWriteError("token endpoint unreachable")

        with self.assertRaises(CalendarWriteError):
            self._store().get_valid_credential()
        self.consent_flow.run.assert_not_called()

    def test_missing_cache_runs_consent(self) -> None:
        self.consent_flow.run.return_value = _fresh("first")

        self.assertEqual(self._store().initialize().access_token, "first")
        self.token_client.refresh.assert_not_called()
        self.assertTrue(self.credential_path.exists())

    def test_unreadable_cache_is_ignored(self) -> None:
        self.credential_path.write_text("{not json", encoding="utf-8")
        self.consent_flow.run.return_value = _fresh("first")

        self.assertEqual(self._store().get_valid_credential().access_token, "first")

    def test_consent_failure_propagates(self) -> None:
        self.consent_flow.run.side_effect = ConsentError("no console")

        with self.assertRaises(ConsentError):
            self._store().get_valid_credential()

    def test_invalidate_only_matching_token(self) -> None:
        self._write_cached(_fresh("current"))
        store = self._store()
        self.token_client.refresh.return_value = _fresh("next")

        store.invalidate("stale-token")
        self.assertEqual(store.get_valid_credential().access_token, "current")

        store.invalidate("current")
        self.assertEqual(store.get_valid_credential().access_token, "next")
        self.token_client.refresh.assert_called_once()

    def test_authorize_always_runs_consent(self) -> None:
        self._write_cached(_fresh("cached"))
        self.consent_flow.run.return_value = _fresh("forced")

        self.assertEqual(self._store().authorize().access_token, "forced")
        self.assertIn("forced", self.credential_path.read_text(encoding="utf-8"))


class ConsoleConsentFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = OAuthConfig(client_id="client", client_secret="secret")
        self.token_client = mock.Mock(spec=OAuthTokenClient)
        self.printed: list[str] = []

    def _flow(self, answer: str = "", interactive: bool = True) -> ConsoleConsentFlow:
        return ConsoleConsentFlow(
            self.config,
            self.token_client,
            input_func=lambda prompt: answer,
            output=self.printed.append,
            is_interactive=lambda: interactive,
        )

    def test_non_interactive_console_fails(self) -> None:
        with self.assertRaises(ConsentError):
            self._flow(interactive=False).run()
        self.token_client.exchange_code.assert_not_called()

    def test_authorization_url_requests_offline_access(self) -> None:
        url = self._flow().authorization_url()
        self.assertIn("access_type=offline", url)
        self.assertIn("prompt=consent", url)
        self.assertIn("client_id=client", url)

    def test_redirect_url_code_is_exchanged(self) -> None:
        self.token_client.exchange_code.return_value = _fresh("token")
        credential = self._flow("http://localhost/?code=4%2Fabc&scope=calendar").run()

        self.assertEqual(credential.access_token, "token")
        self.token_client.exchange_code.assert_called_once_with("4/abc")
        self.assertTrue(any("accounts.google.com" in line for line in self.printed))

    def test_empty_answer_fails(self) -> None:
        with self.assertRaises(ConsentError):
            self._flow("   ").run()

    def test_rejected_exchange_fails(self) -> None:
        self.token_client.exchange_code.side_effect = AuthError("invalid_grant")
        with self.assertRaises(ConsentError):
            self._flow("code-1").run()

    def test_extract_authorization_code_plain_value(self) -> None:
        self.assertEqual(extract_authorization_code(" raw-code "), "raw-code")
        self.assertEqual(extract_authorization_code("?code=xyz&state=1"), "xyz")


class OAuthTokenClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = OAuthTokenClient(OAuthConfig(client_id="client", client_secret="secret"))

    def _response(self, status: int, payload: dict) -> mock.Mock:
        response = mock.Mock()
        response.status_code = status
        response.ok = status < 400
        response.json.return_value = payload
        response.text = json.dumps(payload)
        return response

    def test_refresh_keeps_refresh_token_when_not_rotated(self) -> None:
        with mock.patch(
            "diarist.credential_store.requests.post",
            return_value=self._response(200, {"access_token": "a2", "expires_in": 3599}),
        ) as post:
            credential = self.client.refresh("r1")

        self.assertEqual(credential.access_token, "a2")
        self.assertEqual(credential.refresh_token, "r1")
        self.assertEqual(post.call_args.kwargs["data"]["grant_type"], "refresh_token")

    def test_invalid_grant_is_auth_error(self) -> None:
        with mock.patch(
            "diarist.credential_store.requests.post",
            return_value=self._response(400, {"error": "invalid_grant"}),
        ):
            with self.assertRaises(AuthError) as ctx:
                self.client.refresh("r1")
        self.assertIn("invalid_grant", str(ctx.exception))

    def test_server_error_is_transient(self) -> None:
        with mock.patch(
            "diarist.credential_store.requests.post",
            return_value=self._response(503, {"error": "backend"}),
        ):
            with self.assertRaises(CalendarWriteError):
                self.client.refresh("r1")

    def test_network_error_is_transient(self) -> None:
        with mock.patch(
            "diarist.credential_store.requests.post",
            side_effect=requests.ConnectionError("down"),
        ):
            with self.assertRaises(CalendarWriteError):
                self.client.refresh("r1")


if __name__ == "__main__":
    unittest.main()
