import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from diarist.config_manager import ConfigManager, validate_config
from diarist.errors import FatalConfigError
from diarist.models import AppConfig, ServiceId


def _valid_payload() -> dict:
    return {
        "calendar": {"url": "https://dav.example.com/calendars/me/diary/"},
        "oauth": {"client_id": "client", "client_secret": "secret"},
        "services": {
            "wakatime": {
                "enabled": True,
                "headers": {"Authorization": "Basic abc"},
            },
        },
    }


class ConfigManagerTests(unittest.TestCase):
    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(_valid_payload())

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["calendar"]["url"], "https://dav.example.com/calendars/me/diary/")
            self.assertEqual(data["oauth"]["client_secret"], "secret")

    def test_missing_file_is_created_with_every_service_disabled(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(len(config.services), 5)
            self.assertEqual(config.enabled_services(), [])

    def test_load_validated_rejects_default_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with self.assertRaises(FatalConfigError) as ctx:
                manager.load_validated()
            self.assertIn("no service is enabled", str(ctx.exception))
            self.assertIn("calendar.url is required", str(ctx.exception))

    def test_load_validated_rejects_unparsable_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("calendar: [unclosed\n", encoding="utf-8")
            manager = ConfigManager(str(config_path))
            with self.assertRaises(FatalConfigError):
                manager.load_validated()

    def test_saved_config_loads_validated(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.save(AppConfig.from_dict(_valid_payload()))

            config = manager.load_validated()
            wakatime = config.services["wakatime"]
            self.assertEqual(config.enabled_services()[0].value, "wakatime")
            self.assertEqual(wakatime.headers, {"Authorization": "Basic abc"})
            self.assertFalse(config.service(ServiceId.NETFLIX).enabled)

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.save(AppConfig.from_dict(_valid_payload()))
            masked = manager.masked()

            self.assertEqual(masked["oauth"]["client_secret"], "***")
            self.assertEqual(masked["services"]["wakatime"]["headers"]["Authorization"], "***")
            self.assertEqual(manager.load().oauth.client_secret, "secret")


class ValidateConfigTests(unittest.TestCase):
    def test_valid_config_has_no_problems(self) -> None:
        self.assertEqual(validate_config(AppConfig.from_dict(_valid_payload())), [])

    def test_reports_unknown_service_and_bad_dedup_source(self) -> None:
        payload = _valid_payload()
        payload["services"]["myspace"] = {"enabled": True}
        payload["dedup"] = {"source": "memory"}
        problems = validate_config(AppConfig.from_dict(payload))

        self.assertIn("unknown service 'myspace'", problems)
        self.assertTrue(any(problem.startswith("dedup.source") for problem in problems))

    def test_enabled_service_without_url(self) -> None:
        payload = _valid_payload()
        payload["services"]["league_of_legends"] = {"enabled": True}
        problems = validate_config(AppConfig.from_dict(payload))

        self.assertEqual(problems, ["services.league_of_legends.url is required"])

    def test_missing_oauth_client(self) -> None:
        payload = _valid_payload()
        payload["oauth"] = {"client_id": "client"}
        problems = validate_config(AppConfig.from_dict(payload))

        self.assertEqual(problems, ["oauth.client_id and oauth.client_secret are required"])


if __name__ == "__main__":
    unittest.main()
