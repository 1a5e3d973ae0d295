import unittest
from unittest import mock

from diarist import main as cli
from diarist.errors import ConsentError, FatalConfigError
from diarist.models import ServiceCycleResult, ServiceId


class MainTests(unittest.TestCase):
    def test_once_runs_a_single_cycle(self) -> None:
        context = mock.Mock()
        context.orchestrator.run_cycle.return_value = [
            ServiceCycleResult(service_id=ServiceId.WAKATIME, status="success")
        ]
        with mock.patch.object(cli.AppContext, "from_env", return_value=context):
            code = cli.main(["--once"])

        self.assertEqual(code, cli.EXIT_OK)
        context.credential_store.initialize.assert_called_once_with()
        context.orchestrator.run_cycle.assert_called_once_with(trigger="once")
        context.state_store.end_session.assert_called_once_with()

    def test_once_reports_failed_services(self) -> None:
        context = mock.Mock()
        context.orchestrator.run_cycle.return_value = [
            ServiceCycleResult(service_id=ServiceId.WAKATIME, status="success"),
            ServiceCycleResult(service_id=ServiceId.BILIBILI, status="failed"),
        ]
        with mock.patch.object(cli.AppContext, "from_env", return_value=context):
            self.assertEqual(cli.main(["--once"]), cli.EXIT_SYNC_FAILED)

    def test_invalid_config_exits_with_config_code(self) -> None:
        with mock.patch.object(cli.AppContext, "from_env", side_effect=FatalConfigError("calendar.url is required")):
            self.assertEqual(cli.main(["--once"]), cli.EXIT_CONFIG)

    def test_consent_failure_exits_with_consent_code(self) -> None:
        context = mock.Mock()
        context.credential_store.initialize.side_effect = ConsentError("no interactive console")
        with mock.patch.object(cli.AppContext, "from_env", return_value=context):
            self.assertEqual(cli.main(["--once"]), cli.EXIT_CONSENT)
        context.state_store.end_session.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
