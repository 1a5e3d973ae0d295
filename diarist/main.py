from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

from diarist.config_manager import ConfigManager
from diarist.credential_store import CredentialStore
from diarist.errors import ConsentError, FatalConfigError
from diarist.web_admin import AppContext, create_app

logger = logging.getLogger("diarist")

EXIT_OK = 0
EXIT_SYNC_FAILED = 1
EXIT_CONFIG = 2
EXIT_CONSENT = 3


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="diarist", description="Mirror online activity into a calendar diary.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="run one sync cycle for every enabled service and exit")
    mode.add_argument("--authorize", action="store_true", help="run the calendar consent flow and exit")
    return parser.parse_args(argv)


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("DIARIST_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _authorize() -> int:
    config = ConfigManager(os.getenv("DIARIST_CONFIG_PATH", "config.yaml")).load()
    if not config.oauth.client_id or not config.oauth.client_secret:
        raise FatalConfigError("oauth.client_id and oauth.client_secret are required")
    CredentialStore(config.oauth).authorize()
    logger.info("Calendar authorization stored in %s.", config.oauth.credential_path)
    return EXIT_OK


def _run_once(context: AppContext) -> int:
    try:
        context.credential_store.initialize()
        results = context.orchestrator.run_cycle(trigger="once")
    finally:
        context.state_store.end_session()
    for result in results:
        logger.info("%s: %s %s", result.service_id.value, result.status, result.message)
    return EXIT_OK if all(result.ok for result in results) else EXIT_SYNC_FAILED


def _serve(context: AppContext) -> int:
    context.credential_store.initialize()
    host = os.getenv("DIARIST_HOST", "0.0.0.0")  # nosec B104
    port = int(os.getenv("DIARIST_PORT", "8080"))
    uvicorn.run(create_app(context), host=host, port=port, reload=False)
    if context.scheduler.fatal_error is not None:
        raise context.scheduler.fatal_error
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging()
    try:
        if args.authorize:
            return _authorize()
        context = AppContext.from_env()
        if args.once:
            return _run_once(context)
        return _serve(context)
    except FatalConfigError as exc:
        logger.critical("Invalid configuration: %s", exc)
        return EXIT_CONFIG
    except ConsentError as exc:
        logger.critical("Calendar authorization failed: %s", exc)
        return EXIT_CONSENT


if __name__ == "__main__":
    sys.exit(main())
