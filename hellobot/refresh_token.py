"""Log in with username/password and store a fresh access token.

Meant to run on a schedule (cron, CI) next to the bot. The new credential
goes into the session store the bot reads at startup.
"""

import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from .config import ConfigError, load_settings
from .errors import HelloBotError, InvalidCredentials, NetworkUnavailable, ServerRejected
from .store import JsonSessionStore
from .tokens import Credential, TokenManager
from .transport import MatrixTransport
from .utils import mask_token

log = logging.getLogger("hellobot.refresh_token")

REQUIRED_VARS = ("HOMESERVER_URL", "BOT_USERNAME", "BOT_PASSWORD")


def missing_vars(env=None):
    env = os.environ if env is None else env
    return [name for name in REQUIRED_VARS if not env.get(name)]


async def refresh_token(settings) -> Credential:
    transport = MatrixTransport(settings.homeserver)
    try:
        store = JsonSessionStore(settings.store_path)
        tokens = TokenManager(settings, transport, store)
        return await tokens.refresh()
    finally:
        await transport.close()


def hint_for(exc):
    if isinstance(exc, InvalidCredentials):
        return "Check that BOT_USERNAME exists on the homeserver and BOT_PASSWORD is correct"
    if isinstance(exc, NetworkUnavailable):
        return "Can't reach the homeserver, check that HOMESERVER_URL is reachable"
    if isinstance(exc, ServerRejected):
        return f"Homeserver refused the login (status {exc.status}, errcode {exc.errcode})"
    return None


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    missing = missing_vars()
    if missing:
        log.error("Missing required environment variables: %s", ", ".join(missing))
        return 1
    try:
        settings = load_settings()
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        return 1

    log.info("Homeserver: %s", settings.homeserver)
    log.info("Username: %s", settings.username)
    log.info("Session store: %s", settings.store_path)

    try:
        credential = asyncio.run(refresh_token(settings))
    except HelloBotError as exc:
        log.error("Token refresh failed: %s", exc)
        hint = hint_for(exc)
        if hint:
            log.error("Hint: %s", hint)
        return 1

    log.info("Login successful for %s (device %s)", credential.user_id, credential.device_id)
    log.info("New token %s written to %s", mask_token(credential.token), settings.store_path)
    return 0


if __name__ == '__main__':
    sys.exit(main())
