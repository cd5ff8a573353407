import asyncio
import logging
import sys

from dotenv import load_dotenv

from hellobot.bot import HelloBot, install_signal_handlers
from hellobot.config import ConfigError, load_settings
from hellobot.errors import HelloBotError

log = logging.getLogger("hellobot")


async def run_bot(bot: HelloBot) -> None:
    install_signal_handlers(bot)
    await bot.run()


def main() -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    try:
        settings = load_settings()
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        return 1
    logging.getLogger().setLevel(settings.log_level)

    bot = HelloBot(settings)
    try:
        asyncio.run(run_bot(bot))
    except KeyboardInterrupt:
        log.info("Interrupted")
    except HelloBotError as exc:
        log.error("Bot failed: %s", exc)
        return 1
    log.info("Shut down cleanly")
    return 0


if __name__ == '__main__':
    sys.exit(main())
