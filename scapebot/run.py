import asyncio
import logging

from .bot.app import create_bot, get_token
from .logging_utils import setup_logging

boot_logger = logging.getLogger("boot")


async def _run_bot() -> None:
    """Log in and serve until the connection closes; the updater is started from on_ready."""
    bot = create_bot()
    async with bot:
        try:
            await bot.start(get_token())
        finally:
            updater_task = getattr(bot, "_updater_task", None)
            if updater_task is not None:
                updater_task.cancel()
                await asyncio.gather(updater_task, return_exceptions=True)


def main() -> None:
    setup_logging()
    boot_logger.info("Starting ScapeBot (bot + player updater) ...")
    try:
        asyncio.run(_run_bot())
    except KeyboardInterrupt:
        boot_logger.info("Stopped (KeyboardInterrupt).")


if __name__ == "__main__":
    main()
