import asyncio

from aiogram import Bot, Dispatcher
from aiogram.types import BotCommand

from api import config
from api.integrations.panel.client import build_provisioning_client
from api.utils import db
from api.utils.keys import KeyService
from api.utils.logging import configure_logging, get_logger
from api.utils.payments import PaymentWorkflow
from api.utils.pending import PendingReasonTracker
from bot.transport import AiogramTransport
from handlers.payments import PaymentHandlerDependencies, setup_payment_handlers

logger = get_logger("bot")

BOT_COMMANDS = [
    BotCommand(command="start", description="Регистрация"),
    BotCommand(command="getkey", description="Получить ключ"),
    BotCommand(command="status", description="Срок действия ключа"),
    BotCommand(command="help", description="Помощь"),
]


async def main() -> None:
    configure_logging()
    token = config.require_env("BOT_TOKEN")
    if not config.OPERATOR_IDS:
        logger.warning("OPERATOR_IDS is empty; payment proofs will not reach anyone")

    await asyncio.to_thread(db.init_db)

    provisioning = build_provisioning_client()
    await provisioning.authenticate()

    bot = Bot(token=token)
    dp = Dispatcher()

    workflow = PaymentWorkflow(
        provisioning=provisioning,
        transport=AiogramTransport(bot),
        operator_ids=config.OPERATOR_IDS,
        tracker=PendingReasonTracker(),
        renewal_days=config.RENEWAL_DAYS,
        timeout=config.REQUEST_TIMEOUT_SECONDS,
    )
    keys = KeyService(
        provisioning=provisioning,
        key_days=config.KEY_VALIDITY_DAYS,
        timeout=config.REQUEST_TIMEOUT_SECONDS,
    )
    setup_payment_handlers(dp, PaymentHandlerDependencies(workflow=workflow, keys=keys, logger=logger))

    try:
        await bot.set_my_commands(BOT_COMMANDS)
    except Exception:
        logger.warning("Failed to register bot commands", exc_info=True)

    logger.info("Starting bot polling", extra={"operators": len(config.OPERATOR_IDS)})
    try:
        await dp.start_polling(bot)
    finally:
        await provisioning.aclose()
        await bot.session.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
