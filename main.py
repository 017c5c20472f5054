import asyncio
import logging
import os

from aiogram import Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command
from aiogram.fsm.storage.memory import MemoryStorage

import config
from database import get_kv_store
from gpt_parser import build_classifier
from lifecycle import TaskLifecycle
from task_store import TaskStore
import scheduler
import handlers.start as start_handler
import handlers.task_actions as task_actions_handler
import handlers.task_list as task_list_handler

logger = logging.getLogger(__name__)


def setup_logging(log_dir=config.LOG_DIR, level=config.LOG_LEVEL):
    logging.basicConfig(level=level,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Создаем директорию для логов, если она не существует
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    # Добавляем обработчик для записи логов в файл
    file_handler = logging.FileHandler(os.path.join(log_dir, 'bot_debug.log'))
    file_handler.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    file_handler.setFormatter(formatter)
    logging.getLogger().addHandler(file_handler)


def build_dispatcher(lifecycle, store, classifier):
    # Всё, что нужно обработчикам, передаётся через workflow data
    dp = Dispatcher(storage=MemoryStorage(), lifecycle=lifecycle, store=store, classifier=classifier)

    # Команды
    dp.message.register(start_handler.handle_start, Command("start"))
    dp.message.register(start_handler.handle_start, Command("help"))
    dp.message.register(task_list_handler.handle_stats, Command("stats"))
    dp.message.register(task_list_handler.handle_task_list, Command("tasks"))
    dp.message.register(task_actions_handler.handle_cancel, Command("cancel"))
    dp.message.register(task_actions_handler.handle_parse, Command("parse"))

    # В конце регистрируем самый общий обработчик
    dp.message.register(task_actions_handler.route_message, F.text | F.caption)
    return dp


async def main():
    setup_logging()
    logger.info("================================")
    logger.info("Запуск бота")
    logger.info("================================")

    if not config.BOT_TOKEN:
        raise SystemExit("BOT_TOKEN is not set")

    kv = get_kv_store(config.STORAGE_BACKEND, db_file=config.DB_FILE, redis_url=config.REDIS_URL)
    store = TaskStore(kv)
    classifier = build_classifier(api_key=config.OPENAI_API_KEY, model=config.OPENAI_MODEL)
    lifecycle = TaskLifecycle(store, classifier)

    bot = Bot(token=config.BOT_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    dp = build_dispatcher(lifecycle, store, classifier)

    # Запускаем планировщик ежедневной сводки
    digest_scheduler = scheduler.start_scheduler(
        bot, store,
        hour=config.DIGEST_HOUR, minute=config.DIGEST_MINUTE, timezone=config.DIGEST_TIMEZONE,
    )

    try:
        logger.info("Запуск поллинга бота")
        await dp.start_polling(bot)
    finally:
        digest_scheduler.shutdown(wait=False)
        await bot.session.close()
        logger.info("Бот остановлен")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Бот остановлен вручную!")
