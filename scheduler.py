import logging
from datetime import timezone as dt_timezone
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from aggregator import daily_group_digest, format_digest
from database import StorageError
from messenger import send_message
from utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _zone(timezone):
    if not isinstance(timezone, str):
        return timezone
    if timezone.upper() == "UTC":
        return dt_timezone.utc
    return ZoneInfo(timezone)


def start_scheduler(bot, store, hour=21, minute=0, timezone="UTC"):
    tz = _zone(timezone)
    scheduler = AsyncIOScheduler(timezone=tz)
    # Итоги дня по каждому чату, день считается в том же поясе, что и расписание
    scheduler.add_job(
        daily_digest_job, 'cron', hour=hour, minute=minute,
        args=[bot, store], kwargs={"timezone": tz}, id="daily_digest", replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Планировщик запущен: сводка в {hour:02d}:{minute:02d} ({timezone})")
    return scheduler


async def daily_digest_job(bot, store, date=None, timezone="UTC"):
    """
    Рассылает сводку за день во все чаты, где есть задачи.
    Чаты без закрытых за день задач пропускаются.
    """
    tz = _zone(timezone)
    date = date or utcnow().astimezone(tz).date().isoformat()
    logger.info(f"Собираю ежедневную сводку за {date} ({timezone})")

    try:
        chat_ids = store.list_active_chats()
    except StorageError as e:
        logger.error(f"Не удалось получить список чатов: {e}")
        return 0

    posted = 0
    for chat_id in chat_ids:
        try:
            digest = daily_group_digest(store, chat_id, date, tz)
        except StorageError as e:
            logger.error(f"Сводка для чата {chat_id} не собрана: {e}")
            continue

        if not digest.total_tasks:
            continue

        if await send_message(bot, chat_id, format_digest(digest)) is not None:
            posted += 1

    logger.info(f"Сводка за {date} отправлена в {posted} из {len(chat_ids)} чатов")
    return posted
