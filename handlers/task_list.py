import logging
from html import escape

from aiogram import types

from aggregator import user_summary, format_user_summary
from database import StorageError
from lifecycle import FAILED_TEXT
from utils.helpers import format_duration, from_iso, utcnow

logger = logging.getLogger(__name__)

# Больше задач в одном сообщении не показываем
MAX_LISTED_TASKS = 10


def _username(message: types.Message):
    user = message.from_user
    return user.username or user.full_name


async def handle_stats(message: types.Message, store):
    """
    Обработка команды /stats: точность, фокус за 24 часа, категории и последние задачи.
    """
    chat_id, user_id = str(message.chat.id), str(message.from_user.id)
    try:
        summary = user_summary(store, chat_id, user_id)
    except StorageError as e:
        logger.error(f"/stats не выполнен для {chat_id}/{user_id}: {e}")
        await message.answer(FAILED_TEXT)
        return

    await message.answer(format_user_summary(_username(message), summary))


async def handle_task_list(message: types.Message, store):
    """
    Обработка команды /tasks: открытые задачи пользователя, свежие сверху.
    """
    chat_id, user_id = str(message.chat.id), str(message.from_user.id)
    try:
        tasks = store.list_open_tasks(chat_id, user_id)
    except StorageError as e:
        logger.error(f"/tasks не выполнен для {chat_id}/{user_id}: {e}")
        await message.answer(FAILED_TEXT)
        return

    if not tasks:
        await message.answer("You have no open tasks.")
        return

    tasks.sort(key=lambda task: task.started_at or "", reverse=True)
    now = utcnow()

    response = f"📋 <b>Your open tasks</b> ({len(tasks)}):\n\n"
    for i, task in enumerate(tasks[:MAX_LISTED_TASKS]):
        title = escape(task.task_description) if task.task_description else "Untitled"
        started = from_iso(task.started_at)
        elapsed = int((now - started).total_seconds() // 60) if started else 0
        response += (
            f"<b>{i+1}.</b> {title}\n"
            f"    ⏱ est. {format_duration(task.estimated_minutes)}, running {format_duration(elapsed)}\n"
        )

    if len(tasks) > MAX_LISTED_TASKS:
        response += f"\n…and {len(tasks) - MAX_LISTED_TASKS} more"

    await message.answer(response.rstrip())
