import json
import logging
from html import escape

from aiogram import Bot
from aiogram.enums import ChatType
from aiogram.filters import CommandObject
from aiogram.types import Message

from database import StorageError
from lifecycle import TaskLifecycle, FAILED_TEXT
from messenger import send_replies
from models.task_model import ChatEvent

logger = logging.getLogger(__name__)


def event_from_message(message: Message) -> ChatEvent:
    user = message.from_user
    reply = message.reply_to_message
    return ChatEvent(
        chat_id=str(message.chat.id),
        user_id=str(user.id),
        username=user.username or user.full_name,
        message_id=message.message_id,
        text=message.text or message.caption or "",
        reply_to_message_id=reply.message_id if reply else None,
        is_private=message.chat.type == ChatType.PRIVATE,
        thread_id=message.message_thread_id if message.is_topic_message else None,
    )


async def route_message(message: Message, bot: Bot, lifecycle: TaskLifecycle):
    """
    Любое текстовое сообщение в чате: старт, "готово", число для ожидающего "готово" или шум.
    """
    if message.from_user is None or message.from_user.is_bot:
        return
    if not (message.text or message.caption):
        return

    event = event_from_message(message)
    result = await lifecycle.handle(event)
    logger.debug(f"Сообщение {event.message_id} в чате {event.chat_id}: {result.actions}")

    # Состояние уже сохранено, отправка best-effort
    await send_replies(bot, message.chat.id, result.replies, event.thread_id)


async def handle_cancel(message: Message, store):
    chat_id, user_id = str(message.chat.id), str(message.from_user.id)
    try:
        pending = store.get_pending(chat_id, user_id)
        if pending is None:
            await message.answer("Nothing to cancel: I'm not waiting for a duration from you.")
            return
        store.clear_pending(chat_id, user_id)
    except StorageError as e:
        logger.error(f"/cancel не выполнен для {chat_id}/{user_id}: {e}")
        await message.answer(FAILED_TEXT)
        return

    await message.answer("👌 Okay, I won't wait for the duration. The task stays open.")


async def handle_parse(message: Message, command: CommandObject, classifier):
    """
    /parse <текст>: показывает, как классификатор понял сообщение. Ничего не сохраняет.
    """
    text = (command.args or "").strip()
    if not text:
        await message.answer("Usage: /parse 30 min: fix the login bug")
        return

    username = message.from_user.username if message.from_user else None
    intent = await classifier.classify(text, username)
    pretty = json.dumps(intent.to_dict(), ensure_ascii=False, indent=2)
    await message.answer(f"<pre>{escape(pretty)}</pre>")
