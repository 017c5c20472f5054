import logging

from aiogram.exceptions import TelegramAPIError

logger = logging.getLogger(__name__)


async def send_message(bot, chat_id, text, thread_id=None):
    """
    Отправляет сообщение в чат. Ошибки Telegram только логируются:
    состояние к этому моменту уже сохранено и не откатывается.
    """
    try:
        return await bot.send_message(chat_id=chat_id, text=text, message_thread_id=thread_id)
    except TelegramAPIError as e:
        logger.error(f"Ошибка при отправке сообщения в чат {chat_id}: {e}")
        return None


async def send_replies(bot, chat_id, replies, thread_id=None):
    sent = []
    for text in replies:
        sent.append(await send_message(bot, chat_id, text, thread_id))
    return sent
