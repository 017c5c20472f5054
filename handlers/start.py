from aiogram import types

HELP_TEXT = (
    "👋 I track how well you estimate your work.\n\n"
    "▶️ Start a task: <i>30 min: fix the login bug</i>\n"
    "✅ Finish it: <i>done in 25 min</i> (reply to your start message to pick a specific task)\n"
    "⏱ Just <i>done</i>? I'll ask how long it took.\n\n"
    "/stats: your accuracy and focus time\n"
    "/tasks: your open tasks\n"
    "/cancel: forget a pending \"done\""
)


async def handle_start(message: types.Message):
    """
    Обработчик команд /start и /help.
    """
    await message.answer(HELP_TEXT)
