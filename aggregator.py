import logging
from dataclasses import dataclass, field
from datetime import timedelta, timezone
from html import escape
from typing import List, Optional

from lifecycle import accuracy_emoji
from models.task_model import DEFAULT_CATEGORY, Task
from utils.helpers import format_duration, from_iso, utcnow

logger = logging.getLogger(__name__)

RECENT_TASKS = 5
FOCUS_WINDOW = timedelta(hours=24)


@dataclass
class CategoryShare:
    category: str
    minutes: int
    percentage: int


@dataclass
class UserSummary:
    average_accuracy: int = 0
    last_24_hours_focus: int = 0
    category_breakdown: List[CategoryShare] = field(default_factory=list)
    recent_tasks: List[Task] = field(default_factory=list)
    total_tasks: int = 0


@dataclass
class UserDayStats:
    user_id: str
    username: str
    tasks: int = 0
    estimated_minutes: int = 0
    actual_minutes: int = 0
    average_accuracy: int = 0
    accuracy_sum: int = 0
    accuracy_count: int = 0


@dataclass
class GroupDigest:
    date: str
    total_tasks: int = 0
    group_accuracy: int = 0
    users: List[UserDayStats] = field(default_factory=list)
    best_estimator: Optional[UserDayStats] = None


def _completed_key(task: Task):
    completed = from_iso(task.completed_at)
    return completed.timestamp() if completed else 0.0


def _average(values):
    values = list(values)
    if not values:
        return 0
    return round(sum(values) / len(values))


def user_summary(store, chat_id, user_id, now=None) -> UserSummary:
    """
    Сводка по пользователю в чате:
    - средняя точность за всё время
    - фокус (сумма фактических минут) за последние 24 часа
    - разбивка по категориям за те же 24 часа
    - 5 последних закрытых задач
    """
    now = now or utcnow()
    completed = sorted(store.list_completed_tasks(chat_id, user_id), key=_completed_key, reverse=True)
    if not completed:
        return UserSummary()

    average_accuracy = _average(
        task.accuracy_percentage for task in completed if task.accuracy_percentage is not None
    )

    window_start = now - FOCUS_WINDOW
    recent_window = [task for task in completed if (from_iso(task.completed_at) or now) > window_start]
    focus = sum(task.actual_minutes or 0 for task in recent_window)

    by_category = {}
    for task in recent_window:
        category = task.category or DEFAULT_CATEGORY
        by_category[category] = by_category.get(category, 0) + (task.actual_minutes or 0)

    breakdown = [
        CategoryShare(
            category=category,
            minutes=minutes,
            percentage=round(minutes * 100 / focus) if focus else 0,
        )
        for category, minutes in by_category.items()
    ]
    breakdown.sort(key=lambda share: share.minutes, reverse=True)

    return UserSummary(
        average_accuracy=average_accuracy,
        last_24_hours_focus=focus,
        category_breakdown=breakdown,
        recent_tasks=completed[:RECENT_TASKS],
        total_tasks=len(completed),
    )


def daily_group_digest(store, chat_id, date, tz=timezone.utc) -> GroupDigest:
    """
    Итоги дня по всему чату: задачи, закрытые в указанную дату.
    Дата закрытия считается в часовом поясе tz (по умолчанию UTC).
    """
    digest = GroupDigest(date=date)
    stats = {}
    accuracies = []

    for task in store.list_chat_tasks(chat_id):
        completed = from_iso(task.completed_at)
        if completed is None or completed.astimezone(tz).date().isoformat() != date:
            continue

        user = stats.get(task.user_id)
        if user is None:
            user = stats[task.user_id] = UserDayStats(user_id=task.user_id, username=task.username)
        user.username = task.username or user.username
        user.tasks += 1
        user.estimated_minutes += task.estimated_minutes or 0
        user.actual_minutes += task.actual_minutes or 0
        if task.accuracy_percentage is not None:
            user.accuracy_sum += task.accuracy_percentage
            user.accuracy_count += 1
            accuracies.append(task.accuracy_percentage)
        digest.total_tasks += 1

    for user in stats.values():
        user.average_accuracy = round(user.accuracy_sum / user.accuracy_count) if user.accuracy_count else 0

    # sorted() стабилен: при равной точности порядок сохраняется
    digest.users = sorted(stats.values(), key=lambda user: user.average_accuracy, reverse=True)
    digest.group_accuracy = _average(accuracies)

    if len(digest.users) > 1 and digest.users[0].average_accuracy > 0:
        digest.best_estimator = digest.users[0]

    logger.info(f"Сводка за {date} для чата {chat_id}: {digest.total_tasks} задач, {len(digest.users)} участников")
    return digest


def _mention(username):
    return f"@{escape(username)}" if username else "someone"


def format_user_summary(username, summary: UserSummary) -> str:
    if not summary.total_tasks:
        return f"📊 No completed tasks yet for {_mention(username)}. Start one with <i>30 min: something</i>!"

    text = (
        f"📊 <b>Stats for {_mention(username)}</b>\n"
        f"{accuracy_emoji(summary.average_accuracy)} Average accuracy: {summary.average_accuracy}% "
        f"over {summary.total_tasks} tasks\n"
        f"⏱ Focus in the last 24h: {format_duration(summary.last_24_hours_focus)}\n"
    )

    if summary.category_breakdown:
        text += "\n<b>Last 24h by category</b>\n"
        for share in summary.category_breakdown:
            text += f"• {escape(share.category)}: {format_duration(share.minutes)} ({share.percentage}%)\n"

    if summary.recent_tasks:
        text += "\n<b>Recent</b>\n"
        for task in summary.recent_tasks:
            title = escape(task.task_description) if task.task_description else "task"
            text += (
                f"• {title}: est {format_duration(task.estimated_minutes)}, "
                f"actual {format_duration(task.actual_minutes)}"
            )
            if task.accuracy_percentage is not None:
                text += f" ({task.accuracy_percentage}%)"
            text += "\n"

    return text.rstrip()


def format_digest(digest: GroupDigest) -> str:
    text = (
        f"📊 <b>Daily Summary - {digest.date}</b>\n"
        f"📈 {digest.total_tasks} tasks completed, {digest.group_accuracy}% group accuracy\n\n"
    )

    for user in digest.users:
        accuracy_display = f" ({user.average_accuracy}% accuracy)" if user.average_accuracy > 0 else ""
        text += (
            f"{accuracy_emoji(user.average_accuracy)} {_mention(user.username)}: "
            f"{user.tasks} tasks, {format_duration(user.actual_minutes)} total{accuracy_display}\n"
        )

    if digest.best_estimator:
        text += f"\n🏆 Best estimator: {_mention(digest.best_estimator.username)}!"

    return text.rstrip()
