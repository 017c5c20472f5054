import logging
from dataclasses import dataclass, field
from html import escape
from typing import List, Optional

from database import StorageError
from models.task_model import (
    Task, PendingCompletion, Intent, ChatEvent, DEFAULT_CATEGORY, TASK_START, TASK_COMPLETION, OTHER,
)
from task_matcher import match_open_task
from utils.helpers import extract_minutes, format_duration, utcnow, to_iso

logger = logging.getLogger(__name__)

# Что произошло с сообщением
STARTED = "started"
COMPLETED = "completed"
ASSUMED_ESTIMATE = "assumed_estimate"
AWAITING_DURATION = "awaiting_duration"
NO_ACTIVE_TASK = "no_active_task"
IGNORED = "ignored"
FAILED = "failed"

NO_ACTIVE_TASK_TEXT = (
    "🤔 I couldn't find an active task for you. "
    "Start one with something like <i>30 min: write the report</i>."
)
FAILED_TEXT = "⚠️ Something went wrong while saving that. Please try again in a moment."


def accuracy_emoji(value):
    if value is None:
        return "📊"
    if value >= 90:
        return "🎯"
    if value >= 70:
        return "👍"
    return "📊"


def completion_text(task: Task) -> str:
    title = f" \"{escape(task.task_description)}\"" if task.task_description else ""
    return (
        f"{accuracy_emoji(task.accuracy_percentage)} Task{title} completed! "
        f"Est: {format_duration(task.estimated_minutes)}, "
        f"Actual: {format_duration(task.actual_minutes)} "
        f"({task.accuracy_percentage if task.accuracy_percentage is not None else 0}% accuracy)"
    )


def assumed_estimate_text(task: Task) -> str:
    title = f" \"{escape(task.task_description)}\"" if task.task_description else ""
    return (
        f"✅ Marked{title} as done using your estimate of "
        f"{format_duration(task.estimated_minutes)}. Assuming perfect timing: 100% accuracy 🎯"
    )


def ask_duration_text(task: Task) -> str:
    title = f" on \"{escape(task.task_description)}\"" if task.task_description else ""
    return (
        f"⏱ Nice work{title}! How long did it actually take? "
        f"(your estimate was {format_duration(task.estimated_minutes)})"
    )


def started_text(task: Task) -> str:
    title = escape(task.task_description) if task.task_description else "task"
    return f"▶️ Started: {title} (est. {format_duration(task.estimated_minutes)})"


@dataclass
class LifecycleResult:
    actions: List[str] = field(default_factory=list)
    replies: List[str] = field(default_factory=list)
    started: Optional[Task] = None
    completed: Optional[Task] = None
    intent: Optional[Intent] = None

    def add(self, action, reply=None):
        self.actions.append(action)
        if reply:
            self.replies.append(reply)


class TaskLifecycle:
    """
    Машина состояний на пару (чат, пользователь):

        idle ──"готово" без времени──▶ awaiting_duration
        awaiting_duration ──число / повторное "готово"──▶ idle

    Сначала всё сохраняется, потом вызывающий код отправляет replies.
    Ошибки хранилища не выходят наружу: результат получает действие FAILED.
    """

    def __init__(self, store, classifier, clock=utcnow):
        self.store = store
        self.classifier = classifier
        self.clock = clock

    async def handle(self, event: ChatEvent) -> LifecycleResult:
        try:
            intent = await self.classifier.classify(event.text, event.username)
        except Exception as e:
            logger.exception(f"Классификатор упал на {event.text!r}: {e}")
            intent = Intent.other()
        result = LifecycleResult(intent=intent)
        logger.info(f"[{event.chat_id}/{event.user_id}] {event.text!r} → {intent.type}")

        try:
            pending = self.store.get_pending(event.chat_id, event.user_id)
        except StorageError as e:
            logger.error(f"Не удалось прочитать ожидание для {event.chat_id}/{event.user_id}: {e}")
            result.add(FAILED, FAILED_TEXT)
            return result

        if pending is not None:
            await self._handle_awaiting(event, intent, pending, result)
        elif intent.is_completion:
            await self._guarded(event, result, self._handle_completion(event, intent, result))
        elif intent.is_start:
            await self._guarded(event, result, self._handle_start(event, intent, result))
        else:
            # Голое число без контекста ничего не значит
            result.add(IGNORED)

        # "done in 20, next 45 min: emails": старт применяется, даже если закрыть не вышло
        if intent.is_completion and intent.next_task:
            next_intent = Intent(
                type=TASK_START,
                estimated_minutes=intent.next_task.estimated_minutes,
                task_description=intent.next_task.task_description,
            )
            await self._guarded(event, result, self._handle_start(event, next_intent, result))

        return result

    async def _guarded(self, event, result, step):
        try:
            await step
        except StorageError as e:
            logger.error(f"Ошибка хранилища для {event.chat_id}/{event.user_id}: {e}")
            result.add(FAILED, FAILED_TEXT)

    async def _handle_start(self, event: ChatEvent, intent: Intent, result: LifecycleResult):
        now = self.clock()
        task = Task(
            chat_id=event.chat_id,
            user_id=event.user_id,
            username=event.username,
            estimated_minutes=intent.estimated_minutes,
            task_description=intent.task_description or "",
            started_at=to_iso(now),
            source_message_id=event.message_id,
        )
        task = self.store.save_task(task)
        result.started = task
        # В группах молчим, в личке подтверждаем
        result.add(STARTED, started_text(task) if event.is_private else None)

    async def _handle_completion(self, event: ChatEvent, intent: Intent, result: LifecycleResult):
        open_tasks = self.store.list_open_tasks(event.chat_id, event.user_id)
        match = match_open_task(open_tasks, event.reply_to_message_id)
        if match is None:
            result.add(NO_ACTIVE_TASK, NO_ACTIVE_TASK_TEXT)
            return

        if intent.actual_minutes is None:
            record = PendingCompletion(
                estimated_minutes=match.task.estimated_minutes,
                task_description=match.task.task_description,
                source_message_id=match.task.source_message_id,
                reply_reference=event.reply_to_message_id,
                created_at=to_iso(self.clock()),
            )
            self.store.set_pending(event.chat_id, event.user_id, record)
            result.add(AWAITING_DURATION, ask_duration_text(match.task))
            return

        await self._close(match.task, intent.actual_minutes, match.matched_via_reply, result)

    async def _handle_awaiting(self, event: ChatEvent, intent: Intent, pending: PendingCompletion, result):
        minutes = intent.actual_minutes
        if minutes is None and intent.type in (TASK_COMPLETION, OTHER):
            minutes = extract_minutes(event.text)

        if minutes is not None:
            await self._guarded(event, result, self._resolve_pending(event, pending, minutes, result))
        elif intent.is_completion:
            # Второе "готово" без числа: считаем, что оценка была точной
            await self._guarded(event, result, self._resolve_pending(event, pending, None, result))
        elif intent.is_start:
            await self._guarded(event, result, self._handle_start(event, intent, result))
        else:
            logger.info(f"[{event.chat_id}/{event.user_id}] жду длительность, сообщение без числа")
            result.add(IGNORED)

    async def _resolve_pending(self, event: ChatEvent, pending: PendingCompletion, minutes, result):
        task = None
        if pending.source_message_id is not None:
            task = self.store.find_task_by_source_message(event.chat_id, event.user_id, pending.source_message_id)

        if task is None or not task.is_open:
            logger.warning(
                f"[{event.chat_id}/{event.user_id}] задача из ожидания "
                f"(сообщение {pending.source_message_id}) уже закрыта или удалена"
            )
            self.store.clear_pending(event.chat_id, event.user_id)
            result.add(NO_ACTIVE_TASK, NO_ACTIVE_TASK_TEXT)
            return

        matched_via_reply = pending.reply_reference is not None and pending.reply_reference == task.source_message_id

        if minutes is None:
            minutes = pending.estimated_minutes or task.estimated_minutes
            closed = await self._close(task, minutes, matched_via_reply, result, assumed=True)
        else:
            closed = await self._close(task, minutes, matched_via_reply, result)

        # Закрыли мы или кто-то раньше: ждать больше нечего
        self.store.clear_pending(event.chat_id, event.user_id)
        return closed

    async def _close(self, task: Task, minutes, matched_via_reply, result, assumed=False):
        try:
            category = await self.classifier.categorize(task.task_description)
        except Exception as e:
            logger.exception(f"Категория для {task.key} не определена: {e}")
            category = DEFAULT_CATEGORY
        closed = self.store.close_task(task.key, minutes, category, matched_via_reply)
        if closed is None:
            # Кто-то закрыл задачу между чтением и записью
            result.add(NO_ACTIVE_TASK, NO_ACTIVE_TASK_TEXT)
            return None

        result.completed = closed
        if assumed:
            result.add(ASSUMED_ESTIMATE, assumed_estimate_text(closed))
        else:
            result.add(COMPLETED, completion_text(closed))
        return closed

