import logging

from database import CorruptRecordError
from models.task_model import Task, PendingCompletion, DEFAULT_CATEGORY
from utils.helpers import accuracy, utcnow, to_iso, from_iso, epoch_ms

logger = logging.getLogger(__name__)

TASK_PREFIX = "tasks"
PENDING_PREFIX = "pending"


def task_prefix(chat_id, user_id=None):
    if user_id is None:
        return f"{TASK_PREFIX}:{chat_id}:"
    return f"{TASK_PREFIX}:{chat_id}:{user_id}:"


def pending_key(chat_id, user_id):
    return f"{PENDING_PREFIX}:{chat_id}:{user_id}"


class TaskStore:
    """
    Задачи и незавершённые "готово" поверх key-value хранилища.

    Ключи:
        tasks:{chat_id}:{user_id}:{started_at в мс}
        pending:{chat_id}:{user_id}

    Транзакций нет: каждая запись пишется целиком одним set(),
    а цепочки "прочитать → выбрать → записать" не атомарны.
    """

    def __init__(self, kv, clock=utcnow):
        self.kv = kv
        self.clock = clock

    # ✅ Tasks

    def save_task(self, task: Task) -> Task:
        if task.source_message_id is not None:
            existing = self.find_task_by_source_message(task.chat_id, task.user_id, task.source_message_id)
            if existing:
                logger.info(f"Задача для сообщения {task.source_message_id} уже сохранена: {existing.key}")
                return existing

        started = from_iso(task.started_at) or self.clock()
        task.started_at = to_iso(started)
        task.date = started.date().isoformat()

        stamp = epoch_ms(started)
        key = f"{task_prefix(task.chat_id, task.user_id)}{stamp}"
        while self.kv.get(key) is not None:
            stamp += 1
            key = f"{task_prefix(task.chat_id, task.user_id)}{stamp}"

        task.key = key
        self.kv.set(key, task.to_dict())
        logger.info(f"Сохранена задача {key}: {task.task_description!r}, оценка {task.estimated_minutes}m")
        return task

    def get_task(self, key):
        try:
            data = self.kv.get(key)
        except CorruptRecordError:
            return None
        if not data:
            return None
        return self._to_task(key, data)

    def list_tasks(self, chat_id, user_id):
        return self._load_prefix(task_prefix(chat_id, user_id))

    def list_open_tasks(self, chat_id, user_id):
        return [task for task in self.list_tasks(chat_id, user_id) if task.is_open]

    def list_completed_tasks(self, chat_id, user_id):
        return [task for task in self.list_tasks(chat_id, user_id) if not task.is_open]

    def list_tasks_for_date(self, chat_id, user_id, date):
        return [task for task in self.list_tasks(chat_id, user_id) if task.date == date]

    def list_chat_tasks(self, chat_id):
        return self._load_prefix(task_prefix(chat_id))

    def find_task_by_source_message(self, chat_id, user_id, message_id):
        for task in self.list_tasks(chat_id, user_id):
            if task.source_message_id == message_id:
                return task
        return None

    def close_task(self, task_key, actual_minutes, category=DEFAULT_CATEGORY, matched_via_reply=False):
        """
        Закрывает задачу целиком новой записью.
        Возвращает None, если задачи нет или она уже закрыта: закрытая задача не меняется.
        """
        task = self.get_task(task_key)
        if task is None:
            logger.warning(f"Задача {task_key} не найдена")
            return None
        if not task.is_open:
            logger.warning(f"Задача {task_key} уже закрыта в {task.completed_at}")
            return None

        closed = Task.from_dict({
            **task.to_dict(),
            "actual_minutes": actual_minutes,
            "completed_at": to_iso(self.clock()),
            "accuracy_percentage": accuracy(task.estimated_minutes, actual_minutes),
            "category": category or DEFAULT_CATEGORY,
            "completed_via_reply": bool(matched_via_reply),
        })
        self.kv.set(task_key, closed.to_dict())
        logger.info(
            f"Закрыта задача {task_key}: оценка {closed.estimated_minutes}m, "
            f"факт {actual_minutes}m, точность {closed.accuracy_percentage}%"
        )
        return closed

    # ⏳ Pending completions

    def set_pending(self, chat_id, user_id, record: PendingCompletion):
        if not record.created_at:
            record.created_at = to_iso(self.clock())
        self.kv.set(pending_key(chat_id, user_id), record.to_dict())

    def get_pending(self, chat_id, user_id):
        key = pending_key(chat_id, user_id)
        try:
            data = self.kv.get(key)
        except CorruptRecordError:
            logger.warning(f"Повреждённая запись {key}, сбрасываю")
            self.kv.delete(key)
            return None
        if not data:
            return None
        return PendingCompletion.from_dict(data)

    def clear_pending(self, chat_id, user_id):
        self.kv.delete(pending_key(chat_id, user_id))

    # 📊 Для ежедневной сводки

    def list_active_chats(self):
        chat_ids = []
        for key in self.kv.list_keys(f"{TASK_PREFIX}:"):
            parts = key.split(":")
            if len(parts) >= 4 and parts[1] not in chat_ids:
                chat_ids.append(parts[1])
        return chat_ids

    def _load_prefix(self, prefix):
        tasks = []
        for key in self.kv.list_keys(prefix):
            task = self.get_task(key)
            if task is not None:
                tasks.append(task)
        return tasks

    def _to_task(self, key, data):
        try:
            task = Task.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.error(f"Пропускаю битую задачу {key}: {e}")
            return None
        task.key = key
        return task
