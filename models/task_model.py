from dataclasses import dataclass, asdict, fields
from typing import Optional

DEFAULT_CATEGORY = "Other"

TASK_START = "task_start"
TASK_COMPLETION = "task_completion"
OTHER = "other"
INTENT_TYPES = (TASK_START, TASK_COMPLETION, OTHER)


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def _positive_int(value) -> Optional[int]:
    # Модель иногда возвращает "30" или 30.0 вместо 30
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@dataclass
class Task:
    chat_id: str
    user_id: str
    username: str
    estimated_minutes: Optional[int]
    task_description: str = ""
    started_at: str = None          # ISO-8601, UTC
    date: str = None                # YYYY-MM-DD дня старта
    source_message_id: Optional[int] = None
    completed_at: Optional[str] = None
    actual_minutes: Optional[int] = None
    accuracy_percentage: Optional[int] = None
    completed_via_reply: bool = False
    category: str = DEFAULT_CATEGORY
    key: Optional[str] = None       # ключ в хранилище

    @property
    def state(self) -> str:
        return "completed" if self.completed_at else "open"

    @property
    def is_open(self) -> bool:
        return not self.completed_at

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        data = _known_fields(cls, data)
        data["chat_id"] = str(data["chat_id"])
        data["user_id"] = str(data["user_id"])
        data.setdefault("username", "")
        data.setdefault("estimated_minutes", None)
        data["category"] = data.get("category") or DEFAULT_CATEGORY
        return cls(**data)


@dataclass
class PendingCompletion:
    """
    Пользователь написал "готово", но не сказал, сколько времени ушло.
    Живёт, пока не придёт число (или повторное "готово").
    """
    estimated_minutes: Optional[int]
    task_description: str
    source_message_id: Optional[int]
    reply_reference: Optional[int] = None
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingCompletion":
        data = _known_fields(cls, data)
        data.setdefault("estimated_minutes", None)
        data.setdefault("task_description", "")
        data.setdefault("source_message_id", None)
        return cls(**data)


@dataclass
class NextTask:
    estimated_minutes: int
    task_description: str = ""


@dataclass
class Intent:
    type: str = OTHER
    estimated_minutes: Optional[int] = None
    actual_minutes: Optional[int] = None
    task_description: Optional[str] = None
    next_task: Optional[NextTask] = None    # "done in 20, next 45 min: emails"

    @classmethod
    def other(cls) -> "Intent":
        return cls(type=OTHER)

    @property
    def is_start(self) -> bool:
        return self.type == TASK_START

    @property
    def is_completion(self) -> bool:
        return self.type == TASK_COMPLETION

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Intent":
        """
        Собирает Intent из ответа классификатора. Всё, что не похоже на контракт, отбрасывается.
        """
        if not isinstance(data, dict):
            return cls.other()

        intent_type = data.get("type")
        if intent_type not in INTENT_TYPES:
            return cls.other()

        description = data.get("task_description")
        if description is not None:
            description = str(description).strip() or None

        next_task = None
        raw_next = data.get("next_task")
        if isinstance(raw_next, dict):
            next_estimate = _positive_int(raw_next.get("estimated_minutes"))
            if next_estimate:
                next_task = NextTask(
                    estimated_minutes=next_estimate,
                    task_description=str(raw_next.get("task_description") or "").strip(),
                )

        intent = cls(
            type=intent_type,
            estimated_minutes=_positive_int(data.get("estimated_minutes")),
            actual_minutes=_positive_int(data.get("actual_minutes")),
            task_description=description,
            next_task=next_task,
        )

        # Старт без оценки нам не нужен: задача всегда стартует с оценкой
        if intent.is_start and intent.estimated_minutes is None:
            return cls.other()
        return intent


@dataclass
class ChatEvent:
    chat_id: str
    user_id: str
    username: str
    message_id: int
    text: str
    reply_to_message_id: Optional[int] = None
    is_private: bool = False
    thread_id: Optional[int] = None
