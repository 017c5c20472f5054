from dataclasses import dataclass
from typing import Optional

from models.task_model import Task
from utils.helpers import from_iso


@dataclass
class MatchResult:
    task: Task
    matched_via_reply: bool


def _started_key(task: Task):
    started = from_iso(task.started_at)
    return started.timestamp() if started else 0.0


def match_open_task(open_tasks, reply_reference: Optional[int] = None) -> Optional[MatchResult]:
    """
    Находит задачу, к которой относится "готово".

    1. Ответ (reply) на сообщение, которым задачу начали, выигрывает всегда.
    2. Иначе берём самую свежую открытую задачу.

    Это эвристика: два одновременных "готово" могут выбрать одну и ту же задачу.
    """
    candidates = sorted(
        (task for task in open_tasks if task.is_open),
        key=_started_key,
        reverse=True,
    )
    if not candidates:
        return None

    if reply_reference is not None:
        for task in candidates:
            if task.source_message_id == reply_reference:
                return MatchResult(task=task, matched_via_reply=True)

    return MatchResult(task=candidates[0], matched_via_reply=False)
