from datetime import datetime, timezone
import re


DURATION_RE = re.compile(
    r"(\d+(?:[.,]\d+)?)\s*(hours?|hrs?|h|minutes?|mins?|m)\b",
    re.IGNORECASE,
)
BARE_NUMBER_RE = re.compile(r"(?<![\d:.,])(\d+)(?![\d:.,])")

# Фразы без цифр: "an hour", "half an hour", "an hour and a half"
WORD_DURATIONS = (
    (re.compile(r"\ban? hour and a half\b|\bhour and a half\b", re.IGNORECASE), 90),
    (re.compile(r"\bhalf an hour\b|\bhalf hour\b", re.IGNORECASE), 30),
    (re.compile(r"\ban hour\b|\bone hour\b", re.IGNORECASE), 60),
)


def accuracy(estimated: int | None, actual: int | None) -> int | None:
    """
    Симметричная точность оценки: round(100 * min / max).
    Закончить раньше или позже в одно и то же число раз даёт один и тот же результат.
    """
    if estimated is None:
        return None
    if actual is None:
        return None
    if estimated <= 0 or actual <= 0:
        return 100 if estimated == actual else 0

    score = round(100 * min(estimated, actual) / max(estimated, actual))
    return max(0, min(100, score))


def format_duration(minutes: int | None) -> str:
    """
    0 → "0m", 45 → "45m", 120 → "2h", 95 → "1h 35m"
    """
    if not minutes or minutes <= 0:
        return "0m"

    hours, mins = divmod(int(minutes), 60)
    if hours == 0:
        return f"{mins}m"
    if mins == 0:
        return f"{hours}h"
    return f"{hours}h {mins}m"


def parse_duration(text: str) -> int | None:
    """
    Достаёт из текста длительность с единицами измерения и переводит её в минуты.
    Возвращает None, если длительность не найдена.
    """
    if not text:
        return None

    match = DURATION_RE.search(text)
    if match:
        value = float(match.group(1).replace(",", "."))
        unit = match.group(2).lower()
        minutes = value * 60 if unit.startswith("h") else value
        minutes = int(round(minutes))
        return minutes if minutes > 0 else None

    for pattern, minutes in WORD_DURATIONS:
        if pattern.search(text):
            return minutes

    return None


def extract_minutes(text: str) -> int | None:
    """
    Как parse_duration, но если единиц нет, берёт первое положительное число ("20", "took 25").
    """
    minutes = parse_duration(text)
    if minutes is not None:
        return minutes

    match = BARE_NUMBER_RE.search(text or "")
    if match:
        value = int(match.group(1))
        return value if value > 0 else None
    return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)
