# gpt_parser.py

import json
import logging
import re

import openai
from openai import AsyncOpenAI

from models.task_model import (
    Intent, NextTask, DEFAULT_CATEGORY, TASK_START, TASK_COMPLETION, OTHER,
)
from utils.helpers import parse_duration, extract_minutes

logger = logging.getLogger(__name__)

CATEGORIES = ["Coding", "Writing", "Communication", "Meetings", "Learning", "Design", "Admin", DEFAULT_CATEGORY]

CATEGORY_KEYWORDS = {
    "Coding": ("bug", "fix", "code", "coding", "deploy", "refactor", "test", "api", "debug", "pr ", "merge", "feature"),
    "Writing": ("write", "writing", "draft", "blog", "article", "docs", "essay", "report", "copy"),
    "Communication": ("email", "emails", "inbox", "slack", "reply", "message", "call"),
    "Meetings": ("meeting", "standup", "sync", "1:1", "interview", "demo"),
    "Learning": ("read", "reading", "study", "course", "learn", "research", "tutorial"),
    "Design": ("design", "figma", "mockup", "ui", "ux", "logo", "wireframe"),
    "Admin": ("invoice", "taxes", "admin", "expenses", "planning", "plan", "budget", "paperwork"),
}

UNIT = r"(?:hours?|hrs?|h|minutes?|mins?|m)"
NUMBER = r"\d+(?:[.,]\d+)?"

# "30 min: fix the login bug", "1h - emails"
START_LEADING_RE = re.compile(
    rf"^\s*(?P<dur>{NUMBER}\s*{UNIT}?)\s*[:\-–—]\s*(?P<desc>\S.*)$", re.IGNORECASE | re.DOTALL
)
# "30 min on the slides", "1h for emails"
START_ON_RE = re.compile(
    rf"^\s*(?P<dur>{NUMBER}\s*{UNIT})\s+(?:on|for)\s+(?P<desc>\S.*)$", re.IGNORECASE | re.DOTALL
)
# "fix the login bug (30 min)", "emails - 45m"
START_TRAILING_RE = re.compile(
    rf"^\s*(?P<desc>\S.*?)\s*(?:[\(\[]|[\-–—:])\s*(?P<dur>{NUMBER}\s*{UNIT})\s*[\)\]]?\s*$", re.IGNORECASE | re.DOTALL
)
# "20 minutes", "25m", "~30", "about 40 mins"
BARE_DURATION_RE = re.compile(
    rf"^\s*(?:~|about\s+|around\s+|like\s+)?(?P<dur>{NUMBER}\s*{UNIT}?)\s*[.!]?\s*$", re.IGNORECASE
)
COMPLETION_RE = re.compile(
    r"\b(done|finished|completed|wrapped up|took|all set|did it)\b|✅", re.IGNORECASE
)
# Число без единиц считается длительностью только после "in"/"took": "done in 20", "took me 25"
COMPLETION_MINUTES_RE = re.compile(
    r"\b(?:in|took|after)\s+(?:me\s+)?(?:about\s+|around\s+|~)?(\d+)(?!\d|[.,:]\d)", re.IGNORECASE
)
# "done in 20, next 45 min: emails"
SPLIT_RE = re.compile(r"\s*(?:[;\n]|,?\s+(?:and\s+)?(?:then|next|now)\b:?)\s*", re.IGNORECASE)


def _minutes(duration_text):
    minutes = parse_duration(duration_text)
    if minutes is None:
        minutes = extract_minutes(duration_text)
    return minutes


def _completion_minutes(text):
    minutes = parse_duration(text)
    if minutes is not None:
        return minutes
    match = COMPLETION_MINUTES_RE.search(text)
    if match and int(match.group(1)) > 0:
        return int(match.group(1))
    return None


def _is_only_completion(text):
    return not COMPLETION_RE.sub("", text).strip(" !.,:-")


def _keyword_category(description):
    text = f" {(description or '').lower()} "
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


class PatternClassifier:
    """
    Быстрый разбор без модели. Понимает только явные формы,
    всё остальное возвращает как None, чтобы решала модель.
    """

    async def classify(self, text: str, username: str = None):
        if not text or not text.strip():
            return Intent.other()

        intent = self._classify_segment(text)
        if intent is not None and intent.is_completion:
            # Составное сообщение: сначала закрываем, потом стартуем
            match = SPLIT_RE.search(text)
            if match:
                head, tail = text[:match.start()], text[match.end():]
                head_intent = self._classify_segment(head)
                tail_intent = self._classify_segment(tail)
                if head_intent and head_intent.is_completion:
                    if tail_intent and tail_intent.is_start:
                        head_intent.next_task = NextTask(
                            estimated_minutes=tail_intent.estimated_minutes,
                            task_description=tail_intent.task_description or "",
                        )
                        return head_intent
                    if parse_duration(tail) is not None:
                        # Хвост похож на новую задачу, но шаблоны его не разобрали
                        return None
        return intent

    def _classify_segment(self, text):
        text = text.strip()
        if not text:
            return None

        for pattern in (START_LEADING_RE, START_ON_RE, START_TRAILING_RE):
            match = pattern.match(text)
            if not match:
                continue
            estimate = _minutes(match.group("dur"))
            if not estimate:
                continue
            description = match.group("desc").strip()
            if COMPLETION_RE.search(description):
                if _is_only_completion(description):
                    # "done - 20m", "took: 25 min"
                    return Intent(type=TASK_COMPLETION, actual_minutes=estimate)
                # "finished the report (45 min)": и старт, и завершение
                return None
            return Intent(type=TASK_START, estimated_minutes=estimate, task_description=description)

        if COMPLETION_RE.search(text):
            return Intent(type=TASK_COMPLETION, actual_minutes=_completion_minutes(text))

        match = BARE_DURATION_RE.match(text)
        if match:
            return Intent(type=OTHER, actual_minutes=_minutes(match.group("dur")))

        return None

    async def categorize(self, description: str) -> str:
        return _keyword_category(description)


class GptClassifier:
    """
    Разбор через OpenAI. Любая ошибка превращается в нейтральный Intent.other().
    """

    def __init__(self, client=None, model="gpt-4o-mini", api_key=None):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model

    async def _ask(self, prompt, max_tokens):
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        return json.loads(content)

    async def classify(self, text: str, username: str = None) -> Intent:
        prompt = f"""
Parse this message from a focus group chat to identify task starts or completions.

Message from @{username or "someone"}: "{text}"

Rules:
- TASK START: someone announcing they are about to work on something with an estimated time AND a task description
- TASK COMPLETION: someone announcing they finished work, with the actual time taken if they mention it
- TIME ONLY: just a time duration without task context (e.g. "20 minutes", "30 mins")
- If one message both finishes a task and starts the next one, return the completion and put the new task in "next_task"

For TASK START: "estimated_minutes" is the estimate, "actual_minutes" is null, "task_description" is required
For TASK COMPLETION: "actual_minutes" is the time taken or null if not mentioned, "estimated_minutes" is null
For TIME ONLY: "type" is "other", "actual_minutes" is the time, "estimated_minutes" is null

Respond with JSON only:
{{
  "type": "task_start" | "task_completion" | "other",
  "estimated_minutes": number | null,
  "actual_minutes": number | null,
  "task_description": string | null,
  "next_task": {{"estimated_minutes": number, "task_description": string}} | null
}}

Examples:
"30 mins: fix the login bug" → {{"type": "task_start", "estimated_minutes": 30, "actual_minutes": null, "task_description": "fix the login bug", "next_task": null}}
"gonna work on emails for about an hour" → {{"type": "task_start", "estimated_minutes": 60, "actual_minutes": null, "task_description": "emails", "next_task": null}}
"done in 45 minutes" → {{"type": "task_completion", "estimated_minutes": null, "actual_minutes": 45, "task_description": null, "next_task": null}}
"finished!" → {{"type": "task_completion", "estimated_minutes": null, "actual_minutes": null, "task_description": null, "next_task": null}}
"took 20 mins, now 30 min on the slides" → {{"type": "task_completion", "estimated_minutes": null, "actual_minutes": 20, "task_description": null, "next_task": {{"estimated_minutes": 30, "task_description": "the slides"}}}}
"25m" → {{"type": "other", "estimated_minutes": null, "actual_minutes": 25, "task_description": null, "next_task": null}}
"""
        try:
            data = await self._ask(prompt, max_tokens=200)
        except openai.OpenAIError as e:
            logger.error(f"OpenAI error while classifying: {e}")
            return Intent.other()
        except (ValueError, TypeError, AttributeError, IndexError) as e:
            logger.error(f"Unexpected classifier response: {e}")
            return Intent.other()

        intent = Intent.from_dict(data)
        logger.debug(f"GPT intent for {text!r}: {intent}")
        return intent

    async def categorize(self, description: str) -> str:
        if not description:
            return DEFAULT_CATEGORY

        prompt = f"""
Pick the single best category for this work session.

Task: "{description}"
Categories: {", ".join(CATEGORIES)}

Respond with JSON only: {{"category": "<one of the categories>"}}
"""
        try:
            data = await self._ask(prompt, max_tokens=20)
        except openai.OpenAIError as e:
            logger.error(f"OpenAI error while categorizing: {e}")
            return DEFAULT_CATEGORY
        except (ValueError, TypeError, AttributeError, IndexError) as e:
            logger.error(f"Unexpected category response: {e}")
            return DEFAULT_CATEGORY

        category = data.get("category") if isinstance(data, dict) else None
        return category if category in CATEGORIES else DEFAULT_CATEGORY


class FallbackClassifier:
    """
    Сначала шаблоны, потом модель. Наружу никогда не бросает.
    """

    def __init__(self, pattern=None, model=None):
        self.pattern = pattern or PatternClassifier()
        self.model = model

    async def classify(self, text: str, username: str = None) -> Intent:
        try:
            intent = await self.pattern.classify(text, username)
            if intent is not None:
                return intent
            if self.model is None:
                return Intent.other()
            return await self.model.classify(text, username)
        except Exception as e:
            logger.exception(f"Classifier failed on {text!r}: {e}")
            return Intent.other()

    async def categorize(self, description: str) -> str:
        try:
            category = await self.pattern.categorize(description)
            if category != DEFAULT_CATEGORY or self.model is None:
                return category
            return await self.model.categorize(description)
        except Exception as e:
            logger.exception(f"Categorizer failed on {description!r}: {e}")
            return DEFAULT_CATEGORY


def build_classifier(api_key=None, model="gpt-4o-mini"):
    if not api_key:
        logger.warning("OPENAI_API_KEY не задан, работаю только на шаблонах")
        return FallbackClassifier()
    return FallbackClassifier(model=GptClassifier(model=model, api_key=api_key))
