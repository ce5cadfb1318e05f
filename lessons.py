"""
Lesson content: generation through the DeepSeek chat API, built-in
fallback sentences, rendering to Telegram text and the one-off lesson sent
right after a payment is confirmed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

import config
from database import Database
from message_queue import MessageQueue

logger = logging.getLogger(__name__)

WordEntry = Union[Dict[str, str], str]

_NON_LATIN = re.compile(r"[^a-zA-Z\s\-']")
_NON_KATAKANA = re.compile(r"[^゠-ヿ\s\-]")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class LessonGenerationError(Exception):
    """Raised when the generation backend does not return a usable lesson."""


@dataclass(frozen=True)
class Lesson:
    english_text: str
    japanese_translation: str
    word_breakdown: List[WordEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lesson":
        try:
            english_text = str(data["english_text"]).strip()
            japanese_translation = str(data["japanese_translation"]).strip()
        except (KeyError, TypeError) as exc:
            raise LessonGenerationError(f"Incomplete lesson: {data!r}") from exc
        if not english_text or not japanese_translation:
            raise LessonGenerationError(f"Empty lesson: {data!r}")
        breakdown = data.get("word_breakdown") or []
        if not isinstance(breakdown, list):
            breakdown = []
        return cls(english_text, japanese_translation, breakdown)


FALLBACK_LESSONS: Dict[int, Lesson] = {
    1: Lesson("Hello.", "こんにちは。", [{"word": "Hello", "meaning": "こんにちは", "pronunciation": "ハロー"}]),
    2: Lesson(
        "I like to eat pizza.",
        "私はピザを食べるのが好きです。",
        [
            {"word": "I", "meaning": "私", "pronunciation": "アイ"},
            {"word": "like", "meaning": "好き", "pronunciation": "ライク"},
            {"word": "to eat", "meaning": "食べる", "pronunciation": "トゥ イート"},
            {"word": "pizza", "meaning": "ピザ", "pronunciation": "ピザ"},
        ],
    ),
    3: Lesson(
        "The weather is very nice today.",
        "今日はとても良い天気です。",
        [
            {"word": "weather", "meaning": "天気", "pronunciation": "ウェザー"},
            {"word": "very", "meaning": "とても", "pronunciation": "ベリー"},
            {"word": "nice", "meaning": "良い", "pronunciation": "ナイス"},
            {"word": "today", "meaning": "今日", "pronunciation": "トゥデイ"},
        ],
    ),
    4: Lesson(
        "I like reading books in the library.",
        "私は図書館で本を読むのが好きです。",
        [
            {"word": "reading", "meaning": "読むこと", "pronunciation": "リーディング"},
            {"word": "books", "meaning": "本", "pronunciation": "ブックス"},
            {"word": "library", "meaning": "図書館", "pronunciation": "ライブラリー"},
        ],
    ),
    5: Lesson(
        "I look forward to hearing from you soon.",
        "近いうちにご連絡をお待ちしております。",
        [
            {"word": "look forward to", "meaning": "楽しみにする", "pronunciation": "ルック フォーワード トゥ"},
            {"word": "hearing", "meaning": "聞くこと", "pronunciation": "ヒアリング"},
            {"word": "soon", "meaning": "すぐに", "pronunciation": "スーン"},
        ],
    ),
}


def fallback_lesson(level: int) -> Lesson:
    return FALLBACK_LESSONS.get(level, FALLBACK_LESSONS[1])


def _build_prompt(level: int) -> str:
    info = config.DIFFICULTY_LEVELS.get(level, config.DIFFICULTY_LEVELS[1])
    return (
        "Create one natural English sentence for a Japanese learner of English.\n"
        f"Difficulty: level {level} of 5 ({info['description']}).\n"
        "Reply with a JSON object with the keys:\n"
        '  "english_text": the sentence,\n'
        '  "japanese_translation": a natural Japanese translation,\n'
        '  "word_breakdown": a list of objects with "word", "meaning" (Japanese) and '
        '"pronunciation" (katakana) for the important words.'
    )


class LessonGenerator:
    """Generates lessons with the DeepSeek chat completions endpoint."""

    def __init__(
        self,
        api_key: str = config.DEEPSEEK_API_KEY,
        url: str = config.DEEPSEEK_API_URL,
        model: str = config.DEEPSEEK_MODEL,
        timeout: float = config.HTTP_TIMEOUT * 4,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.model = model
        self._client = client or httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_key}"}, timeout=timeout
        )

    async def generate(self, level: int) -> Lesson:
        """Generate a lesson for difficulty ``level``.

        :raises LessonGenerationError: if the request fails or the reply
            cannot be decoded into a lesson.
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "You are an English teacher for Japanese speakers."},
                {"role": "user", "content": _build_prompt(level)},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 1.0,
        }
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            content = response.json()["choices"][0]["message"]["content"]
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise LessonGenerationError(f"Lesson generation failed for level {level}: {exc}") from exc
        try:
            data = json.loads(_CODE_FENCE.sub("", content.strip()))
        except (AttributeError, ValueError) as exc:
            raise LessonGenerationError(f"Undecodable lesson for level {level}: {content!r}") from exc
        if not isinstance(data, dict):
            raise LessonGenerationError(f"Unexpected lesson for level {level}: {content!r}")
        return Lesson.from_dict(data)

    async def close(self) -> None:
        await self._client.aclose()


def sanitize_latin(text: Any) -> str:
    """Keep only Latin letters, spaces, hyphens and apostrophes."""
    if not text:
        return ""
    return _NON_LATIN.sub("", str(text)).strip()


def sanitize_katakana(text: Any) -> str:
    """Keep only katakana, spaces, hyphens and the long vowel mark."""
    if not text:
        return ""
    return _NON_KATAKANA.sub("", str(text)).strip()


def _render_breakdown(lesson: Lesson, first: bool) -> str:
    if not lesson.word_breakdown:
        return ""
    sanitize = sanitize_katakana if first else sanitize_latin
    lines = ["", "", "📚 単語の解説:"]
    for entry in lesson.word_breakdown:
        if isinstance(entry, dict) and entry.get("word") and entry.get("meaning"):
            pronunciation = sanitize(entry.get("pronunciation") or entry.get("pinyin") or "")
            lines.append(f"{entry['word']} - {entry['meaning']} - {pronunciation}")
        elif isinstance(entry, str):
            lines.append(entry)
    return "\n".join(lines) + "\n"


def render_lesson(lesson: Lesson, first: bool = False) -> str:
    """Render ``lesson`` as the Telegram message text.

    ``first`` selects the heading used for the lesson sent right after
    payment instead of the daily one.
    """
    title = "🇬🇧 最初の英語レッスン" if first else "🇬🇧 今日の英語レッスン"
    return (
        f"{title}\n\n"
        f"📝 英語の文章:\n{lesson.english_text}\n\n"
        f"🔤 日本語訳:\n{lesson.japanese_translation}\n\n"
        f"英語の文章をタイプしてみましょう！{_render_breakdown(lesson, first)}\n\n"
        "英語の文章を練習しましょう！"
    )


class LessonService:
    """Sends the first lesson to a user whose payment was just confirmed."""

    def __init__(self, db: Database, generator: LessonGenerator, queue: MessageQueue) -> None:
        self.db = db
        self.generator = generator
        self.queue = queue

    async def send_immediate_lesson(self, chat_id: int, user_id: int | str) -> bool:
        """Generate, store and enqueue one lesson; return False if the user is unknown."""
        user = self.db.get_user(user_id)
        if not user:
            logger.error("User %s not found for immediate lesson", user_id)
            return False
        level = user["difficulty_level"]
        try:
            lesson = await self.generator.generate(level)
        except LessonGenerationError as exc:
            logger.error("Using fallback lesson for user %s: %s", user_id, exc)
            lesson = fallback_lesson(level)
        self.db.save_sentence(lesson, level)
        self.queue.enqueue(chat_id, render_lesson(lesson, first=True))
        logger.info("Immediate lesson queued for user %s", user_id)
        return True
