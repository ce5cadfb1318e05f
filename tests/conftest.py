"""Pytest configuration and shared fixtures for all tests."""

import os
import sys
from pathlib import Path

# Minimal environment so that config.py imports without a .env file
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456789:ABCdefGHIjklMNOpqrsTUVwxyz123456789")
os.environ.setdefault("TON_ADDRESS", "UQBotWalletAddressForTests000000000000000000000")
os.environ.setdefault("DEEPSEEK_API_KEY", "test-deepseek-key")

# Add the project root to PYTHONPATH
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from database import Database
from lessons import Lesson
from payments import PaymentLedger
from tests.factories import FIXED_NOW


@pytest.fixture
def db(tmp_path):
    """Real SQLite database in a temporary directory with a frozen clock."""
    database = Database(str(tmp_path / "data" / "test.db"), clock=lambda: FIXED_NOW)
    yield database
    database.close()


@pytest.fixture
def ledger():
    return PaymentLedger(max_per_user=3)


@pytest.fixture
def mock_ton_api():
    api = AsyncMock()
    api.get_transactions = AsyncMock(return_value=[])
    return api


@pytest.fixture
def mock_sleep():
    return AsyncMock()


@pytest.fixture
def mock_queue():
    queue = MagicMock()
    queue.enqueue = MagicMock()
    return queue


@pytest.fixture
def sample_lesson():
    return Lesson(
        english_text="I drink coffee every morning.",
        japanese_translation="私は毎朝コーヒーを飲みます。",
        word_breakdown=[{"word": "coffee", "meaning": "コーヒー", "pronunciation": "コーヒー"}],
    )


@pytest.fixture
def mock_generator(sample_lesson):
    generator = AsyncMock()
    generator.generate = AsyncMock(return_value=sample_lesson)
    return generator


@pytest.fixture
def mock_bot():
    """Mock Telegram Bot."""
    bot = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.fixture
def make_context(mock_bot):
    def factory(**bot_data):
        return SimpleNamespace(bot=mock_bot, bot_data=dict(bot_data))

    return factory
