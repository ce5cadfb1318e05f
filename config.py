"""
Configuration settings for the English learning Telegram bot.

This module stores constants such as the bot token, API keys, wallet
addresses, subscription pricing and the timing of payment checks and the
daily lesson dispatch.

Secrets and deployment specific values are read from the environment (a
``.env`` file in the working directory is loaded first). Before running the
bot you MUST provide at least ``TELEGRAM_BOT_TOKEN``, ``TON_ADDRESS`` and
``DEEPSEEK_API_KEY``.
"""

import os
from datetime import time, timedelta

from dotenv import load_dotenv

load_dotenv()

# Telegram bot API token.
# Obtain this value by creating a bot via the BotFather (https://t.me/botfather).
BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "REPLACE_WITH_YOUR_BOT_TOKEN")

# Path to the SQLite database file used by the bot.
# The database will be created automatically on first run.
DATABASE_PATH: str = os.getenv("DATABASE_PATH", "data/english_bot.db")

# TON wallet that receives subscription payments and the tonapi.io key used
# to read its transactions.
TON_ADDRESS: str = os.getenv("TON_ADDRESS", "REPLACE_WITH_YOUR_TON_ADDRESS")
TON_API_KEY: str = os.getenv("TON_API_KEY", "")
TON_API_URL: str = os.getenv("TON_API_URL", "https://tonapi.io/v2")

# Jetton master address of USDT on TON.
USDT_CONTRACT_ADDRESS: str = os.getenv(
    "USDT_CONTRACT_ADDRESS",
    "EQCxE6mUtQJKFnGfaROTKOt1lZbDiiX1kCixRv7Nw2Id_sDs",
)

# Subscription settings.
# The fee is fixed at one US dollar, paid either as USDT or as the TON
# equivalent at the current rate.
USDT_AMOUNT: float = 1.0
SUBSCRIPTION_PRICE_USD: float = 1.0
SUBSCRIPTION_DAYS: int = 30

# Smallest units: 1 TON = 10**9 nanoTON, 1 USDT = 10**6 microUSDT.
NANO_PER_TON: int = 1_000_000_000
MICRO_PER_USDT: int = 1_000_000

# Price used when the TON/USD quote cannot be fetched.
FALLBACK_TON_PRICE_USD: float = 2.5
PRICE_API_URL: str = "https://api.coingecko.com/api/v3/simple/price"
PRICE_CACHE_TTL: timedelta = timedelta(minutes=5)

# Payment reference namespace, ``<namespace>-<user id>-<timestamp ms>``.
PAYMENT_REFERENCE_PREFIX: str = "english-bot"

# Number of outstanding payment attempts remembered per user.
MAX_PENDING_PAYMENTS: int = 3

# Payment check loop.
# The bot waits INITIAL_DELAY after the user presses "I paid", then polls the
# wallet up to MAX_ATTEMPTS times with RETRY_DELAY between polls.
PAYMENT_CHECK_INITIAL_DELAY: float = float(os.getenv("PAYMENT_CHECK_INITIAL_DELAY", "5"))
PAYMENT_CHECK_RETRY_DELAY: float = float(os.getenv("PAYMENT_CHECK_RETRY_DELAY", "10"))
PAYMENT_CHECK_MAX_ATTEMPTS: int = 3
PAYMENT_CHECK_TRANSACTION_LIMIT: int = 50

# HTTP timeout in seconds for every outbound API call.
HTTP_TIMEOUT: float = 15.0

# Lesson generation backend (DeepSeek, OpenAI compatible API).
DEEPSEEK_API_KEY: str = os.getenv("DEEPSEEK_API_KEY", "")
DEEPSEEK_API_URL: str = os.getenv("DEEPSEEK_API_URL", "https://api.deepseek.com/v1/chat/completions")
DEEPSEEK_MODEL: str = os.getenv("DEEPSEEK_MODEL", "deepseek-chat")

# Daily lesson dispatch time, local to TIMEZONE.
TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Tokyo")
DAILY_MESSAGE_TIME: time = time(hour=9, minute=0)

# Outbound message queue: minimum pause between two sends.
MESSAGE_SEND_INTERVAL: float = 0.05

# Duplicate update suppression windows.
CALLBACK_DEDUP_TTL: float = 600.0
MESSAGE_DEDUP_TTL: float = 600.0
DEDUP_MAX_SIZE: int = 10_000

# Difficulty levels offered to users.
DIFFICULTY_LEVELS: dict[int, dict[str, str]] = {
    1: {"name": "初級", "description": "簡単な単語と短い文"},
    2: {"name": "初中級", "description": "日常会話の基本表現"},
    3: {"name": "中級", "description": "一般的な文法と語彙"},
    4: {"name": "中上級", "description": "複雑な文とイディオム"},
    5: {"name": "上級", "description": "ビジネス・アカデミックな表現"},
}
DEFAULT_DIFFICULTY_LEVEL: int = 1
