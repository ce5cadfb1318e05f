"""
Main entry point for the English learning bot.

This script wires together the various modules – configuration, database
access, payment checking, lesson generation, the outbound message queue,
the daily scheduler and the Telegram API – into a cohesive application.
Users pick a difficulty level, pay for a 30-day subscription in TON or
USDT and then receive one English lesson every morning.

Run this module directly to launch the bot. Ensure that the environment
variables described in config.py are set before deploying.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Hashable, List

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import config
from database import Database
from dedup import EventDeduplicator
from lessons import LessonGenerator, LessonService
from message_queue import MessageQueue
from payments import (
    PaymentLedger,
    PaymentReconciler,
    PaymentStatus,
    build_payment_links,
    create_pending_payment,
)
from pricing import PriceService, format_price_message
from scheduler import DailyScheduler
from tonapi import TonApiClient


logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
# httpx logs every request at INFO, including the bot token in the URL
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

JAPANESE_SCRIPT = re.compile(r"[぀-ゟ゠-ヿ一-龯]")

GENERIC_ERROR = "❌ 申し訳ございませんが、問題が発生しました。もう一度お試しください。"
USER_NOT_FOUND = "❌ ユーザーが見つかりません。まず/startを使用してください。"
PAYMENT_CHECK_ERROR = "❌ お支払いの確認中に問題が発生しました。もう一度お試しください。"

PAYMENT_MESSAGES = {
    PaymentStatus.EXHAUSTED: (
        f"❌ {config.PAYMENT_CHECK_MAX_ATTEMPTS}回試行してもお支払いが見つかりませんでした。"
        "数分後にもう一度お試しください。"
    ),
    PaymentStatus.TRANSPORT_ERROR: "❌ お支払いの確認が一時的に利用できません。数分後にもう一度お試しください。",
    PaymentStatus.ALREADY_CHECKING: "⏳ お支払いの確認が進行中です。お待ちください...",
    PaymentStatus.NO_PENDING_PAYMENT: "❌ 保留中の支払いが見つかりません。再度購読してください。",
}

WELCOME_MESSAGE = (
    "🇬🇧 英語学習ボットへようこそ！\n\n"
    "📖 毎日の英語の文章を受け取って、語学力を向上させましょう！\n"
    f"💰 TON暗号通貨で{config.SUBSCRIPTION_DAYS}日間のレッスンを購読できます。\n\n"
    "🎯 難易度を選択して学習を始めましょう！"
)

HELP_MESSAGE = (
    "🇬🇧 英語学習ボット ヘルプ\n\n"
    "📖 使い方:\n"
    f"• 毎日{config.DAILY_MESSAGE_TIME.hour}時に英語の文章を受信します（日本時間）\n"
    "• 本物の英語コンテンツで練習できます\n\n"
    f"💰 購読: {config.SUBSCRIPTION_DAYS}日間で${config.SUBSCRIPTION_PRICE_USD:g} USD\n"
    f"🎯 難易度: {len(config.DIFFICULTY_LEVELS)}レベル（初級から上級まで）\n\n"
    "🎮 下のボタンでナビゲートできます！"
)


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("📚 ヘルプ", callback_data="help"),
                InlineKeyboardButton("📊 ステータス", callback_data="status"),
            ],
            [
                InlineKeyboardButton("💳 購読する", callback_data="subscribe"),
                InlineKeyboardButton("⚙️ 難易度", callback_data="settings"),
            ],
        ]
    )


def back_keyboard(*rows: List[InlineKeyboardButton]) -> InlineKeyboardMarkup:
    """Keyboard with the given rows followed by a "main menu" button."""
    return InlineKeyboardMarkup(
        [*rows, [InlineKeyboardButton("🏠 メインメニュー", callback_data="back_to_main")]]
    )


def level_name(level: int) -> str:
    return config.DIFFICULTY_LEVELS.get(level, {}).get("name", "不明")


# ----------------------------------------------------------------------
# Screens
# ----------------------------------------------------------------------
async def send_main_menu(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user) -> None:
    """Make sure the user exists and show the main menu."""
    db: Database = context.bot_data["db"]
    display_name = user.first_name or user.username or "User"
    db.create_user(user.id, display_name)
    await context.bot.send_message(chat_id, WELCOME_MESSAGE, reply_markup=main_menu_keyboard())


async def send_help(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    await context.bot.send_message(chat_id, HELP_MESSAGE, reply_markup=back_keyboard())


async def send_status(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: int) -> None:
    """Show subscription state and level, always read fresh from the database."""
    db: Database = context.bot_data["db"]
    user = db.get_user(user_id)
    if not user:
        await context.bot.send_message(chat_id, USER_NOT_FOUND)
        return
    subscription = db.get_active_subscription(user_id)
    level = user["difficulty_level"]
    lines = ["📊 購読ステータス", ""]
    if subscription:
        expires_at = datetime.fromisoformat(subscription["expires_at"])
        days_left = max(0, math.ceil((expires_at - db.clock()).total_seconds() / 86400))
        lines.append(f"✅ 有効（残り{days_left}日）")
        keyboard = back_keyboard([InlineKeyboardButton("🚫 購読を解除", callback_data="unsubscribe")])
    else:
        lines.append("❌ アクティブな購読がありません")
        keyboard = back_keyboard()
    lines.append(f"現在のレベル: {level} ({level_name(level)})")
    lines.append("")
    lines.append(f"毎日のレッスンは日本時間{config.DAILY_MESSAGE_TIME.hour}時に送信されます。")
    await context.bot.send_message(chat_id, "\n".join(lines), reply_markup=keyboard)


async def send_settings(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: int) -> None:
    db: Database = context.bot_data["db"]
    user = db.get_user(user_id)
    if not user:
        await context.bot.send_message(chat_id, USER_NOT_FOUND)
        return
    level = user["difficulty_level"]
    lines = ["⚙️ 設定", "", f"現在の難易度レベル: {level} ({level_name(level)})", "", "難易度を選択してください:"]
    for number, info in config.DIFFICULTY_LEVELS.items():
        lines.append(f"• レベル {number}: {info['name']} ({info['description']})")
    buttons = [
        InlineKeyboardButton(f"レベル {number}", callback_data=f"level_{number}")
        for number in config.DIFFICULTY_LEVELS
    ]
    await context.bot.send_message(
        chat_id, "\n".join(lines), reply_markup=back_keyboard(buttons[:3], buttons[3:])
    )


async def set_level(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: int, level: int) -> None:
    if level not in config.DIFFICULTY_LEVELS:
        logger.warning("User %s requested unknown level %s", user_id, level)
        await send_settings(context, chat_id, user_id)
        return
    db: Database = context.bot_data["db"]
    updated = db.update_user_level(user_id, level)
    logger.info("User %s moved to level %d (%d row(s) updated)", user_id, level, updated)
    await context.bot.send_message(
        chat_id,
        f"✅ 難易度がレベル {level} に更新されました！\n\n毎日のレッスンは{level_name(level)}レベルになります。",
        reply_markup=back_keyboard(),
    )


async def unsubscribe(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: int) -> None:
    db: Database = context.bot_data["db"]
    if not db.get_active_subscription(user_id):
        await context.bot.send_message(chat_id, "❌ キャンセルするアクティブな購読がありません。")
        return
    db.cancel_subscription(user_id)
    logger.info("User %s cancelled their subscription", user_id)
    await context.bot.send_message(
        chat_id,
        "🚫 購読がキャンセルされました\n\n毎日のレッスンは受信されません。\n\n"
        "いつでも購読ボタンを使用して再購読できます。",
        reply_markup=back_keyboard([InlineKeyboardButton("💎 再度購読する", callback_data="subscribe")]),
    )


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------
async def subscribe(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: int) -> None:
    """Create a payment attempt and offer the wallet links for it."""
    db: Database = context.bot_data["db"]
    if db.get_active_subscription(user_id):
        logger.info("User %s already has an active subscription", user_id)
        await context.bot.send_message(chat_id, "✅ すでにアクティブな購読があります！")
        return
    prices: PriceService = context.bot_data["prices"]
    ledger: PaymentLedger = context.bot_data["ledger"]
    ton_amount = await prices.get_ton_amount_for_usd(config.SUBSCRIPTION_PRICE_USD)
    payment = create_pending_payment(user_id, ton_amount)
    ledger.record(user_id, payment)
    links = build_payment_links(payment)
    logger.info(
        "Payment %s created for user %s: %d nanoTON or %d microUSDT",
        payment.reference, user_id, payment.expected_native_amount, payment.expected_token_amount,
    )
    keyboard = back_keyboard(
        [InlineKeyboardButton(f"📱 Telegram Wallet ({ton_amount:.4f} TON)", url=links.wallet)],
        [InlineKeyboardButton(f"💎 {ton_amount:.4f} TONを支払う（Tonkeeper）", url=links.ton)],
        [InlineKeyboardButton(f"💵 {config.USDT_AMOUNT:g} USDTを支払う（Tonkeeper）", url=links.usdt)],
        [InlineKeyboardButton("✅ 支払い済み", callback_data=f"check_payment_{user_id}")],
    )
    message = (
        "💎 英語学習ボットを購読する\n\n"
        f"{format_price_message(ton_amount, config.USDT_AMOUNT)}"
        f"📅 期間: {config.SUBSCRIPTION_DAYS}日間の毎日のレッスン\n"
        "🎯 含まれるもの:\n"
        "• 毎日の英語レッスン\n"
        "• 単語ごとの解説と発音\n"
        "• 難易度のカスタマイズ\n\n"
        "💳 下からお支払い方法を選択してください！"
    )
    await context.bot.send_message(chat_id, message, reply_markup=keyboard)


async def check_payment(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user_id: int) -> None:
    """Run the payment check and answer with exactly one outcome message."""
    reconciler: PaymentReconciler = context.bot_data["reconciler"]

    async def announce() -> None:
        await context.bot.send_message(chat_id, "🔍 お支払いを確認中です... しばらくお待ちください。")

    try:
        result = await reconciler.reconcile(user_id, on_started=announce)
    except Exception:
        logger.exception("Payment check failed for user %s", user_id)
        await context.bot.send_message(chat_id, PAYMENT_CHECK_ERROR)
        return

    if result.status is not PaymentStatus.CONFIRMED:
        await context.bot.send_message(chat_id, PAYMENT_MESSAGES[result.status])
        return

    # The subscription is already active; a failed notice must not skip the first lesson
    try:
        await context.bot.send_message(
            chat_id,
            f"🎉 お支払いが確認されました！{config.SUBSCRIPTION_DAYS}日間の購読が有効になりました。",
            reply_markup=back_keyboard(),
        )
    except TelegramError:
        logger.exception("Could not confirm the payment to user %s", user_id)
    lessons: LessonService = context.bot_data["lessons"]
    try:
        await lessons.send_immediate_lesson(chat_id, user_id)
    except Exception:
        logger.exception("Could not send the first lesson to user %s", user_id)


# ----------------------------------------------------------------------
# Update handlers
# ----------------------------------------------------------------------
async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Entry point for the /start command."""
    user = update.effective_user
    chat = update.effective_chat
    if not user or not chat:
        return
    try:
        await send_main_menu(context, chat.id, user)
    except Exception:
        logger.exception("Error in /start for user %s", user.id)
        await context.bot.send_message(chat.id, GENERIC_ERROR)


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.effective_chat:
        await send_help(context, update.effective_chat.id)


async def route_callback(context: ContextTypes.DEFAULT_TYPE, chat_id: int, user, data: str) -> None:
    user_id = user.id
    if data == "help":
        await send_help(context, chat_id)
    elif data == "status":
        await send_status(context, chat_id, user_id)
    elif data == "subscribe":
        await subscribe(context, chat_id, user_id)
    elif data == "settings":
        await send_settings(context, chat_id, user_id)
    elif data == "back_to_main":
        await send_main_menu(context, chat_id, user)
    elif data == "unsubscribe":
        await unsubscribe(context, chat_id, user_id)
    elif data.startswith("level_"):
        await set_level(context, chat_id, user_id, int(data.split("_")[1]))
    elif data.startswith("check_payment_"):
        target = data[len("check_payment_"):]
        if target != str(user_id):
            logger.warning("User %s pressed the payment button of user %s", user_id, target)
        await check_payment(context, chat_id, user_id)
    else:
        logger.warning("Unknown callback data %r from user %s", data, user_id)


async def handle_callback_query(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle inline button presses, each callback at most once."""
    query = update.callback_query
    if not query or not query.message or not query.data:
        return
    dedup: EventDeduplicator = context.bot_data["callback_dedup"]
    key: Hashable = (query.id, query.data)
    if not dedup.should_process(key):
        return
    chat_id = query.message.chat.id
    logger.info("Button %s pressed by user %s in chat %s", query.data, query.from_user.id, chat_id)
    try:
        await query.answer()
        await route_callback(context, chat_id, query.from_user, query.data)
    except Exception:
        logger.exception("Error handling callback %s from user %s", query.data, query.from_user.id)
        # Allow the user to press the button again
        dedup.rollback(key)
        await context.bot.send_message(chat_id, GENERIC_ERROR)


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Answer plain text with the main menu, unless the user is writing Japanese."""
    message = update.message
    user = update.effective_user
    if not message or not message.text or not user or user.is_bot:
        return
    dedup: EventDeduplicator = context.bot_data["message_dedup"]
    key: Hashable = (message.message_id, user.id)
    if not dedup.should_process(key):
        return
    if JAPANESE_SCRIPT.search(message.text):
        logger.debug("User %s typed Japanese, not responding", user.id)
        return
    try:
        await send_main_menu(context, message.chat.id, user)
    except Exception:
        logger.exception("Error handling message from user %s", user.id)
        dedup.rollback(key)
        await context.bot.send_message(message.chat.id, GENERIC_ERROR)


async def log_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Unhandled error while processing %s", update, exc_info=context.error)


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------
def build_application() -> Application:
    """Create and configure the Telegram application.

    Every long-lived object is created here and kept in ``bot_data``; they
    are started in ``post_init`` and released in ``post_shutdown``. Updates
    are handled concurrently so that a running payment check does not hold
    up other users.
    """
    application = (
        Application.builder()
        .token(config.BOT_TOKEN)
        .post_init(on_startup)
        .post_shutdown(on_shutdown)
        .concurrent_updates(True)
        .build()
    )
    db = Database()
    ledger = PaymentLedger()
    ton_api = TonApiClient()
    generator = LessonGenerator()
    queue = MessageQueue(application.bot)
    application.bot_data.update(
        {
            "db": db,
            "ledger": ledger,
            "ton_api": ton_api,
            "prices": PriceService(),
            "generator": generator,
            "queue": queue,
            "reconciler": PaymentReconciler(ledger, ton_api, db),
            "lessons": LessonService(db, generator, queue),
            "scheduler": DailyScheduler(db, generator, queue),
            "callback_dedup": EventDeduplicator(
                config.CALLBACK_DEDUP_TTL, config.DEDUP_MAX_SIZE, name="callback"
            ),
            "message_dedup": EventDeduplicator(
                config.MESSAGE_DEDUP_TTL, config.DEDUP_MAX_SIZE, name="message"
            ),
        }
    )
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CallbackQueryHandler(handle_callback_query))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    application.add_error_handler(log_error)
    return application


async def on_startup(application: Application) -> None:
    application.bot_data["queue"].start()
    scheduler: DailyScheduler = application.bot_data["scheduler"]
    scheduler.register(application.job_queue)


async def on_shutdown(application: Application) -> None:
    data = application.bot_data
    await data["queue"].stop()
    for name in ("ton_api", "prices", "generator"):
        await data[name].close()
    data["db"].close()


def main() -> None:
    """Run the bot."""
    application = build_application()
    logger.info("Starting bot...")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
