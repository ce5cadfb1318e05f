"""
Payment handling module for the English learning bot.

Subscriptions are paid out of band with a TON wallet: either a plain TON
transfer or a USDT jetton transfer to the bot's wallet, both carrying a
payment reference as comment. This module creates those references and the
wallet deep links, remembers the outstanding attempts of each user, finds
the matching transaction among the wallet's recent transactions and drives
the bounded polling loop that activates a subscription once a payment has
landed.

Nothing here talks to Telegram; the handlers in :mod:`bot` translate the
outcome of :meth:`PaymentReconciler.reconcile` into exactly one message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set
from urllib.parse import quote

import config
from database import Database
from tonapi import TonApiClient, TonApiError, Transaction

logger = logging.getLogger(__name__)


class Rail(Enum):
    """Payment method a matched transaction was made with."""

    TON = "ton"
    USDT = "usdt"


class PaymentStatus(Enum):
    """Terminal outcome of one payment check."""

    CONFIRMED = "confirmed"
    EXHAUSTED = "exhausted"
    TRANSPORT_ERROR = "transport_error"
    ALREADY_CHECKING = "already_checking"
    NO_PENDING_PAYMENT = "no_pending_payment"


@dataclass(frozen=True)
class PendingPayment:
    reference: str
    expected_native_amount: int
    expected_token_amount: int
    ton_amount: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class PaymentMatch:
    payment: PendingPayment
    rail: Rail
    transaction_hash: str


@dataclass(frozen=True)
class PaymentLinks:
    wallet: str
    ton: str
    usdt: str


@dataclass
class ReconciliationResult:
    status: PaymentStatus
    match: Optional[PaymentMatch] = None
    attempts: int = 0
    subscription: Optional[Any] = None


def generate_reference(user_id: int | str, timestamp_ms: Optional[int] = None) -> str:
    """Return a payment reference of the form ``english-bot-<user>-<ms>``."""
    if timestamp_ms is None:
        timestamp_ms = time.time_ns() // 1_000_000
    return f"{config.PAYMENT_REFERENCE_PREFIX}-{user_id}-{timestamp_ms}"


def create_pending_payment(user_id: int | str, ton_amount: float) -> PendingPayment:
    """Build a new payment attempt for ``user_id`` priced at ``ton_amount`` TON."""
    return PendingPayment(
        reference=generate_reference(user_id),
        expected_native_amount=int(ton_amount * config.NANO_PER_TON),
        expected_token_amount=int(config.USDT_AMOUNT * config.MICRO_PER_USDT),
        ton_amount=ton_amount,
    )


def build_payment_links(
    payment: PendingPayment,
    address: str = config.TON_ADDRESS,
    jetton_master: str = config.USDT_CONTRACT_ADDRESS,
) -> PaymentLinks:
    """Construct the wallet links offered to the user for ``payment``.

    The Telegram Wallet link takes the amount in TON, the ``ton://`` links
    take it in the smallest unit of the coin being sent.
    """
    reference = payment.reference
    return PaymentLinks(
        wallet=(
            f"https://t.me/wallet?start=pay&address={address}"
            f"&amount={payment.ton_amount:.4f}&comment={quote(reference, safe='')}"
        ),
        ton=f"ton://transfer/{address}?amount={payment.expected_native_amount}&text={reference}",
        usdt=(
            f"ton://transfer/{address}?amount={payment.expected_token_amount}"
            f"&text={reference}&jetton={jetton_master}"
        ),
    )


class PaymentLedger:
    """Outstanding payment attempts per user, most recent last.

    Only the last ``max_per_user`` attempts are kept so that repeated
    "subscribe" taps cannot grow memory, while a late transfer for an older
    attempt can still be matched.
    """

    def __init__(self, max_per_user: int = config.MAX_PENDING_PAYMENTS) -> None:
        self.max_per_user = max_per_user
        self._payments: Dict[str, Deque[PendingPayment]] = {}

    def record(self, user_id: int | str, payment: PendingPayment) -> None:
        key = str(user_id)
        if key not in self._payments:
            self._payments[key] = deque(maxlen=self.max_per_user)
        self._payments[key].append(payment)

    def list_pending(self, user_id: int | str) -> List[PendingPayment]:
        return list(self._payments.get(str(user_id), ()))

    def has_pending(self, user_id: int | str) -> bool:
        return bool(self._payments.get(str(user_id)))

    def clear(self, user_id: int | str) -> None:
        self._payments.pop(str(user_id), None)

    def __len__(self) -> int:
        return len(self._payments)


def _mentions(text: Optional[str], reference: str) -> bool:
    # Wallets may prepend or append their own text to the comment
    return bool(text) and (text == reference or reference in text)


def _find_ton_transfer(reference: str, transactions: Sequence[Transaction]) -> Optional[Transaction]:
    for tx in transactions:
        messages = [tx.in_msg] if tx.in_msg else []
        messages.extend(tx.out_msgs)
        if any(_mentions(message.text, reference) for message in messages):
            return tx
    return None


def _find_jetton_transfer(
    payment: PendingPayment,
    transactions: Sequence[Transaction],
    jetton_master: str,
) -> Optional[Transaction]:
    for tx in transactions:
        for message in tx.out_msgs:
            transfer = message.jetton_transfer
            if transfer is None or not (message.source and message.destination):
                continue
            if transfer.jetton_master_address != jetton_master:
                continue
            logger.debug(
                "Jetton transfer in %s: received %d (expected %d)",
                tx.hash, transfer.amount, payment.expected_token_amount,
            )
            if transfer.amount < payment.expected_token_amount or not transfer.forward_ton_amount:
                continue
            if _mentions(transfer.forward_payload, payment.reference):
                return tx
    return None


def match_payment(
    pending: Sequence[PendingPayment],
    transactions: Sequence[Transaction],
    jetton_master: str = config.USDT_CONTRACT_ADDRESS,
) -> Optional[PaymentMatch]:
    """Find the newest pending payment that appears in ``transactions``.

    Each payment is looked up as a TON transfer first and as a USDT jetton
    transfer only if no TON transfer carries its reference.
    """
    for payment in reversed(pending):
        tx = _find_ton_transfer(payment.reference, transactions)
        if tx is not None:
            return PaymentMatch(payment=payment, rail=Rail.TON, transaction_hash=tx.hash)
        tx = _find_jetton_transfer(payment, transactions, jetton_master)
        if tx is not None:
            return PaymentMatch(payment=payment, rail=Rail.USDT, transaction_hash=tx.hash)
    return None


class PaymentReconciler:
    """Checks the wallet for a user's payment and activates the subscription.

    At most one check runs per user at a time. Within a check the wallet is
    polled up to ``max_attempts`` times, ``retry_delay`` seconds apart.
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        ton_api: TonApiClient,
        db: Database,
        wallet_address: str = config.TON_ADDRESS,
        jetton_master: str = config.USDT_CONTRACT_ADDRESS,
        max_attempts: int = config.PAYMENT_CHECK_MAX_ATTEMPTS,
        retry_delay: float = config.PAYMENT_CHECK_RETRY_DELAY,
        initial_delay: float = config.PAYMENT_CHECK_INITIAL_DELAY,
        transaction_limit: int = config.PAYMENT_CHECK_TRANSACTION_LIMIT,
        subscription_days: int = config.SUBSCRIPTION_DAYS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.ton_api = ton_api
        self.db = db
        self.wallet_address = wallet_address
        self.jetton_master = jetton_master
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.initial_delay = initial_delay
        self.transaction_limit = transaction_limit
        self.subscription_days = subscription_days
        self.sleep = sleep
        self._in_flight: Set[str] = set()

    def is_checking(self, user_id: int | str) -> bool:
        return str(user_id) in self._in_flight

    async def reconcile(
        self,
        user_id: int | str,
        on_started: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> ReconciliationResult:
        """Run one payment check for ``user_id``.

        ``on_started`` is awaited once polling is about to begin, i.e. only
        when the check was neither rejected as a duplicate nor found to have
        nothing to look for.

        Store errors raised while activating the subscription propagate; the
        pending payments are then left in place so that a retried check can
        activate it again under the same reference.
        """
        key = str(user_id)
        if key in self._in_flight:
            logger.info("Payment check already running for user %s", key)
            return ReconciliationResult(PaymentStatus.ALREADY_CHECKING)
        self._in_flight.add(key)
        try:
            if not self.ledger.has_pending(key):
                logger.info("No pending payment for user %s", key)
                return ReconciliationResult(PaymentStatus.NO_PENDING_PAYMENT)
            logger.info(
                "Checking %d pending payment(s) for user %s",
                len(self.ledger.list_pending(key)), key,
            )
            if on_started is not None:
                await on_started()
            if self.initial_delay:
                await self.sleep(self.initial_delay)
            return await self._poll(key)
        finally:
            self._in_flight.discard(key)

    async def _poll(self, key: str) -> ReconciliationResult:
        transport_failed = False
        for attempt in range(1, self.max_attempts + 1):
            logger.info("Payment check attempt %d/%d for user %s", attempt, self.max_attempts, key)
            try:
                transactions = await self.ton_api.get_transactions(
                    self.wallet_address, self.transaction_limit
                )
            except TonApiError as exc:
                logger.error("TON API error on attempt %d for user %s: %s", attempt, key, exc)
                transport_failed = True
            else:
                transport_failed = False
                match = match_payment(self.ledger.list_pending(key), transactions, self.jetton_master)
                if match is not None:
                    return self._confirm(key, match, attempt)
                logger.info("Payment not found on attempt %d for user %s", attempt, key)
            if attempt < self.max_attempts:
                await self.sleep(self.retry_delay)
        if transport_failed:
            return ReconciliationResult(PaymentStatus.TRANSPORT_ERROR, attempts=self.max_attempts)
        return ReconciliationResult(PaymentStatus.EXHAUSTED, attempts=self.max_attempts)

    def _confirm(self, key: str, match: PaymentMatch, attempt: int) -> ReconciliationResult:
        # No await between activation and clearing the ledger
        subscription = self.db.create_subscription(
            key, match.payment.reference, self.subscription_days
        )
        self.ledger.clear(key)
        logger.info(
            "%s payment %s confirmed for user %s in transaction %s",
            match.rail.value.upper(), match.payment.reference, key, match.transaction_hash,
        )
        return ReconciliationResult(
            PaymentStatus.CONFIRMED, match=match, attempts=attempt, subscription=subscription
        )
