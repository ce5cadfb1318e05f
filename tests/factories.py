"""Builders for payments and wallet transactions used across tests."""

from datetime import datetime, timezone

import config
from payments import PendingPayment
from tonapi import JettonTransfer, TonMessage, Transaction

FIXED_NOW = datetime(2026, 10, 18, 0, 0, 0, tzinfo=timezone.utc)
WALLET = "UQBotWallet"
SENDER = "UQSenderWallet"


def make_payment(reference: str, token_amount: int = 1_000_000) -> PendingPayment:
    return PendingPayment(
        reference=reference,
        expected_native_amount=400_000_000,
        expected_token_amount=token_amount,
        ton_amount=0.4,
        created_at=FIXED_NOW,
    )


def ton_tx(comment: str, tx_hash: str = "tx-ton", outbound: bool = False) -> Transaction:
    """Plain TON transfer with a text comment."""
    message = TonMessage(text=comment, source=SENDER, destination=WALLET)
    if outbound:
        return Transaction(hash=tx_hash, out_msgs=(message,))
    return Transaction(hash=tx_hash, in_msg=message)


def jetton_tx(
    payload: str,
    amount: int = 1_000_000,
    master: str = config.USDT_CONTRACT_ADDRESS,
    forward_ton_amount: int = 1,
    tx_hash: str = "tx-usdt",
) -> Transaction:
    """USDT jetton transfer whose forward payload carries ``payload``."""
    transfer = JettonTransfer(
        jetton_master_address=master,
        amount=amount,
        forward_ton_amount=forward_ton_amount,
        forward_payload=payload,
    )
    message = TonMessage(source=SENDER, destination=WALLET, jetton_transfer=transfer)
    return Transaction(hash=tx_hash, out_msgs=(message,))
