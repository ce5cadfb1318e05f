"""Tests for payment references, the pending payment ledger and the matcher."""

import re

import pytest

import config
from payments import (
    PaymentLedger,
    Rail,
    build_payment_links,
    create_pending_payment,
    generate_reference,
    match_payment,
)
from tests.factories import jetton_tx, make_payment, ton_tx


class TestReferences:
    def test_reference_format(self):
        assert generate_reference(42, timestamp_ms=1700000000123) == "english-bot-42-1700000000123"

    def test_reference_uses_current_time(self):
        reference = generate_reference(7)

        assert re.fullmatch(r"english-bot-7-\d{13}", reference)

    def test_pending_payment_amounts(self):
        payment = create_pending_payment(42, ton_amount=0.4)

        assert payment.reference.startswith("english-bot-42-")
        assert payment.expected_native_amount == 400_000_000
        assert payment.expected_token_amount == 1_000_000

    def test_payment_links_carry_reference(self):
        payment = make_payment("english-bot-42-1")

        links = build_payment_links(payment, address="UQWallet", jetton_master="EQMaster")

        assert links.ton == "ton://transfer/UQWallet?amount=400000000&text=english-bot-42-1"
        assert links.usdt == "ton://transfer/UQWallet?amount=1000000&text=english-bot-42-1&jetton=EQMaster"
        assert links.wallet == (
            "https://t.me/wallet?start=pay&address=UQWallet&amount=0.4000&comment=english-bot-42-1"
        )


class TestPaymentLedger:
    @pytest.mark.parametrize("count", [1, 2, 3, 4, 7])
    def test_keeps_last_k_in_order(self, count):
        ledger = PaymentLedger(max_per_user=3)
        payments = [make_payment(f"ref-{i}") for i in range(count)]

        for payment in payments:
            ledger.record(42, payment)

        assert ledger.list_pending(42) == payments[-3:]

    def test_unknown_user_has_nothing_pending(self, ledger):
        assert ledger.list_pending(1) == []
        assert ledger.has_pending(1) is False

    def test_list_does_not_mutate(self, ledger):
        ledger.record(42, make_payment("ref-1"))

        listed = ledger.list_pending(42)
        listed.clear()

        assert [p.reference for p in ledger.list_pending(42)] == ["ref-1"]

    def test_clear_removes_everything(self, ledger):
        for i in range(3):
            ledger.record(42, make_payment(f"ref-{i}"))
        ledger.record(43, make_payment("other"))

        ledger.clear(42)

        assert ledger.list_pending(42) == []
        assert [p.reference for p in ledger.list_pending(43)] == ["other"]

    def test_clear_unknown_user_is_noop(self, ledger):
        ledger.clear(99)

        assert ledger.list_pending(99) == []

    def test_int_and_str_ids_share_entry(self, ledger):
        ledger.record(42, make_payment("ref-1"))

        assert ledger.has_pending("42")


class TestMatcher:
    def test_exact_comment_matches_ton_rail(self):
        payment = make_payment("english-bot-1-100")

        match = match_payment([payment], [ton_tx("english-bot-1-100", tx_hash="abc")])

        assert match.payment == payment
        assert match.rail is Rail.TON
        assert match.transaction_hash == "abc"

    def test_comment_with_extra_text_matches(self):
        payment = make_payment("english-bot-1-100")

        match = match_payment([payment], [ton_tx("Payment: english-bot-1-100 thanks")])

        assert match is not None
        assert match.rail is Rail.TON

    def test_outbound_comment_matches(self):
        payment = make_payment("english-bot-1-100")

        match = match_payment([payment], [ton_tx("english-bot-1-100", outbound=True)])

        assert match.rail is Rail.TON

    def test_no_transaction_with_reference(self):
        payment = make_payment("english-bot-1-100")
        transactions = [ton_tx("english-bot-2-100"), jetton_tx("english-bot-3-100")]

        assert match_payment([payment], transactions) is None

    def test_no_pending_payments(self):
        assert match_payment([], [ton_tx("english-bot-1-100")]) is None

    def test_jetton_transfer_matches_usdt_rail(self):
        payment = make_payment("english-bot-1-100")

        match = match_payment([payment], [jetton_tx("english-bot-1-100", tx_hash="usdt")])

        assert match.rail is Rail.USDT
        assert match.transaction_hash == "usdt"

    def test_jetton_overpayment_matches(self):
        payment = make_payment("english-bot-1-100")

        match = match_payment([payment], [jetton_tx("english-bot-1-100", amount=2_000_000)])

        assert match.rail is Rail.USDT

    @pytest.mark.parametrize(
        "transaction",
        [
            jetton_tx("english-bot-1-100", amount=999_999),
            jetton_tx("english-bot-1-100", master="EQSomeOtherJetton"),
            jetton_tx("english-bot-1-100", forward_ton_amount=0),
            jetton_tx("english-bot-9-100"),
        ],
        ids=["underpaid", "wrong-jetton", "no-forward-amount", "wrong-reference"],
    )
    def test_jetton_transfer_rejected(self, transaction):
        payment = make_payment("english-bot-1-100")

        assert match_payment([payment], [transaction]) is None

    def test_ton_rail_checked_before_jetton_rail(self):
        payment = make_payment("english-bot-1-100")
        transactions = [jetton_tx("english-bot-1-100"), ton_tx("english-bot-1-100")]

        match = match_payment([payment], transactions)

        assert match.rail is Rail.TON

    def test_older_payment_matched_when_only_it_was_paid(self):
        older = make_payment("english-bot-1-100")
        newer = make_payment("english-bot-1-200")

        match = match_payment([older, newer], [ton_tx("english-bot-1-100")])

        assert match.payment == older

    def test_newest_payment_wins_when_both_paid(self):
        older = make_payment("english-bot-1-100")
        newer = make_payment("english-bot-1-200")
        transactions = [ton_tx("english-bot-1-100"), jetton_tx("english-bot-1-200")]

        match = match_payment([older, newer], transactions)

        assert match.payment == newer
        assert match.rail is Rail.USDT

    def test_default_jetton_master_from_config(self):
        payment = make_payment("english-bot-1-100")

        match = match_payment([payment], [jetton_tx("english-bot-1-100", master=config.USDT_CONTRACT_ADDRESS)])

        assert match is not None
