"""
Client for the tonapi.io blockchain API.

Only the single query the payment checker needs is implemented: the most
recent transactions of the bot's wallet. Raw JSON is converted into small
immutable records so that the payment matcher never has to deal with the
shape of the API response.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

import config

logger = logging.getLogger(__name__)


class TonApiError(Exception):
    """Raised when the wallet transactions cannot be fetched."""


@dataclass(frozen=True)
class JettonTransfer:
    """Token transfer metadata carried by a message."""

    jetton_master_address: str
    amount: int
    forward_ton_amount: int = 0
    forward_payload: Optional[str] = None


@dataclass(frozen=True)
class TonMessage:
    """An inbound or outbound message of a transaction."""

    text: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    jetton_transfer: Optional[JettonTransfer] = None


@dataclass(frozen=True)
class Transaction:
    hash: str
    in_msg: Optional[TonMessage] = None
    out_msgs: Tuple[TonMessage, ...] = field(default_factory=tuple)


def _address(value: Any) -> Optional[str]:
    # tonapi returns accounts as {"address": ...}; plain strings are accepted too
    if isinstance(value, dict):
        return value.get("address")
    return value


def _payload_text(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        # {"is_right": ..., "value": {"sum_type": "TextComment", "value": {"text": ...}}}
        value = payload.get("value", payload)
        if isinstance(value, dict):
            inner = value.get("value", value)
            if isinstance(inner, dict) and isinstance(inner.get("text"), str):
                return inner["text"]
    return str(payload)


def _parse_jetton_transfer(body: Dict[str, Any]) -> Optional[JettonTransfer]:
    transfer = body.get("jetton_transfer")
    if not isinstance(transfer, dict):
        return None
    try:
        amount = int(transfer.get("amount") or 0)
        forward_ton_amount = int(transfer.get("forward_ton_amount") or 0)
    except (TypeError, ValueError):
        logger.warning("Ignoring jetton transfer with malformed amounts: %s", transfer)
        return None
    return JettonTransfer(
        jetton_master_address=transfer.get("jetton_master_address") or "",
        amount=amount,
        forward_ton_amount=forward_ton_amount,
        forward_payload=_payload_text(transfer.get("forward_payload")),
    )


def parse_message(raw: Optional[Dict[str, Any]]) -> Optional[TonMessage]:
    """Convert a tonapi message object into a :class:`TonMessage`."""
    if not raw:
        return None
    body = raw.get("decoded_body")
    text = None
    jetton_transfer = None
    if isinstance(body, dict):
        if isinstance(body.get("text"), str):
            text = body["text"]
        jetton_transfer = _parse_jetton_transfer(body)
    return TonMessage(
        text=text,
        source=_address(raw.get("source")),
        destination=_address(raw.get("destination")),
        jetton_transfer=jetton_transfer,
    )


def parse_transaction(raw: Dict[str, Any]) -> Transaction:
    """Convert a tonapi transaction object into a :class:`Transaction`."""
    out_msgs = tuple(
        msg for msg in (parse_message(item) for item in raw.get("out_msgs") or []) if msg
    )
    return Transaction(
        hash=raw.get("hash", ""),
        in_msg=parse_message(raw.get("in_msg")),
        out_msgs=out_msgs,
    )


class TonApiClient:
    """Thin async wrapper around the tonapi.io REST API."""

    def __init__(
        self,
        api_key: str = config.TON_API_KEY,
        base_url: str = config.TON_API_URL,
        timeout: float = config.HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def get_transactions(self, address: str, limit: int) -> List[Transaction]:
        """Return the most recent ``limit`` transactions of ``address``.

        :raises TonApiError: on network failures, non-2xx responses and
            undecodable bodies.
        """
        try:
            response = await self._client.get(
                f"/blockchain/accounts/{address}/transactions",
                params={"limit": limit},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TonApiError(f"Could not fetch transactions for {address}: {exc}") from exc
        transactions = data.get("transactions") or []
        logger.debug("tonapi returned %d transactions for %s", len(transactions), address)
        return [parse_transaction(item) for item in transactions]

    async def close(self) -> None:
        await self._client.aclose()
