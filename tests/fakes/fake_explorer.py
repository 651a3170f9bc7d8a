"""Fake Hiro explorer API for tests.

Serves a synthetic transaction history through ``httpx.MockTransport`` so
ExplorerClient runs its real request/response code without a network:

- ``/address/{addr}/transactions?limit&offset`` -- one page of history
- ``/address/{addr}/balances``                  -- balance object
- ``/address/{addr}``                           -- account summary

Usage::

    explorer = FakeExplorer(ADDRESS, make_transactions(ADDRESS, 120))
    client = explorer.client()
    page = await client.fetch_page(client.transactions_url(ADDRESS), 50, 0)
    assert explorer.page_offsets() == [0]
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import httpx

from wallet_tools.explorer_client import ExplorerClient

BASE_URL = "https://explorer.test/extended/v1"
ADDRESS = "ST1WALLETADDRESS000000000000000000000000"
OTHER_ADDRESS = "ST2OTHERADDRESS0000000000000000000000000"
EMPTY_MEMO = "0x" + "00" * 34


def make_transaction(index: int, sender: str, recipient: str = "ST3RECIPIENT",
                     tx_type: str = "token_transfer", amount: int = 1_000_000) -> Dict[str, Any]:
    tx = {
        "tx_id": f"0x{index:064x}",
        "tx_type": tx_type,
        "tx_status": "success",
        "sender_address": sender,
        "burn_block_time": 1_700_000_000 + index,
        "block_height": 100_000 + index,
        "fee_rate": "180",
        "nonce": index,
        "canonical": True,
    }
    if tx_type == "token_transfer":
        tx["token_transfer"] = {"recipient_address": recipient, "amount": str(amount), "memo": EMPTY_MEMO}
    elif tx_type == "contract_call":
        tx["contract_call"] = {"contract_id": "ST000.game", "function_name": "submit-score", "function_args": []}
    return tx


def make_transactions(sender: str, count: int) -> List[Dict[str, Any]]:
    return [make_transaction(i, sender, recipient=f"ST3RECIPIENT{i % 7}") for i in range(count)]


class FakeExplorer:
    """In-memory explorer backed by a list of transactions (most recent first)."""

    def __init__(self, address: str = ADDRESS, transactions: Optional[List[Dict[str, Any]]] = None,
                 fail_offsets: Optional[Set[int]] = None, delay_s: float = 0.0):
        self.address = address
        self.transactions = transactions if transactions is not None else []
        self.fail_offsets = set(fail_offsets or ())
        self.delay_s = delay_s
        self.requests: List[httpx.Request] = []
        self.balance = {
            "stx": {"balance": "5000000", "total_sent": "2000000", "total_received": "7000000"},
            "fungible_tokens": {},
            "non_fungible_tokens": {},
        }

    @property
    def total(self) -> int:
        return len(self.transactions)

    def page_offsets(self) -> List[int]:
        return [
            int(r.url.params["offset"])
            for r in self.requests
            if r.url.path.endswith("/transactions") and "offset" in r.url.params
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        path = request.url.path
        prefix = f"/extended/v1/address/{self.address}"
        if path == f"{prefix}/transactions":
            limit = int(request.url.params.get("limit", 20))
            offset = int(request.url.params.get("offset", 0))
            if offset in self.fail_offsets:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json={
                "limit": limit,
                "offset": offset,
                "total": self.total,
                "results": self.transactions[offset:offset + limit],
            })
        if path == f"{prefix}/balances":
            return httpx.Response(200, json=self.balance)
        if path == prefix:
            return httpx.Response(200, json={"balance": "5000000", "total_sent": "2000000",
                                             "total_received": "7000000", "nonce": 3})
        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> ExplorerClient:
        return ExplorerClient(
            base_url=BASE_URL,
            client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )
