"""
Async client for the Hiro Stacks explorer API.

Endpoints used:
    GET {base}/address/{addr}/transactions?limit={L}&offset={O}
        -> {limit, offset, total, results: [Transaction, ...]}
    GET {base}/address/{addr}            -> account summary
    GET {base}/address/{addr}/balances   -> balance object

The upstream is untrusted and frequently rate-limited. ``request_json``
raises UpstreamError; ``fetch_page`` swallows failures and returns None,
since both recursive modes treat a missing page as absent rather than fatal.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from wallet_agent.errors import UpstreamError
from wallet_constants import STACKS_API_BASE

logger = logging.getLogger(__name__)

USER_AGENT = "StacksWalletAgent/0.1"


@dataclass
class WalletData:
    """Snapshot of a wallet used to seed the chat context."""

    address: str
    balance: Dict[str, Any] = field(default_factory=dict)
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    total_transactions: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletData":
        total = data.get("total_transactions", data.get("totalTransactions"))
        return cls(
            address=data["address"],
            balance=data.get("balance") or {},
            transactions=list(data.get("transactions") or []),
            total_transactions=int(total) if total is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "balance": self.balance,
            "transactions": self.transactions,
            "total_transactions": self.total_transactions,
        }


class ExplorerClient:
    """Thin async wrapper over the explorer REST API."""

    def __init__(self, base_url: str = STACKS_API_BASE, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        )

    async def __aenter__(self) -> "ExplorerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    # ── URLs ─────────────────────────────────────────────────

    def transactions_url(self, address: str) -> str:
        return f"{self.base_url}/address/{address}/transactions"

    def account_url(self, address: str) -> str:
        return f"{self.base_url}/address/{address}"

    def balances_url(self, address: str) -> str:
        return f"{self.base_url}/address/{address}/balances"

    # ── Requests ─────────────────────────────────────────────

    async def request_json(self, uri: str, body: Any = None,
                           params: Optional[Dict[str, Any]] = None) -> Any:
        """GET *uri* (or POST *body* as JSON) and return the decoded response."""
        try:
            if body is None:
                resp = await self.client.get(uri, params=params)
            else:
                resp = await self.client.post(uri, json=body, params=params)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(f"Request failed: {e}", url=uri) from e

        if not resp.is_success:
            raise UpstreamError(
                f"API call failed: {resp.status_code} {resp.reason_phrase}",
                url=str(resp.request.url),
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError("Response was not valid JSON", url=uri,
                                status_code=resp.status_code) from e

    async def fetch_page(self, base_uri: str, limit: int, offset: int) -> Optional[Dict[str, Any]]:
        """One page of a paginated listing, or None if it could not be fetched."""
        try:
            page = await self.request_json(base_uri, params={"limit": limit, "offset": offset})
        except UpstreamError as e:
            logger.warning(f"Error fetching offset {offset}: {e}")
            return None
        if not isinstance(page, dict):
            logger.warning(f"Unexpected page shape at offset {offset}: {type(page).__name__}")
            return None
        return page

    # ── Wallet snapshot ──────────────────────────────────────

    async def fetch_balances(self, address: str) -> Dict[str, Any]:
        return await self.request_json(self.balances_url(address))

    async def fetch_account(self, address: str) -> Dict[str, Any]:
        return await self.request_json(self.account_url(address))

    async def fetch_transactions(self, address: str, limit: int = 20) -> Dict[str, Any]:
        data = await self.request_json(self.transactions_url(address), params={"limit": limit})
        return {"transactions": data.get("results", []), "total": data.get("total") or 0}

    async def fetch_wallet_data(self, address: str, limit: int = 20) -> WalletData:
        """Balances plus the most recent page of transactions, fetched together."""
        balance, txs = await asyncio.gather(
            self.fetch_balances(address),
            self.fetch_transactions(address, limit=limit),
        )
        return WalletData(
            address=address,
            balance=balance,
            transactions=txs["transactions"],
            total_transactions=txs["total"],
        )
