"""
Full-history aggregation for one wallet address.

The store fetches every page of an address's transaction history, keeps it
in memory, and persists it as a single JSON artifact tagged with the address
and the transaction count it was fetched for. A later request reuses the
artifact only when both tags match; anything else triggers a fresh fetch
that replaces the file wholesale, never merging with what was there.

Artifact file formats (both readable, only the first is written):

    {"_metadata": {"address", "totalTransactions", "fetchedAt", "batches"},
     "data": [page, ...]}

    [page, ...]                      # legacy, no metadata

where each page is the raw explorer response ``{limit, offset, total, results}``.

All full-history work for an address goes through one InFlightRegistry
entry, shared by the background preloader and the aggregate+execute mode,
so an address is never fetched twice at the same time.
"""

import asyncio
import enum
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from wallet_agent.errors import UpstreamError
from wallet_constants import (
    AGGREGATE_ROUND_DELAY_S,
    ARTIFACT_FILE_NAME,
    MAX_CONCURRENT_PAGES,
    PAGE_SIZE,
)
from wallet_tools.explorer_client import ExplorerClient
from wallet_tools.inflight import InFlightRegistry

logger = logging.getLogger(__name__)

_ADDRESS_IN_URI = re.compile(r"/address/([^/?#]+)")

# Shown to the model when its analysis code fails
ARTIFACT_DATA_SHAPE = {
    "format": '{"_metadata": {...}, "data": [batch, ...]} (legacy files: a bare list of batches)',
    "batch_structure": "{limit: int, offset: int, total: int, results: [transaction, ...]}",
    "transaction_structure": (
        "{tx_id, tx_type, tx_status, sender_address, burn_block_time, fee_rate, "
        "token_transfer?: {recipient_address, amount, memo}, "
        "contract_call?: {contract_id, function_name, function_args}, ...}"
    ),
    "example": 'data[0]["results"][0].get("token_transfer", {}).get("recipient_address")',
}


class ArtifactFormat(enum.Enum):
    METADATA = "metadata"
    LEGACY = "legacy"


@dataclass
class AggregationArtifact:
    """One address's complete transaction history, as pages."""

    address: Optional[str]
    declared_total: Optional[int]
    batches: List[Dict[str, Any]] = field(default_factory=list)
    fetched_at: Optional[str] = None
    source_format: ArtifactFormat = ArtifactFormat.METADATA

    @property
    def batch_count(self) -> int:
        return len(self.batches)

    def matches(self, address: str, declared_total: int) -> bool:
        # Legacy files carry no address, so they are never reused
        return self.address == address and self.declared_total == declared_total

    def transactions(self) -> Iterator[Dict[str, Any]]:
        for batch in self.batches:
            yield from batch.get("results") or []

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "_metadata": {
                "address": self.address,
                "totalTransactions": self.declared_total,
                "fetchedAt": self.fetched_at,
                "batches": self.batch_count,
            },
            "data": self.batches,
        }


def load_artifact(raw: Any) -> AggregationArtifact:
    """Normalize either on-disk format into an AggregationArtifact."""
    if isinstance(raw, dict) and "_metadata" in raw and "data" in raw:
        meta = raw["_metadata"] or {}
        return AggregationArtifact(
            address=meta.get("address"),
            declared_total=meta.get("totalTransactions"),
            fetched_at=meta.get("fetchedAt"),
            batches=list(raw["data"] or []),
            source_format=ArtifactFormat.METADATA,
        )
    if isinstance(raw, list):
        first = raw[0] if raw and isinstance(raw[0], dict) else {}
        return AggregationArtifact(
            address=None,
            declared_total=first.get("total"),
            batches=list(raw),
            source_format=ArtifactFormat.LEGACY,
        )
    raise ValueError(f"Unrecognized artifact shape: {type(raw).__name__}")


def read_artifact(path: Path) -> Optional[AggregationArtifact]:
    """Read the artifact at *path*; None when missing or unreadable."""
    if not path.exists():
        return None
    try:
        return load_artifact(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as e:
        logger.warning(f"Error reading existing data at {path}, will fetch fresh: {e}")
        return None


def write_artifact(path: Path, artifact: AggregationArtifact) -> None:
    """Replace *path* with *artifact* in one step (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".artifact-", suffix=".json", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(artifact.to_json_dict(), f)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def address_from_uri(uri: str) -> Optional[str]:
    match = _ADDRESS_IN_URI.search(uri)
    return match.group(1) if match else None


@dataclass
class AggregateLoad:
    artifact: AggregationArtifact
    was_cached: bool


@dataclass
class PreloadResult:
    batch_count: int
    total_count: int
    was_cached: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_count": self.batch_count,
            "total_count": self.total_count,
            "was_cached": self.was_cached,
        }


class AggregationStore:
    """Owns the artifact file and every full-history fetch that writes it."""

    def __init__(
        self,
        client: ExplorerClient,
        artifact_dir: Path,
        registry: Optional[InFlightRegistry] = None,
        page_size: int = PAGE_SIZE,
        concurrency: int = MAX_CONCURRENT_PAGES,
        round_delay_s: float = AGGREGATE_ROUND_DELAY_S,
    ):
        self.client = client
        self.path = Path(artifact_dir) / ARTIFACT_FILE_NAME
        self.registry = registry or InFlightRegistry()
        self.page_size = page_size
        self.concurrency = concurrency
        self.round_delay_s = round_delay_s

    def read(self) -> Optional[AggregationArtifact]:
        return read_artifact(self.path)

    async def fetch_all_pages(self, base_uri: str, total: int) -> List[Dict[str, Any]]:
        """Every page from offset 0 up to *total*, in offset order.

        Pages are requested ``concurrency`` at a time; a page that fails is
        left out rather than failing the whole fetch.
        """
        pages: List[Dict[str, Any]] = []
        step = self.page_size * self.concurrency
        offset = 0
        while offset < total:
            offsets = [
                offset + i * self.page_size
                for i in range(self.concurrency)
                if offset + i * self.page_size < total
            ]
            results = await asyncio.gather(
                *(self.client.fetch_page(base_uri, self.page_size, o) for o in offsets)
            )
            pages.extend(page for page in results if page is not None)

            offset += step
            logger.debug(f"Aggregation progress: {min(100.0, offset / total * 100):.1f}% ({min(offset, total)}/{total})")
            if offset < total:
                await asyncio.sleep(self.round_delay_s)
        return pages

    async def acquire(self, address: Optional[str], base_uri: str, declared_total: int) -> AggregateLoad:
        """Make the full history for *address* resident and return it.

        Joins an in-flight aggregation when one exists, otherwise reuses a
        matching artifact or fetches afresh.
        """
        key = address or base_uri
        if key in self.registry:
            logger.info(f"Aggregation already in progress for {key}, waiting for it")
            try:
                load = await self.registry.join(key)
                return AggregateLoad(load.artifact, was_cached=True)
            except (UpstreamError, OSError) as e:
                logger.warning(f"In-flight aggregation for {key} failed, fetching fresh: {e}")

        task, _ = self.registry.get_or_create(
            key, lambda: self._load_or_fetch(address, base_uri, declared_total)
        )
        return await asyncio.shield(task)

    async def preload(self, address: str, declared_total: int,
                      base_uri: Optional[str] = None) -> PreloadResult:
        """Warm the artifact for *address* ahead of any aggregate request."""
        base_uri = base_uri or self.client.transactions_url(address)
        task, created = self.registry.get_or_create(
            address, lambda: self._load_or_fetch(address, base_uri, declared_total)
        )
        if not created:
            logger.info(f"Preloading already in progress for {address}")
        load = await asyncio.shield(task)
        return PreloadResult(
            batch_count=load.artifact.batch_count,
            total_count=load.artifact.declared_total or declared_total,
            was_cached=load.was_cached,
        )

    async def _load_or_fetch(self, address: Optional[str], base_uri: str,
                             declared_total: int) -> AggregateLoad:
        existing = await asyncio.to_thread(self.read)
        if existing is not None and address and existing.matches(address, declared_total):
            logger.info(f"Found complete cached data for {address} "
                        f"({existing.batch_count} batches, fetched {existing.fetched_at})")
            return AggregateLoad(existing, was_cached=True)
        if existing is not None:
            logger.info(f"Cached data is for {existing.address} ({existing.declared_total} txs), "
                        f"need {address} ({declared_total} txs); refetching")

        logger.info(f"Fetching ALL {declared_total} transactions from {base_uri}")
        pages = await self.fetch_all_pages(base_uri, declared_total)
        artifact = AggregationArtifact(
            address=address,
            declared_total=declared_total,
            batches=pages,
            fetched_at=datetime.now(timezone.utc).isoformat(),
        )
        await asyncio.to_thread(write_artifact, self.path, artifact)
        logger.info(f"Saved {artifact.batch_count} batches to {self.path}")
        return AggregateLoad(artifact, was_cached=False)
