"""
Executors for the three agent action modes.

DirectFetchExecutor
    One request, answered from the response cache when the same
    (uri, uri_data) pair was fetched in the last five minutes.

PatternSearchExecutor
    Pages through the whole history, five pages per round, and stops at the
    first page whose compact JSON matches the pattern. Within a round pages
    are checked in offset order, not in the order their responses arrived.

AggregateExecuteExecutor
    Phase 1 makes the full history resident through the AggregationStore
    (shared with the background preloader). Phase 2 runs a code snippet
    against it in the sandbox and reports either an ExecutionSuccess or an
    ExecutionFailure. Retrying failed code is the self-repair controller's
    job; this class only ever runs Phase 2 once per call.
"""

import asyncio
import contextlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Union

from wallet_agent.errors import ExecutionError, ProtocolError
from wallet_constants import (
    ARTIFACT_FILE_NAME,
    FLASH_RESULT_KEY,
    MAX_CODE_ATTEMPTS,
    MAX_CONCURRENT_PAGES,
    PAGE_SIZE,
    PRO_RESULT_KEY,
    SEARCH_ROUND_DELAY_S,
)
from wallet_tools.aggregation_store import (
    ARTIFACT_DATA_SHAPE,
    AggregationArtifact,
    AggregationStore,
    address_from_uri,
)
from wallet_tools.code_runner import (
    CodeRunner,
    parse_result,
    prepare_workspace,
    remove_workspace,
)
from wallet_tools.explorer_client import ExplorerClient
from wallet_tools.response_cache import TTLStore, request_fingerprint

logger = logging.getLogger(__name__)


# =============================================================================
# Direct fetch
# =============================================================================

class DirectFetchExecutor:
    def __init__(self, client: ExplorerClient, cache: Optional[TTLStore] = None):
        self.client = client
        self.cache = cache if cache is not None else TTLStore()

    async def run(self, uri: str, uri_data: Any = None) -> Any:
        """Fetch *uri* (POSTing *uri_data* when given); UpstreamError on failure."""
        key = request_fingerprint(uri, uri_data)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"Cache hit for {uri}")
            return cached

        logger.info(f"Fetching {uri}")
        data = await self.client.request_json(uri, body=uri_data)
        self.cache.set(key, data)
        return data


# =============================================================================
# Pattern search
# =============================================================================

_DELIMITED = re.compile(r"^/(?P<body>.*)/[a-z]*$", re.DOTALL)


def compile_search_pattern(pattern: str) -> "re.Pattern":
    """Compile a ``/.../``-delimited or bare pattern, always case-insensitive."""
    match = _DELIMITED.match(pattern.strip())
    body = match.group("body") if match else pattern.strip()
    try:
        return re.compile(body, re.IGNORECASE)
    except re.error as e:
        raise ProtocolError(f"Invalid search pattern {pattern!r}: {e}") from e


class PatternSearchExecutor:
    def __init__(self, client: ExplorerClient, page_size: int = PAGE_SIZE,
                 concurrency: int = MAX_CONCURRENT_PAGES,
                 round_delay_s: float = SEARCH_ROUND_DELAY_S):
        self.client = client
        self.page_size = page_size
        self.concurrency = concurrency
        self.round_delay_s = round_delay_s

    async def run(self, base_uri: str, pattern: str, total_count: int) -> Dict[str, Any]:
        regex = compile_search_pattern(pattern)
        logger.info(f"Searching {total_count} transactions at {base_uri} for {pattern}")

        offset = 0
        while offset < total_count:
            offsets = [
                offset + i * self.page_size
                for i in range(self.concurrency)
                if offset + i * self.page_size < total_count
            ]
            pages = await asyncio.gather(
                *(self.client.fetch_page(base_uri, self.page_size, o) for o in offsets)
            )
            for page_offset, page in zip(offsets, pages):
                if page is None:
                    continue
                if regex.search(json.dumps(page, separators=(",", ":"))):
                    logger.info(f"Match found at offset {page_offset}")
                    return {
                        **page,
                        FLASH_RESULT_KEY: {
                            "match_offset": page_offset,
                            "pattern": pattern,
                            "total_searched": page_offset + self.page_size,
                        },
                    }

            offset += self.page_size * self.concurrency
            if offset < total_count:
                await asyncio.sleep(self.round_delay_s)

        logger.info(f"No match for {pattern} in {total_count} transactions")
        return {
            FLASH_RESULT_KEY: {
                "search_completed": True,
                "total_searched": min(offset, total_count),
                "pattern": pattern,
                "no_match_found": True,
            }
        }


# =============================================================================
# Aggregate + execute
# =============================================================================

@dataclass
class ExecutionSuccess:
    result: Any
    batch_count: int
    attempt: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "result": self.result,
            "batch_count": self.batch_count,
            "attempt": self.attempt,
            "file_name": ARTIFACT_FILE_NAME,
        }


@dataclass
class ExecutionFailure:
    """A failed Phase 2 run, with everything a corrective prompt needs."""

    error_message: str
    original_code: str
    attempt: int
    max_retries: int
    batch_count: int
    stderr_text: str = ""
    needs_code_fix: bool = True
    data_structure_description: Dict[str, str] = field(default_factory=lambda: dict(ARTIFACT_DATA_SHAPE))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": True,
            "needs_code_fix": self.needs_code_fix,
            "error_message": self.error_message,
            "stderr_text": self.stderr_text,
            "original_code": self.original_code,
            "attempt": self.attempt,
            "max_retries": self.max_retries,
            "batch_count": self.batch_count,
            "file_name": ARTIFACT_FILE_NAME,
            "data_structure_description": self.data_structure_description,
        }


ExecutionOutcome = Union[ExecutionSuccess, ExecutionFailure]


def pro_result(outcome: ExecutionOutcome) -> Dict[str, Any]:
    """Wrap an outcome the way the explanatory prompt expects it."""
    return {PRO_RESULT_KEY: outcome.to_dict()}


class AggregateExecuteExecutor:
    def __init__(self, store: AggregationStore, runner: CodeRunner,
                 max_attempts: int = MAX_CODE_ATTEMPTS):
        self.store = store
        self.runner = runner
        self.max_attempts = max(1, max_attempts)

    async def acquire(self, base_uri: str, total_count: int) -> AggregationArtifact:
        """Phase 1: the complete history for the address in *base_uri*."""
        address = address_from_uri(base_uri)
        load = await self.store.acquire(address, base_uri, total_count)
        source = "cached" if load.was_cached else "fresh"
        logger.info(f"Using {source} aggregate for {address or base_uri}: {load.artifact.batch_count} batches")
        return load.artifact

    @contextlib.asynccontextmanager
    async def workspace(self, artifact: AggregationArtifact) -> AsyncIterator[Path]:
        """Private run directory holding a snapshot of *artifact*."""
        workdir = await asyncio.to_thread(prepare_workspace, artifact)
        try:
            yield workdir
        finally:
            await asyncio.to_thread(remove_workspace, workdir)

    async def execute(self, code: str, artifact: AggregationArtifact, workdir: Path,
                      attempt: int = 1, max_retries: Optional[int] = None) -> ExecutionOutcome:
        """Phase 2: run *code* once against the artifact in *workdir*."""
        max_retries = max_retries or self.max_attempts
        logger.info(f"Executing analysis code (attempt {attempt}/{max_retries})")
        try:
            run = await self.runner.run(code, workdir)
        except ExecutionError as e:
            error_message, stderr = str(e), e.stderr
        else:
            if run.ok:
                return ExecutionSuccess(parse_result(run.stdout), artifact.batch_count, attempt)
            error_message, stderr = run.error_message, run.stderr

        logger.warning(f"Code execution error (attempt {attempt}/{max_retries}): {error_message}")
        if attempt >= max_retries:
            return ExecutionFailure(
                error_message=f"Max retries ({max_retries}) reached. Final error: {error_message}",
                stderr_text=stderr,
                original_code=code,
                attempt=attempt,
                max_retries=max_retries,
                batch_count=artifact.batch_count,
                needs_code_fix=False,
            )
        return ExecutionFailure(
            error_message=error_message,
            stderr_text=stderr,
            original_code=code,
            attempt=attempt,
            max_retries=max_retries,
            batch_count=artifact.batch_count,
        )

    async def run(self, base_uri: str, code: str, total_count: int) -> ExecutionOutcome:
        """Both phases, single attempt."""
        artifact = await self.acquire(base_uri, total_count)
        async with self.workspace(artifact) as workdir:
            return await self.execute(code, artifact, workdir)
