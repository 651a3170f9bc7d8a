"""
Runs model-generated analysis code against an aggregation artifact.

Each run happens in a child Python interpreter:
- started in isolated mode (``-I``: no user site-packages, PYTHON* env vars ignored)
- with a scrubbed environment (no API keys, no proxies)
- with the working directory set to a private temp dir that contains only the
  artifact, under its well-known name, and the script itself
- under CPU-time, address-space and file-size limits (POSIX only)
- killed when the wall-clock timeout expires or the awaiting task is cancelled

The snippet reports its answer by printing one line of JSON to stdout.
Stdout, stderr and the exit status are handed back untouched; deciding what
counts as success is the caller's job.

This narrows what a snippet can do but is not a security boundary: it can
still open sockets. Do not point it at untrusted models on a host you care
about.
"""

import asyncio
import json
import logging
import os
import shutil
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from wallet_agent.errors import ExecutionError
from wallet_constants import (
    ARTIFACT_FILE_NAME,
    CODE_MEMORY_LIMIT_MB,
    CODE_TIMEOUT_S,
    SCRIPT_FILE_NAME,
)
from wallet_tools.aggregation_store import AggregationArtifact

try:
    import resource
except ImportError:  # Windows
    resource = None

logger = logging.getLogger(__name__)

MAX_CAPTURED_CHARS = 20_000


@dataclass
class CodeRunResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def error_message(self) -> str:
        if self.timed_out:
            return "Code execution timed out (infinite loop suspected)"
        if self.exit_code == 0:
            return ""
        last_line = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""
        message = f"Process exited with code {self.exit_code}"
        return f"{message}: {last_line}" if last_line else message


def parse_result(stdout: str) -> Any:
    """Decode the snippet's JSON line; fall back to the raw text."""
    text = stdout.strip()
    if not text:
        return text
    try:
        return json.loads(text)
    except ValueError:
        pass
    # Stray debug prints before the result line
    last_line = text.splitlines()[-1]
    try:
        return json.loads(last_line)
    except ValueError:
        return text


def prepare_workspace(artifact: AggregationArtifact) -> Path:
    """Create a private run directory holding *artifact* as aggregated_transactions.json."""
    workdir = Path(tempfile.mkdtemp(prefix="wallet-agent-run-"))
    with open(workdir / ARTIFACT_FILE_NAME, "w", encoding="utf-8") as f:
        json.dump(artifact.to_json_dict(), f)
    return workdir


def remove_workspace(workdir: Path) -> None:
    shutil.rmtree(workdir, ignore_errors=True)


def _sandbox_env(workdir: Path) -> dict:
    return {
        "PATH": os.defpath,
        "HOME": str(workdir),
        "TMPDIR": str(workdir),
        "LANG": "C.UTF-8",
        "PYTHONIOENCODING": "utf-8",
        "AGGREGATED_TRANSACTIONS_PATH": str(workdir / ARTIFACT_FILE_NAME),
    }


def _truncate(text: str) -> str:
    if len(text) <= MAX_CAPTURED_CHARS:
        return text
    return text[:MAX_CAPTURED_CHARS] + f"\n[Truncated: {len(text):,} chars]"


class CodeRunner:
    """Executes one snippet at a time inside a prepared workspace."""

    def __init__(self, timeout_s: float = CODE_TIMEOUT_S,
                 memory_limit_mb: int = CODE_MEMORY_LIMIT_MB,
                 python: Optional[str] = None):
        self.timeout_s = timeout_s
        self.memory_limit_mb = memory_limit_mb
        self.python = python or sys.executable

    def _limit_resources(self) -> None:
        # Runs in the child between fork and exec
        cpu = int(self.timeout_s) + 1
        resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))
        if self.memory_limit_mb:
            mem = self.memory_limit_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
        resource.setrlimit(resource.RLIMIT_FSIZE, (64 * 1024 * 1024, 64 * 1024 * 1024))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

    async def run(self, code: str, workdir: Path) -> CodeRunResult:
        """Write *code* into *workdir* and execute it there."""
        script = workdir / SCRIPT_FILE_NAME
        script.write_text(code, encoding="utf-8")
        preexec = self._limit_resources if resource is not None and os.name == "posix" else None

        try:
            proc = await asyncio.create_subprocess_exec(
                self.python, "-I", str(script),
                cwd=str(workdir),
                env=_sandbox_env(workdir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                preexec_fn=preexec,
            )
        except OSError as e:
            raise ExecutionError(f"Could not start interpreter: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Snippet killed after {self.timeout_s}s")
            return CodeRunResult(
                exit_code=proc.returncode if proc.returncode is not None else -9,
                stdout="",
                stderr=f"Killed after {self.timeout_s}s",
                timed_out=True,
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            logger.info("Snippet killed on cancellation")
            raise
        finally:
            if script.exists():
                script.unlink()

        result = CodeRunResult(
            exit_code=proc.returncode,
            stdout=_truncate(stdout.decode("utf-8", errors="replace")),
            stderr=_truncate(stderr.decode("utf-8", errors="replace")),
        )
        logger.debug(f"Snippet exited with {result.exit_code} ({len(result.stdout)} bytes stdout)")
        return result
