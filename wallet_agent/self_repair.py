"""
Self-repair loop for aggregate+execute actions.

States and transitions:

    EXECUTING    -> SUCCEEDED     code exited 0
    EXECUTING    -> AWAITING_FIX  code failed, attempts remain
    EXECUTING    -> FAILED        code failed on the last attempt
    AWAITING_FIX -> EXECUTING     model returned replacement code (attempt + 1)
    AWAITING_FIX -> FAILED        model call errored or returned nothing

Phase 1 (aggregation) runs once before the loop; every EXECUTING step
re-runs only Phase 2 against the same snapshot of the artifact.
"""

import dataclasses
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from wallet_agent.errors import ModelError
from wallet_agent.llm_client import CompletionFn, Message
from wallet_agent.modes import (
    AggregateExecuteExecutor,
    ExecutionFailure,
    ExecutionOutcome,
    ExecutionSuccess,
    pro_result,
)
from wallet_agent.prompts import FIX_SYSTEM_PROMPT, build_fix_prompt, strip_code_fences
from wallet_constants import MAX_CODE_ATTEMPTS, PRO_RESULT_KEY

logger = logging.getLogger(__name__)


class RepairState(enum.Enum):
    EXECUTING = "executing"
    AWAITING_FIX = "awaiting_fix"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = (RepairState.SUCCEEDED, RepairState.FAILED)


@dataclass
class RetryState:
    attempt: int
    max_attempts: int
    current_code: str
    last_error: Optional[str] = None
    state: RepairState = RepairState.EXECUTING


@dataclass
class RepairOutcome:
    state: RepairState
    attempts: int
    outcome: Optional[ExecutionOutcome]
    final_code: str
    last_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is RepairState.SUCCEEDED

    @property
    def result(self):
        return self.outcome.result if isinstance(self.outcome, ExecutionSuccess) else None

    def to_result(self):
        if self.outcome is None:
            return {PRO_RESULT_KEY: {
                "success": False,
                "error": True,
                "needs_code_fix": False,
                "error_message": self.last_error or "Analysis code was never executed",
                "attempt": self.attempts,
                "original_code": self.final_code,
            }}
        return pro_result(self.outcome)


class SelfRepairController:
    """Runs analysis code and asks the model to fix it until it works or attempts run out."""

    def __init__(self, executor: AggregateExecuteExecutor, complete: CompletionFn,
                 model: Optional[str] = None, max_attempts: int = MAX_CODE_ATTEMPTS):
        self.executor = executor
        self.complete = complete
        self.model = model
        if max_attempts < 1:
            logger.warning(f"max_attempts={max_attempts} is below 1, running the code once")
        self.max_attempts = max(1, max_attempts)

    async def request_fix(self, question: str, failure: ExecutionFailure,
                          history: Sequence[Message] = ()) -> str:
        """Replacement code from the model, fences stripped. Empty string if none."""
        messages: List[Message] = [
            {"role": "system", "content": FIX_SYSTEM_PROMPT},
            *history,
            {"role": "user", "content": build_fix_prompt(question, failure)},
        ]
        reply = await self.complete(messages, self.model)
        return strip_code_fences(reply or "")

    async def run(self, base_uri: str, code: str, total_count: int, question: str,
                  history: Sequence[Message] = ()) -> RepairOutcome:
        artifact = await self.executor.acquire(base_uri, total_count)
        retry = RetryState(attempt=1, max_attempts=self.max_attempts, current_code=code)
        outcome: Optional[ExecutionOutcome] = None

        async with self.executor.workspace(artifact) as workdir:
            while retry.state not in TERMINAL_STATES and retry.attempt <= retry.max_attempts:
                if retry.state is RepairState.EXECUTING:
                    outcome = await self.executor.execute(
                        retry.current_code, artifact, workdir,
                        attempt=retry.attempt, max_retries=retry.max_attempts,
                    )
                    if isinstance(outcome, ExecutionSuccess):
                        retry.state = RepairState.SUCCEEDED
                    else:
                        retry.last_error = outcome.error_message
                        retry.state = RepairState.AWAITING_FIX if outcome.needs_code_fix else RepairState.FAILED
                    continue

                # AWAITING_FIX
                logger.info(f"Asking the model to fix the code (attempt {retry.attempt}/{retry.max_attempts})")
                try:
                    fixed = await self.request_fix(question, outcome, history)
                    reason = "model returned no code"
                except ModelError as e:
                    logger.error(f"Failed to get code fix from model: {e}")
                    fixed, reason = "", str(e)
                if not fixed:
                    retry.last_error = (f"Failed to fix code automatically ({reason}). "
                                        f"Last error: {outcome.error_message}")
                    outcome = dataclasses.replace(outcome, error_message=retry.last_error, needs_code_fix=False)
                    retry.state = RepairState.FAILED
                    continue

                logger.debug(f"Model provided fixed code: {fixed[:100]}...")
                retry.current_code = fixed
                retry.attempt += 1
                retry.state = RepairState.EXECUTING

        if retry.state not in TERMINAL_STATES:
            retry.state = RepairState.FAILED

        attempts = min(retry.attempt, retry.max_attempts)
        if retry.state is RepairState.SUCCEEDED:
            logger.info(f"Analysis code succeeded after {attempts} attempt(s)")
        else:
            logger.warning(f"Analysis code failed after {attempts} attempt(s): {retry.last_error}")
        return RepairOutcome(
            state=retry.state,
            attempts=attempts,
            outcome=outcome,
            final_code=retry.current_code,
            last_error=retry.last_error,
        )
