"""
WalletAgent -- the orchestration boundary.

A question goes through at most three model calls:

1. the question prompt (wallet context, plus the action protocol in agent
   mode), answered either in prose or with a ``use_agent`` action;
2. after the action has run, an explanatory call over the fetched data;
3. if that answer is a refusal or too short and code analysis produced a
   result, one retry that puts the result front and centre.

Self-repair calls for failing analysis code happen inside step 2's action
and are not counted here.

Every error raised below this class is turned into a plain-language reply
here. Callers never see an exception or the raw action JSON.
"""

import json
import logging
from typing import Any, List, Optional, Sequence, Tuple

from wallet_agent.action_protocol import (
    ActionMode,
    AgentAction,
    looks_like_agent_action,
    parse_agent_action,
)
from wallet_agent.config import AgentSettings
from wallet_agent.errors import ModelError, ProtocolError, UpstreamError, WalletAgentError
from wallet_agent.llm_client import CompletionFn, LLMClient, Message
from wallet_agent.modes import (
    AggregateExecuteExecutor,
    DirectFetchExecutor,
    PatternSearchExecutor,
)
from wallet_agent.prompts import (
    AGENT_FAILURE_MESSAGE,
    AGENT_MODE_REQUIRED_MESSAGE,
    AGENT_SYSTEM_PROMPT,
    ANSWER_SYSTEM_PROMPT,
    CHAT_SYSTEM_PROMPT,
    NO_ANSWER_MESSAGE,
    NO_API_KEY_MESSAGE,
    RETRY_SYSTEM_PROMPT,
    UNAVAILABLE_MESSAGE,
    UPSTREAM_FAILURE_MESSAGE,
    build_enhanced_context,
    build_question_prompt,
    build_result_retry_context,
    clean_model_text,
    extract_graph_payload,
    is_graph_payload,
    is_inadequate_answer,
    render_analysis_result,
    render_fetched_data,
)
from wallet_agent.self_repair import RepairOutcome, SelfRepairController
from wallet_constants import AGENT_EXECUTE_PREFIX, DEFAULT_TOTAL_TRANSACTIONS
from wallet_tools.aggregation_store import AggregationStore, PreloadResult
from wallet_tools.code_runner import CodeRunner
from wallet_tools.explorer_client import ExplorerClient, WalletData
from wallet_tools.response_cache import TTLStore

logger = logging.getLogger(__name__)


def parse_agent_execute(question: str) -> Tuple[str, str]:
    """Split ``AGENT_EXECUTE:<action json>:<original question>``.

    The question follows the *last* colon, since the action JSON itself is
    full of colons.
    """
    if not question.startswith(AGENT_EXECUTE_PREFIX):
        raise ProtocolError("Not an agent execute request")
    content = question[len(AGENT_EXECUTE_PREFIX):]
    agent_response, sep, original_question = content.rpartition(":")
    if not sep:
        raise ProtocolError("Invalid agent execute format")
    return agent_response, original_question


class WalletAgent:
    """Answers questions about a wallet, fetching and analysing more data on demand."""

    def __init__(
        self,
        settings: Optional[AgentSettings] = None,
        complete: Optional[CompletionFn] = None,
        client: Optional[ExplorerClient] = None,
        cache: Optional[TTLStore] = None,
        store: Optional[AggregationStore] = None,
        runner: Optional[CodeRunner] = None,
    ):
        self.settings = settings or AgentSettings()
        s = self.settings

        self.llm: Optional[LLMClient] = None
        if complete is None and s.api_key:
            self.llm = LLMClient(s.api_key, base_url=s.llm_base_url, model=s.model)
            complete = self.llm.complete
        self.complete = complete

        self.client = client or ExplorerClient(s.explorer_base_url, timeout=s.request_timeout_s)
        self.store = store or AggregationStore(self.client, s.artifact_dir)
        self.direct = DirectFetchExecutor(self.client, cache if cache is not None else TTLStore(s.cache_ttl_s))
        self.search = PatternSearchExecutor(self.client)
        self.aggregate = AggregateExecuteExecutor(
            self.store,
            runner or CodeRunner(s.code_timeout_s, s.code_memory_limit_mb),
            max_attempts=s.max_code_attempts,
        )
        self.repair = SelfRepairController(self.aggregate, self._complete, s.model, s.max_code_attempts)

    async def __aenter__(self) -> "WalletAgent":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.close()
        if self.llm is not None:
            await self.llm.close()

    async def _complete(self, messages: List[Message], model: Optional[str] = None) -> str:
        if self.complete is None:
            raise ModelError("No language-model API key configured")
        return await self.complete(messages, model or self.settings.model)

    # ── Wallet data ──────────────────────────────────────────

    async def fetch_wallet(self, address: str) -> WalletData:
        return await self.client.fetch_wallet_data(address)

    async def preload(self, wallet: WalletData) -> PreloadResult:
        """Warm the full-history artifact so a later analysis starts immediately."""
        total = wallet.total_transactions or DEFAULT_TOTAL_TRANSACTIONS
        return await self.store.preload(wallet.address, total)

    # ── Questions ────────────────────────────────────────────

    async def ask(self, question: str, wallet: WalletData, agent_mode: bool = False,
                  history: Sequence[Message] = (), auto_execute: bool = True) -> str:
        """Answer *question*; in agent mode, run any action the model asks for.

        With ``auto_execute=False`` a model action is returned as raw JSON so a
        front end can send it back through the ``AGENT_EXECUTE:`` convention.
        """
        if self.complete is None:
            return NO_API_KEY_MESSAGE

        messages = [
            {"role": "system", "content": AGENT_SYSTEM_PROMPT if agent_mode else CHAT_SYSTEM_PROMPT},
            *history,
            {"role": "user", "content": build_question_prompt(question, wallet, agent_mode,
                                                              self.settings.explorer_base_url)},
        ]
        logger.info(f"Question (agent_mode={agent_mode}): {question}")
        try:
            reply = await self._complete(messages)
        except ModelError as e:
            logger.error(f"Question call failed: {e}")
            return UNAVAILABLE_MESSAGE

        if looks_like_agent_action(reply):
            if not agent_mode:
                logger.info("Model asked for more data outside agent mode")
                return AGENT_MODE_REQUIRED_MESSAGE
            if not auto_execute:
                return reply.strip()
            return await self.execute_action(reply, question, wallet, history)
        return self.shape_answer(reply)

    def shape_answer(self, reply: str) -> str:
        graph = extract_graph_payload(reply)
        if graph is not None:
            logger.info("Graph protocol detected in reply")
            return json.dumps(graph)
        answer = clean_model_text(reply)
        return answer or NO_ANSWER_MESSAGE

    async def execute_action(self, agent_response: str, question: str, wallet: WalletData,
                             history: Sequence[Message] = ()) -> str:
        """Run the action in *agent_response* and explain its result."""
        if self.complete is None:
            return NO_API_KEY_MESSAGE
        try:
            action = parse_agent_action(agent_response)
            data, repair = await self.run_action(action, question, wallet, history)
        except ProtocolError as e:
            logger.warning(f"Unusable agent action: {e}")
            return AGENT_FAILURE_MESSAGE
        except UpstreamError as e:
            logger.error(f"Upstream request failed: {e}")
            return UPSTREAM_FAILURE_MESSAGE
        except (WalletAgentError, OSError) as e:
            logger.error(f"Agent action failed: {e}")
            return AGENT_FAILURE_MESSAGE

        if repair is not None and repair.succeeded and is_graph_payload(repair.result):
            logger.info("Analysis result is a graph, returning it as-is")
            return json.dumps(repair.result)

        return await self.explain(question, wallet, action, data, repair, history)

    async def run_action(self, action: AgentAction, question: str, wallet: WalletData,
                         history: Sequence[Message] = ()) -> Tuple[Any, Optional[RepairOutcome]]:
        """Dispatch *action* to its executor. Returns ``(data, repair_outcome)``."""
        total = wallet.total_transactions or DEFAULT_TOTAL_TRANSACTIONS
        mode = action.mode
        logger.info(f"Running {mode.value} for {action.uri}")

        if mode is ActionMode.AGGREGATE_EXECUTE:
            repair = await self.repair.run(action.uri, action.code, total, question, history)
            return repair.to_result(), repair
        if mode is ActionMode.PATTERN_SEARCH:
            return await self.search.run(action.uri, action.regex, total), None
        return await self.direct.run(action.uri, action.uri_data), None

    async def explain(self, question: str, wallet: WalletData, action: AgentAction, data: Any,
                      repair: Optional[RepairOutcome] = None,
                      history: Sequence[Message] = ()) -> str:
        """Second model call: turn fetched or computed data into an answer."""
        messages = [
            {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
            *history,
            {"role": "user", "content": build_enhanced_context(question, wallet, action.uri, data)},
        ]
        try:
            reply = await self._complete(messages)
        except ModelError as e:
            logger.error(f"Explanatory call failed: {e}")
            if repair is not None and repair.succeeded:
                return render_analysis_result(repair.result)
            return (
                "I fetched additional data for your question but could not process it right now. "
                f"Try a more specific question about {wallet.address}."
            )

        graph = extract_graph_payload(reply)
        if graph is not None:
            return json.dumps(graph)

        answer = clean_model_text(reply)
        if not is_inadequate_answer(answer):
            return answer

        logger.info("Answer inadequate, falling back")
        if repair is not None and repair.succeeded:
            return await self.retry_with_result(question, repair, history)
        if repair is not None:
            return (
                f"I could not complete the analysis of the full transaction history "
                f"({repair.last_error}). Try a narrower question."
            )
        return render_fetched_data(question, data, wallet)

    async def retry_with_result(self, question: str, repair: RepairOutcome,
                                history: Sequence[Message] = ()) -> str:
        batch_count = repair.outcome.batch_count
        messages = [
            {"role": "system", "content": RETRY_SYSTEM_PROMPT},
            *history,
            {"role": "user", "content": build_result_retry_context(question, repair.result, batch_count)},
        ]
        try:
            reply = clean_model_text(await self._complete(messages))
        except ModelError as e:
            logger.error(f"Retry call failed: {e}")
            reply = ""
        if reply and not is_inadequate_answer(reply):
            return reply
        return render_analysis_result(repair.result)

    async def handle_chat(self, question: str, wallet: WalletData, agent_mode: bool = False,
                          history: Sequence[Message] = ()) -> str:
        """Entry point for chat requests, honouring the ``AGENT_EXECUTE:`` prefix."""
        if question.startswith(AGENT_EXECUTE_PREFIX):
            agent_response, original_question = parse_agent_execute(question)
            return await self.execute_action(agent_response, original_question, wallet, history)
        return await self.ask(question, wallet, agent_mode, history)
