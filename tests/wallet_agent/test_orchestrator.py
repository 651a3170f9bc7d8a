"""Tests for wallet_agent.orchestrator -- the question/action/explain flow.

The model is an AsyncMock with scripted replies; the explorer is the
in-memory fake; analysis code runs in a real child interpreter.
"""

import json
from unittest.mock import AsyncMock

import pytest

from tests.fakes.fake_explorer import ADDRESS, BASE_URL, FakeExplorer, make_transactions
from wallet_agent.config import AgentSettings
from wallet_agent.errors import ModelError, ProtocolError
from wallet_agent.orchestrator import WalletAgent, parse_agent_execute
from wallet_agent.prompts import (
    AGENT_FAILURE_MESSAGE,
    AGENT_MODE_REQUIRED_MESSAGE,
    NO_API_KEY_MESSAGE,
    UNAVAILABLE_MESSAGE,
    UPSTREAM_FAILURE_MESSAGE,
)
from wallet_tools.explorer_client import WalletData

GRAPH = {
    "graph": "VBC",
    "x_axis_data": ["ST3RECIPIENT0", "ST3RECIPIENT1"],
    "y_axis_data": [18, 17],
    "title": "Top recipients",
}

GRAPH_CODE = f"import json\nprint(json.dumps({GRAPH!r}))"

COUNT_CODE = '''import json
with open("aggregated_transactions.json") as f:
    file_data = json.load(f)
batches = file_data.get("data") or [] if isinstance(file_data, dict) else file_data
print(json.dumps({"count": sum(len(b.get("results") or []) for b in batches)}))'''

LONG_ANSWER = "The wallet has made 120 token transfers across its complete transaction history."


def _action(**fields):
    fields.setdefault("action", "use_agent")
    fields.setdefault("uri", f"{BASE_URL}/address/{ADDRESS}/transactions")
    return json.dumps(fields)


@pytest.fixture
def explorer():
    return FakeExplorer(transactions=make_transactions(ADDRESS, 120))


@pytest.fixture
def wallet(explorer):
    return WalletData(
        address=ADDRESS,
        balance=explorer.balance,
        transactions=explorer.transactions[:20],
        total_transactions=explorer.total,
    )


@pytest.fixture
def settings(tmp_path):
    return AgentSettings(
        explorer_base_url=BASE_URL,
        home=tmp_path,
        max_code_attempts=3,
        code_timeout_s=30,
    )


def _agent(settings, explorer, *replies):
    complete = AsyncMock(side_effect=list(replies))
    agent = WalletAgent(settings, complete=complete, client=explorer.client())
    agent.search.round_delay_s = 0
    agent.store.round_delay_s = 0
    return agent, complete


def _last_user_message(complete, call=-1):
    messages = complete.call_args_list[call].args[0]
    return messages[-1]["content"]


# ---------------------------------------------------------------------------
# parse_agent_execute
# ---------------------------------------------------------------------------

class TestParseAgentExecute:
    def test_splits_on_last_colon(self):
        action = _action()
        agent_response, question = parse_agent_execute(f"AGENT_EXECUTE:{action}:Who got paid?")
        assert agent_response == action
        assert question == "Who got paid?"

    def test_requires_prefix(self):
        with pytest.raises(ProtocolError):
            parse_agent_execute("hello")

    def test_requires_separator(self):
        with pytest.raises(ProtocolError):
            parse_agent_execute("AGENT_EXECUTE:no separator here")


# ---------------------------------------------------------------------------
# First call
# ---------------------------------------------------------------------------

class TestAsk:
    @pytest.mark.asyncio
    async def test_no_api_key(self, settings, explorer, wallet):
        agent = WalletAgent(settings, client=explorer.client())
        assert await agent.ask("What is my balance?", wallet) == NO_API_KEY_MESSAGE
        assert await agent.execute_action(_action(), "q", wallet) == NO_API_KEY_MESSAGE

    @pytest.mark.asyncio
    async def test_prose_answer_is_cleaned(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer, "Your balance is ***5 STX***\n\n---\nThat's it.")
        answer = await agent.ask("What is my balance?", wallet)
        assert answer == "Your balance is **5 STX** That's it."
        assert "Question: What is my balance?" in _last_user_message(complete)

    @pytest.mark.asyncio
    async def test_history_is_forwarded(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer, LONG_ANSWER)
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        await agent.ask("How many?", wallet, history=history)
        messages = complete.call_args.args[0]
        assert messages[1:3] == history

    @pytest.mark.asyncio
    async def test_model_unavailable(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, ModelError("503"))
        assert await agent.ask("What is my balance?", wallet) == UNAVAILABLE_MESSAGE

    @pytest.mark.asyncio
    async def test_graph_reply_passed_through(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, json.dumps(GRAPH))
        assert json.loads(await agent.ask("Chart my recipients", wallet)) == GRAPH

    @pytest.mark.asyncio
    async def test_agent_mode_prompt_includes_protocol(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer, LONG_ANSWER)
        await agent.ask("How many?", wallet, agent_mode=True)
        prompt = _last_user_message(complete)
        assert "AGGREGATE + EXECUTE" in prompt
        assert f"{BASE_URL}/address/{ADDRESS}/transactions" in prompt

    @pytest.mark.asyncio
    async def test_action_outside_agent_mode_is_not_run(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, _action(uri=f"{BASE_URL}/address/{ADDRESS}") + " " * 60)
        answer = await agent.ask("What is my balance?", wallet, agent_mode=False)
        assert answer == AGENT_MODE_REQUIRED_MESSAGE
        assert explorer.requests == []

    @pytest.mark.asyncio
    async def test_auto_execute_off_returns_action(self, settings, explorer, wallet):
        action = _action(uri=f"{BASE_URL}/address/{ADDRESS}")
        agent, _ = _agent(settings, explorer, action)
        assert await agent.ask("Balance?", wallet, agent_mode=True, auto_execute=False) == action
        assert explorer.requests == []


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class TestExecuteAction:
    @pytest.mark.asyncio
    async def test_direct_fetch_then_explain(self, settings, explorer, wallet):
        action = _action(uri=f"{BASE_URL}/address/{ADDRESS}/transactions?limit=1&offset=100")
        agent, complete = _agent(settings, explorer, f"Sure.\n{action}", LONG_ANSWER)

        answer = await agent.ask("Who received transaction 100?", wallet, agent_mode=True)

        assert answer == LONG_ANSWER
        assert explorer.page_offsets() == [100]
        assert "ADDITIONAL FETCHED DATA FROM" in _last_user_message(complete)

    @pytest.mark.asyncio
    async def test_pattern_search_no_match(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer, LONG_ANSWER)
        await agent.execute_action(_action(recursive=True, regex="/ST9NOBODY/"), "Did I pay ST9NOBODY?", wallet)
        prompt = _last_user_message(complete)
        assert "Match Found: NO" in prompt
        assert "not in the transaction history" in prompt

    @pytest.mark.asyncio
    async def test_aggregate_graph_returned_without_second_call(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer)
        answer = await agent.execute_action(_action(recursive=True, code=GRAPH_CODE), "Chart it", wallet)
        assert json.loads(answer) == GRAPH
        complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_aggregate_explained(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer, LONG_ANSWER)
        answer = await agent.execute_action(_action(recursive=True, code=COUNT_CODE), "How many?", wallet)
        assert answer == LONG_ANSWER
        prompt = _last_user_message(complete)
        assert "Code Execution: SUCCESS after 1 attempt(s)" in prompt
        assert '"count": 120' in prompt

    @pytest.mark.asyncio
    async def test_inadequate_answer_retried_with_result(self, settings, explorer, wallet):
        agent, complete = _agent(settings, explorer, "I cannot tell.", LONG_ANSWER)
        answer = await agent.execute_action(_action(recursive=True, code=COUNT_CODE), "How many?", wallet)
        assert answer == LONG_ANSWER
        assert complete.await_count == 2
        assert "ANALYSIS RESULT" in _last_user_message(complete)

    @pytest.mark.asyncio
    async def test_result_rendered_when_retry_also_fails(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, "I cannot tell.", "Unable to say.")
        answer = await agent.execute_action(_action(recursive=True, code=COUNT_CODE), "How many?", wallet)
        assert answer.startswith("Analysis complete:")
        assert '"count": 120' in answer

    @pytest.mark.asyncio
    async def test_result_rendered_when_explain_call_fails(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, ModelError("down"))
        answer = await agent.execute_action(_action(recursive=True, code=COUNT_CODE), "How many?", wallet)
        assert '"count": 120' in answer

    @pytest.mark.asyncio
    async def test_failed_repair_reported(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, "raise ValueError('nope')", "raise ValueError('nope')", "?")
        answer = await agent.execute_action(
            _action(recursive=True, code="raise ValueError('nope')"), "How many?", wallet
        )
        assert answer.startswith("I could not complete the analysis")
        assert "Max retries (3) reached" in answer

    @pytest.mark.asyncio
    async def test_zero_retry_budget(self, settings, explorer, wallet):
        settings.max_code_attempts = 0
        agent, _ = _agent(settings, explorer, "?")
        answer = await agent.execute_action(
            _action(recursive=True, code="raise ValueError('nope')"), "How many?", wallet
        )
        assert answer.startswith("I could not complete the analysis")
        assert "Max retries (1) reached" in answer

    @pytest.mark.asyncio
    async def test_malformed_action(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer)
        assert await agent.execute_action('{"action": "use_agent"}', "q", wallet) == AGENT_FAILURE_MESSAGE

    @pytest.mark.asyncio
    async def test_invalid_regex(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer)
        answer = await agent.execute_action(_action(recursive=True, regex="/([/"), "q", wallet)
        assert answer == AGENT_FAILURE_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fields", [
        {"uri": "http://example.com:abc/x"},
        {"uri": "http://[::1/x"},
        {"uri": "http://[::1/x", "recursive": True, "regex": "/x/"},
        {"uri": "/address/ST1/transactions", "recursive": True, "code": "print(1)"},
    ])
    async def test_malformed_uri(self, settings, explorer, wallet, fields):
        agent, complete = _agent(settings, explorer)
        answer = await agent.execute_action(_action(**fields), "q", wallet)
        assert answer == AGENT_FAILURE_MESSAGE
        assert explorer.requests == []
        complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_upstream_failure(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer)
        answer = await agent.execute_action(_action(uri=f"{BASE_URL}/blocks"), "q", wallet)
        assert answer == UPSTREAM_FAILURE_MESSAGE


class TestHandleChat:
    @pytest.mark.asyncio
    async def test_agent_execute_prefix(self, settings, explorer, wallet):
        action = _action(uri=f"{BASE_URL}/address/{ADDRESS}")
        agent, complete = _agent(settings, explorer, LONG_ANSWER)

        answer = await agent.handle_chat(f"AGENT_EXECUTE:{action}:What is my nonce?", wallet)

        assert answer == LONG_ANSWER
        assert complete.await_count == 1
        assert 'USER QUESTION: "What is my nonce?"' in _last_user_message(complete)

    @pytest.mark.asyncio
    async def test_plain_question(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer, LONG_ANSWER)
        assert await agent.handle_chat("How many?", wallet) == LONG_ANSWER


class TestPreload:
    @pytest.mark.asyncio
    async def test_preload_uses_wallet_total(self, settings, explorer, wallet):
        agent, _ = _agent(settings, explorer)
        result = await agent.preload(wallet)
        assert result.to_dict() == {"batch_count": 3, "total_count": 120, "was_cached": False}
        assert (settings.artifact_dir / "aggregated_transactions.json").exists()
