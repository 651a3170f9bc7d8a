"""Tests for wallet_agent.prompts -- prompt assembly and answer shaping."""

import json

from tests.fakes.fake_explorer import ADDRESS, make_transaction, make_transactions
from wallet_agent.modes import ExecutionFailure
from wallet_agent.prompts import (
    build_enhanced_context,
    build_fix_prompt,
    build_question_prompt,
    build_wallet_context,
    clean_model_text,
    describe_transaction,
    extract_graph_payload,
    format_stx,
    is_inadequate_answer,
    render_analysis_result,
    render_fetched_data,
    strip_code_fences,
)
from wallet_tools.explorer_client import WalletData


def _wallet(count=5, total=120):
    return WalletData(
        address=ADDRESS,
        balance={"stx": {"balance": "5000000", "total_sent": "2000000", "total_received": "7000000"}},
        transactions=make_transactions(ADDRESS, count),
        total_transactions=total,
    )


class TestFormatting:
    def test_format_stx(self):
        assert format_stx("1500000") == "1.500000"
        assert format_stx(None) == "0.000000"

    def test_describe_token_transfer_with_memo(self):
        tx = make_transaction(1, ADDRESS, recipient="ST3BOB")
        tx["token_transfer"]["memo"] = "0x" + "hello".encode().hex() + "00" * 29
        text = describe_transaction(1, tx)
        assert "TRANSACTION #1: TOKEN_TRANSFER" in text
        assert "Recipient: ST3BOB" in text
        assert "Amount Transferred: 1.000000 STX" in text
        assert 'Memo: "hello"' in text

    def test_empty_memo_omitted(self):
        assert "Memo" not in describe_transaction(1, make_transaction(1, ADDRESS))

    def test_contract_call(self):
        text = describe_transaction(2, make_transaction(2, ADDRESS, tx_type="contract_call"))
        assert "Contract: ST000.game" in text
        assert "Function: submit-score" in text


class TestWalletContext:
    def test_summary(self):
        context = build_wallet_context(_wallet())
        assert f"COMPREHENSIVE WALLET ANALYSIS FOR: {ADDRESS}" in context
        assert "Current STX Balance: 5.000000 STX" in context
        assert "Net Balance Change: 5.000000 STX" in context
        assert "Missing Transactions: 115 older transactions" in context
        assert "1. ST3RECIPIENT0" in context

    def test_unknown_total(self):
        context = build_wallet_context(_wallet(total=None))
        assert "Total Transactions Available: Unknown" in context

    def test_detail_is_capped(self):
        context = build_wallet_context(_wallet(count=30))
        assert "TRANSACTION #15:" in context
        assert "TRANSACTION #16:" not in context

    def test_question_prompt_modes(self):
        wallet = _wallet()
        plain = build_question_prompt("Balance?", wallet)
        agent = build_question_prompt("Balance?", wallet, agent_mode=True, api_base="https://x.test/v1")
        assert "use_agent" not in plain
        assert '"action": "use_agent"' in agent
        assert f"https://x.test/v1/address/{ADDRESS}/transactions" in agent
        assert "CURRENT CONTEXT: 5 recent transactions (out of 120 total)" in agent


class TestFixPrompt:
    def test_contents(self):
        failure = ExecutionFailure(
            error_message="Process exited with code 1: TypeError: int() argument",
            original_code="print(int(None))",
            attempt=2,
            max_retries=10,
            batch_count=3,
            stderr_text="TypeError: int() argument must be ...",
        )
        prompt = build_fix_prompt("Total sent?", failure)
        assert "ATTEMPT: 2/10" in prompt
        assert "print(int(None))" in prompt
        assert "TypeError: int() argument must be" in prompt
        assert "3 batches" in prompt
        assert 'x.get(key) or default' in prompt
        assert "Batch Structure:" in prompt

    def test_strip_code_fences(self):
        assert strip_code_fences("```python\nprint(1)\n```") == "print(1)"
        assert strip_code_fences("```\nprint(1)\n```\n") == "print(1)"
        assert strip_code_fences("print(1)") == "print(1)"
        assert strip_code_fences(None) == ""


class TestEnhancedContext:
    def test_pro_success(self):
        data = {"_pro_agent": {"success": True, "result": {"count": 47}, "batch_count": 3, "attempt": 2}}
        text = build_enhanced_context("How many?", _wallet(), "https://x.test", data)
        assert "Transaction Batches Processed: 3" in text
        assert "SUCCESS after 2 attempt(s)" in text
        assert 'Result: {"count": 47}' in text

    def test_pro_failure(self):
        data = {"_pro_agent": {"success": False, "error_message": "Max retries (10) reached", "attempt": 10}}
        text = build_enhanced_context("How many?", _wallet(), "https://x.test", data)
        assert "Code Execution: ERROR" in text
        assert "Final Error: Max retries (10) reached" in text

    def test_flash_match(self):
        data = {"results": [], "_flash_agent": {"match_offset": 250, "pattern": "/x/", "total_searched": 300}}
        text = build_enhanced_context("Find x", _wallet(), "https://x.test", data)
        assert "Match Found: YES at offset 250" in text
        assert "not in the transaction history" not in text

    def test_plain_data(self):
        text = build_enhanced_context("Nonce?", _wallet(), "https://x.test/a", {"nonce": 3})
        assert "ADDITIONAL FETCHED DATA FROM https://x.test/a" in text
        assert '"nonce": 3' in text


class TestAnswerShaping:
    def test_clean_model_text(self):
        assert clean_model_text("##### Title\n| a | b |") == "### Title a b"

    def test_extract_graph_payload(self):
        graph = {"graph": "PG", "x_axis_data": ["a"], "y_axis_data": [1], "title": "t"}
        assert extract_graph_payload(json.dumps(graph)) == graph
        assert extract_graph_payload(f"```json\n{json.dumps(graph)}\n```") == graph
        assert extract_graph_payload('{"graph": "PG", "x_axis_data": []}') is None
        assert extract_graph_payload("Here is a chart: " + json.dumps(graph)) is None

    def test_inadequate(self):
        assert is_inadequate_answer("Too short.")
        assert is_inadequate_answer("I apologize, but the data provided does not include the full history.")
        assert not is_inadequate_answer("The wallet sent 12 transfers to ST3RECIPIENT0 over the last month.")

    def test_render_analysis_result(self):
        assert render_analysis_result({"count": 1}).startswith("Analysis complete:\n\n{")
        assert render_analysis_result(7) == "Result: 7"

    def test_render_fetched_receiver(self):
        data = {"results": [make_transaction(9, ADDRESS, recipient="ST3BOB")]}
        assert render_fetched_data("Who is the receiver?", data, _wallet()) == "The receiver address is ST3BOB"

    def test_render_fetched_balance(self):
        text = render_fetched_data("Balance?", {"balance": "5000000", "total_sent": "0"}, _wallet())
        assert "Current Balance: 5.000000 STX" in text

    def test_render_fetched_fallback(self):
        text = render_fetched_data("?", [1, 2, 3], _wallet())
        assert text.startswith("I fetched the data but couldn't process")
