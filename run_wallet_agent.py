#!/usr/bin/env python3
"""
Stacks Wallet Agent - command line

Usage:
    python run_wallet_agent.py wallet ST1ABC...
    python run_wallet_agent.py preload ST1ABC...
    python run_wallet_agent.py ask ST1ABC... "Who received the most STX from this wallet?"
    python run_wallet_agent.py ask ST1ABC... "Chart my monthly activity" --verbose

Settings come from ~/.wallet-agent/.env, ~/.wallet-agent/config.yaml and the
environment (HUGGINGFACE_API_KEY, WALLET_AGENT_MODEL, STACKS_API_BASE, ...).
"""

import asyncio
import json
import logging

import fire

from wallet_agent.config import AgentSettings, setup_logging, validate_settings
from wallet_agent.errors import WalletAgentError
from wallet_agent.orchestrator import WalletAgent

logger = logging.getLogger(__name__)


def _build_agent(verbose: bool, model: str = None) -> WalletAgent:
    setup_logging(verbose)
    settings = AgentSettings.load()
    if model:
        settings.model = model
    for problem in validate_settings(settings):
        logger.warning(problem)
    return WalletAgent(settings)


async def _wallet(address: str, verbose: bool) -> dict:
    async with _build_agent(verbose) as agent:
        data = await agent.fetch_wallet(address)
    return data.to_dict()


async def _preload(address: str, verbose: bool) -> dict:
    async with _build_agent(verbose) as agent:
        data = await agent.fetch_wallet(address)
        result = await agent.preload(data)
    return result.to_dict()


async def _ask(address: str, question: str, agent_mode: bool, model: str, verbose: bool) -> str:
    async with _build_agent(verbose, model) as agent:
        data = await agent.fetch_wallet(address)
        return await agent.handle_chat(question, data, agent_mode=agent_mode)


def wallet(address: str, verbose: bool = False):
    """
    Print the wallet snapshot (balances and most recent transactions) as JSON.

    Args:
        address (str): Stacks address
        verbose (bool): Enable debug logging
    """
    try:
        print(json.dumps(asyncio.run(_wallet(address, verbose)), indent=2))
    except WalletAgentError as e:
        print(f"❌ Failed to fetch wallet data: {e}")


def preload(address: str, verbose: bool = False):
    """
    Fetch the full transaction history for an address into the local artifact.

    Args:
        address (str): Stacks address
        verbose (bool): Enable debug logging
    """
    try:
        result = asyncio.run(_preload(address, verbose))
    except (WalletAgentError, OSError) as e:
        print(f"❌ Preload failed: {e}")
        return
    source = "already cached" if result["was_cached"] else "fetched"
    print(f"✅ {result['batch_count']} batches ({result['total_count']} transactions) {source}")


def ask(address: str, question: str, agent_mode: bool = True, model: str = None,
        verbose: bool = False):
    """
    Ask a question about a wallet.

    Args:
        address (str): Stacks address
        question (str): Natural language question
        agent_mode (bool): Let the model fetch and analyse more data. Defaults to True.
        model (str): Override the configured model
        verbose (bool): Enable debug logging
    """
    try:
        print(asyncio.run(_ask(address, question, agent_mode, model, verbose)))
    except WalletAgentError as e:
        print(f"❌ {e}")


def main():
    fire.Fire({
        "wallet": wallet,
        "preload": preload,
        "ask": ask,
    })


if __name__ == "__main__":
    main()
