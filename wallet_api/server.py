#!/usr/bin/env python3
"""
Stacks Wallet Agent - HTTP API

Routes:
    POST /api/wallet                  {address}            -> {walletData}
    POST /api/chat                    {question, walletData, agentMode?, conversationHistory?}
                                                           -> {answer}
    POST /api/preload-transactions    {walletData}         -> {success, message, batch_count, ...}
    GET  /health

A chat question of the form ``AGENT_EXECUTE:<action json>:<question>``
executes an action the model returned earlier instead of asking afresh.

Request bodies accept the camelCase keys the browser front end sends as
well as snake_case.

Usage:
    python -m wallet_api.server --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from wallet_agent.config import AgentSettings, setup_logging, validate_settings
from wallet_agent.errors import WalletAgentError
from wallet_agent.orchestrator import WalletAgent
from wallet_tools.explorer_client import WalletData

logger = logging.getLogger(__name__)


# Request models
class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WalletRequest(_Request):
    address: Optional[str] = None


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatRequest(_Request):
    question: Optional[str] = None
    wallet_data: Optional[Dict[str, Any]] = Field(default=None, alias="walletData")
    agent_mode: bool = Field(default=False, alias="agentMode")
    conversation_history: List[ChatMessage] = Field(default_factory=list, alias="conversationHistory")


class PreloadRequest(_Request):
    wallet_data: Optional[Dict[str, Any]] = Field(default=None, alias="walletData")


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _wallet_from(data: Optional[Dict[str, Any]]) -> Optional[WalletData]:
    if not data or not data.get("address"):
        return None
    return WalletData.from_dict(data)


def create_app(agent: Optional[WalletAgent] = None) -> FastAPI:
    """Build the API around *agent* (created from loaded settings if omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal agent
        if agent is None:
            settings = AgentSettings.load()
            for problem in validate_settings(settings):
                logger.warning(problem)
            agent = WalletAgent(settings)
        app.state.agent = agent
        yield
        await agent.close()

    app = FastAPI(
        title="Stacks Wallet Agent",
        description="Chat with a language model about a Stacks wallet's on-chain history",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "Stacks Wallet Agent"}

    @app.post("/api/wallet")
    async def wallet(request: WalletRequest):
        if not request.address:
            return _error("Wallet address is required", 400)
        try:
            data = await app.state.agent.fetch_wallet(request.address)
        except WalletAgentError as e:
            logger.error(f"Wallet API error: {e}")
            return _error("Failed to fetch wallet data", 500)
        return {"walletData": data.to_dict()}

    @app.post("/api/chat")
    async def chat(request: ChatRequest):
        wallet_data = _wallet_from(request.wallet_data)
        if not request.question or wallet_data is None:
            return _error("Question and wallet data are required", 400)
        history = [m.model_dump() for m in request.conversation_history]
        try:
            answer = await app.state.agent.handle_chat(
                request.question, wallet_data, agent_mode=request.agent_mode, history=history,
            )
        except WalletAgentError as e:
            logger.error(f"Chat API error: {e}")
            return _error("Failed to process question", 500)
        return {"answer": answer}

    @app.post("/api/preload-transactions")
    async def preload_transactions(request: PreloadRequest):
        wallet_data = _wallet_from(request.wallet_data)
        if wallet_data is None:
            return _error("Wallet data is required", 400)
        try:
            result = await app.state.agent.preload(wallet_data)
        except (WalletAgentError, OSError) as e:
            logger.error(f"Preload API error: {e}")
            return _error("Failed to preload transaction data", 500)
        return {
            "success": True,
            "message": "Transaction data preloaded successfully",
            **result.to_dict(),
        }

    return app


def main(host: str = "0.0.0.0", port: int = 8000, verbose: bool = False):
    """
    Start the API server.

    Args:
        host: Host to bind to (default: 0.0.0.0)
        port: Port to run on (default: 8000)
        verbose: Enable debug logging
    """
    setup_logging(verbose)
    uvicorn.run(create_app(), host=host, port=port, log_level="debug" if verbose else "info")


if __name__ == "__main__":
    import fire
    fire.Fire(main)
