"""Orchestration core for the Stacks wallet agent.

Module Overview
---------------

**action_protocol.py**
    Parses the ``use_agent`` JSON the model emits when it wants more data,
    tolerating prose around the object, and classifies it into one of the
    three execution modes.

**modes.py**
    The three mode executors: direct fetch (cached single request), pattern
    search (paginated regex scan that stops at the first match) and
    aggregate+execute (full-history artifact plus sandboxed code).

**self_repair.py**
    Bounded state machine that feeds failing analysis code back to the
    model for a fix and re-runs it against the already-resident artifact.

**orchestrator.py**
    ``WalletAgent`` -- question prompt, action dispatch, the second
    explanatory model call and every user-facing fallback.

**prompts.py**
    Prompt text and answer clean-up. Pure functions, no I/O.

**llm_client.py**
    Async OpenAI-compatible client for the Hugging Face router.

**config.py**, **errors.py**
    Settings loading/validation and the error taxonomy.

The package ``__init__`` imports nothing: ``wallet_tools``
depends on ``wallet_agent.errors`` and would otherwise form a cycle.
"""
