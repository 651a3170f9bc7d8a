"""Data and execution tools driven by the wallet agent.

- ``explorer_client``: async Hiro explorer API client
- ``response_cache``: TTL store for direct-fetch responses
- ``inflight``: per-key coalescing of long-running async work
- ``aggregation_store``: full-history artifact fetch, persistence and preload
- ``code_runner``: isolated subprocess execution of analysis snippets
"""
