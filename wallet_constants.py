"""Shared constants for the Stacks wallet agent.

Import-safe module with no dependencies; it can be imported from anywhere
without risk of circular imports.
"""

STACKS_API_BASE = "https://api.testnet.hiro.so/extended/v1"

HF_ROUTER_BASE_URL = "https://router.huggingface.co/v1"
HF_API_KEY_ENV = "HUGGINGFACE_API_KEY"
DEFAULT_MODEL = "openai/gpt-oss-120b"

# Pagination used by both recursive modes
PAGE_SIZE = 50
MAX_CONCURRENT_PAGES = 5
SEARCH_ROUND_DELAY_S = 0.1
AGGREGATE_ROUND_DELAY_S = 0.2

# Assumed history size when the wallet summary did not report a total
DEFAULT_TOTAL_TRANSACTIONS = 1000

RESPONSE_CACHE_TTL_S = 5 * 60

MAX_CODE_ATTEMPTS = 10
CODE_TIMEOUT_S = 60
CODE_MEMORY_LIMIT_MB = 1024

ARTIFACT_FILE_NAME = "aggregated_transactions.json"
SCRIPT_FILE_NAME = "analysis_script.py"

MICRO_STX = 1_000_000

# Annotation keys on mode results handed to the explanatory model call
FLASH_RESULT_KEY = "_flash_agent"
PRO_RESULT_KEY = "_pro_agent"

# Prefix the chat route uses to execute a previously returned action
AGENT_EXECUTE_PREFIX = "AGENT_EXECUTE:"
