"""Runtime settings for the wallet agent.

Resolution order (later wins):
    1. Built-in defaults from wallet_constants
    2. ~/.wallet-agent/config.yaml (or an explicit path)
    3. Environment variables (after loading ~/.wallet-agent/.env or ./.env)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from wallet_constants import (
    CODE_MEMORY_LIMIT_MB,
    CODE_TIMEOUT_S,
    DEFAULT_MODEL,
    HF_API_KEY_ENV,
    HF_ROUTER_BASE_URL,
    MAX_CODE_ATTEMPTS,
    RESPONSE_CACHE_TTL_S,
    STACKS_API_BASE,
)

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# env var -> (settings field, converter)
_ENV_OVERRIDES = {
    HF_API_KEY_ENV: ("api_key", str),
    "WALLET_AGENT_MODEL": ("model", str),
    "WALLET_AGENT_LLM_BASE_URL": ("llm_base_url", str),
    "STACKS_API_BASE": ("explorer_base_url", str),
    "WALLET_AGENT_HOME": ("home", Path),
    "WALLET_AGENT_MAX_RETRIES": ("max_code_attempts", int),
    "WALLET_AGENT_CODE_TIMEOUT": ("code_timeout_s", float),
    "WALLET_AGENT_CACHE_TTL": ("cache_ttl_s", float),
}


def get_home() -> Path:
    return Path(os.getenv("WALLET_AGENT_HOME", Path.home() / ".wallet-agent"))


def load_env_files(home: Optional[Path] = None) -> Optional[Path]:
    """Load ~/.wallet-agent/.env first, falling back to the project .env.

    Existing environment variables are never overwritten. Returns the file
    that was loaded, if any.
    """
    home = home or get_home()
    for candidate in (home / ".env", PROJECT_ROOT / ".env"):
        if not candidate.exists():
            continue
        try:
            load_dotenv(dotenv_path=candidate, encoding="utf-8")
        except UnicodeDecodeError:
            load_dotenv(dotenv_path=candidate, encoding="latin-1")
        logger.info("Loaded environment variables from %s", candidate)
        return candidate
    logger.debug("No .env file found. Using system environment variables.")
    return None


@dataclass
class AgentSettings:
    """Everything the orchestrator needs that is not per-request."""

    api_key: str = ""
    model: str = DEFAULT_MODEL
    llm_base_url: str = HF_ROUTER_BASE_URL
    explorer_base_url: str = STACKS_API_BASE
    home: Path = field(default_factory=get_home)
    max_code_attempts: int = MAX_CODE_ATTEMPTS
    code_timeout_s: float = CODE_TIMEOUT_S
    code_memory_limit_mb: int = CODE_MEMORY_LIMIT_MB
    cache_ttl_s: float = RESPONSE_CACHE_TTL_S
    request_timeout_s: float = 30.0

    @property
    def artifact_dir(self) -> Path:
        return self.home / "artifacts"

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "AgentSettings":
        load_env_files()
        settings = cls()
        path = Path(config_path) if config_path else settings.home / "config.yaml"
        settings.apply(read_config_file(path))
        settings.apply_env(os.environ)
        return settings

    def apply(self, overrides: Dict[str, Any]) -> None:
        """Copy known keys from a config mapping; unknown keys are logged."""
        known = {f.name: f for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            if key == "home":
                value = Path(value).expanduser()
            setattr(self, key, value)

    def apply_env(self, environ) -> None:
        for env_key, (attr, convert) in _ENV_OVERRIDES.items():
            raw = environ.get(env_key)
            if raw is None or raw == "":
                continue
            try:
                setattr(self, attr, convert(raw))
            except ValueError:
                logger.warning(f"Invalid {env_key} value: {raw!r}, keeping {getattr(self, attr)!r}")


def read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Could not parse {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: top level must be a mapping")
        return {}
    return data


def validate_settings(settings: AgentSettings) -> List[str]:
    """Return human-readable problems with *settings* (empty when usable)."""
    problems = []
    if not settings.api_key:
        problems.append(f"No language-model API key configured. Set {HF_API_KEY_ENV}.")
    if not settings.model:
        problems.append("No model specified")
    if settings.max_code_attempts < 1:
        problems.append("max_code_attempts must be at least 1")
    if settings.code_timeout_s <= 0:
        problems.append("code_timeout_s must be positive")
    if settings.cache_ttl_s <= 0:
        problems.append("cache_ttl_s must be positive")
    if not settings.explorer_base_url.startswith(("http://", "https://")):
        problems.append(f"explorer_base_url is not an http(s) URL: {settings.explorer_base_url}")
    return problems


def setup_logging(verbose: bool = False) -> None:
    """Configure root logging for the CLI and the HTTP server."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        # Keep third-party libraries at WARNING level to reduce noise
        for name in ('openai', 'openai._base_client', 'httpx', 'httpcore', 'asyncio'):
            logging.getLogger(name).setLevel(logging.WARNING)
        logger.info("Verbose logging enabled (third-party library logs suppressed)")
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )
        for name in ('openai', 'openai._base_client', 'httpx', 'httpcore'):
            logging.getLogger(name).setLevel(logging.ERROR)
