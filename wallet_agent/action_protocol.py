"""
Agent action protocol.

When the model needs more data than the prompt carries, it answers with a
single JSON object instead of prose:

    {"action": "use_agent", "uri": "<url>", "uri_data": <json|null>}
    {"action": "use_agent", "uri": "<base_url>", "recursive": true, "regex": "/pattern/"}
    {"action": "use_agent", "uri": "<base_url>", "recursive": true, "code": "<python>"}

Models rarely return the object alone; it usually comes wrapped in an
explanation or a markdown fence. ``parse_agent_action`` first tries the whole
reply as JSON and then falls back to scanning for the object that holds the
``"action"`` key, matching braces while skipping over string literals so a
``}`` inside a regex or a code snippet does not end the object early.
"""

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import httpx

from wallet_agent.errors import ProtocolError

logger = logging.getLogger(__name__)

ACTION_NAME = "use_agent"
_ACTION_MARKER = '"action"'


class ActionMode(enum.Enum):
    DIRECT_FETCH = "direct_fetch"
    PATTERN_SEARCH = "pattern_search"
    AGGREGATE_EXECUTE = "aggregate_execute"


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _is_absolute_http_url(uri: str) -> bool:
    try:
        url = httpx.URL(uri)
    except httpx.InvalidURL:
        return False
    return url.scheme in ("http", "https") and bool(url.host)


@dataclass
class AgentAction:
    """A validated ``use_agent`` request."""

    uri: str
    uri_data: Any = None
    recursive: bool = False
    regex: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentAction":
        if data.get("action") != ACTION_NAME:
            raise ProtocolError(f"Unsupported action: {data.get('action')!r}")
        uri = data.get("uri")
        if not isinstance(uri, str) or not uri.strip():
            raise ProtocolError("Action is missing a uri")
        uri = uri.strip()
        if not _is_absolute_http_url(uri):
            raise ProtocolError(f"Action uri is not an absolute http(s) URL: {uri!r}")
        return cls(
            uri=uri,
            uri_data=data.get("uri_data"),
            recursive=_as_bool(data.get("recursive")),
            regex=data.get("regex") or None,
            code=data.get("code") or None,
        )

    @property
    def mode(self) -> ActionMode:
        # code beats regex when a model sets both
        if self.recursive and self.code:
            return ActionMode.AGGREGATE_EXECUTE
        if self.recursive and self.regex:
            return ActionMode.PATTERN_SEARCH
        return ActionMode.DIRECT_FETCH

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.recursive and self.code and self.regex)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action": ACTION_NAME, "uri": self.uri, "uri_data": self.uri_data}
        if self.recursive:
            data["recursive"] = True
        if self.regex:
            data["regex"] = self.regex
        if self.code:
            data["code"] = self.code
        return data


def looks_like_agent_action(text: str) -> bool:
    """Cheap check before attempting a full parse."""
    return bool(text) and ACTION_NAME in text and _ACTION_MARKER in text


def _find_object_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing the object opened at ``text[start]``."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _candidate_objects(text: str) -> Iterator[str]:
    """Balanced ``{...}`` substrings that enclose an ``"action"`` marker.

    For each marker, opening braces before it are tried nearest first, so
    the innermost enclosing object wins.
    """
    marker = text.find(_ACTION_MARKER)
    while marker != -1:
        start = text.rfind("{", 0, marker)
        while start != -1:
            end = _find_object_end(text, start)
            if end is not None and end > marker:
                yield text[start:end + 1]
            start = text.rfind("{", 0, start)
        marker = text.find(_ACTION_MARKER, marker + 1)


def extract_action_object(text: str) -> Dict[str, Any]:
    """The JSON object carrying the ``action`` key, parsed into a dict."""
    stripped = text.strip()
    try:
        data = json.loads(stripped)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    for candidate in _candidate_objects(stripped):
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict) and "action" in data:
            return data
    raise ProtocolError("No balanced action object found in model reply")


def parse_agent_action(text: str) -> AgentAction:
    """Parse a model reply into an AgentAction, or raise ProtocolError."""
    if not text or not text.strip():
        raise ProtocolError("Empty model reply")
    action = AgentAction.from_dict(extract_action_object(text))
    if action.is_ambiguous:
        logger.warning("Action sets both regex and code; running aggregate+execute")
    logger.debug(f"Parsed agent action: mode={action.mode.value} uri={action.uri}")
    return action
