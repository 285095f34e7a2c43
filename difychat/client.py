"""
Dify App Client
===============
Calls an app's service API with its app key:

    GET    {api_url}/parameters             prompt variables
    POST   {api_url}/chat-messages          blocking chat reply
    GET    {api_url}/conversations          conversation list
    DELETE {api_url}/conversations/{id}     delete a conversation

All methods are coroutines; the HTTP call runs in the default executor.
Cancelling the awaiting task abandons the request and discards its reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .apps import StoredApp
from .conversations import Conversation, ConversationMirror
from .errors import DifyAPIError
from .utils import create_http_session, error_message, response_ok, run_blocking

logger = logging.getLogger(__name__)


@dataclass
class PromptVariable:
    key: str
    name: str = ""
    type: str = "text"
    required: bool = False
    options: List[Any] = field(default_factory=list)

    @property
    def default_value(self) -> str:
        if self.type == "select" and self.options:
            first = self.options[0]
            return first.get("value", "") if isinstance(first, dict) else str(first)
        return ""


@dataclass
class ChatReply:
    answer: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def parse_variables(data: Dict[str, Any]) -> List[PromptVariable]:
    """Read ``user_input_form`` (``[{"text-input": {...}}]``) or
    ``prompt_variables`` from a ``/parameters`` response."""
    variables = []
    for item in data.get("user_input_form") or []:
        if not isinstance(item, dict) or not item:
            continue
        kind, config = next(iter(item.items()))
        if not isinstance(config, dict) or not config.get("variable"):
            continue
        variables.append(PromptVariable(
            key=config["variable"],
            name=config.get("label") or config["variable"],
            type="text" if kind == "text-input" else kind,
            required=bool(config.get("required")),
            options=list(config.get("options") or []),
        ))
    if variables:
        return variables

    for item in data.get("prompt_variables") or []:
        if isinstance(item, dict) and item.get("key"):
            variables.append(PromptVariable(
                key=item["key"],
                name=item.get("name") or item["key"],
                type=item.get("type") or "text",
                required=bool(item.get("required")),
                options=list(item.get("options") or []),
            ))
    return variables


def initial_inputs(variables: List[PromptVariable]) -> Dict[str, str]:
    return {v.key: v.default_value for v in variables}


def missing_inputs(variables: List[PromptVariable], inputs: Dict[str, Any]) -> List[str]:
    """Keys of required variables that are absent or blank."""
    missing = []
    for var in variables:
        value = inputs.get(var.key)
        if var.required and (value is None or str(value).strip() == ""):
            missing.append(var.key)
    return missing


class DifyAppClient:
    """Service-API client for one ``StoredApp``."""

    def __init__(
        self,
        app: StoredApp,
        *,
        http: Optional[requests.Session] = None,
        user: str = "default",
        timeout: float = 30,
    ):
        if not app.can_chat:
            raise ValueError(f"App {app.display_name!r} has no API key / URL configured")
        self.app = app
        self.base = app.api_url.rstrip("/")
        self.http = http or create_http_session()
        self.user = user
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.app.app_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base}{path}"
        logger.debug(f"[CLIENT] {method} {url}")
        try:
            resp = await run_blocking(
                self.http.request, method, url,
                headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise DifyAPIError(0, f"Network error: {exc}", url=url) from exc

        if not response_ok(resp):
            raise DifyAPIError(resp.status_code, error_message(resp), url=url)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise DifyAPIError(resp.status_code, "Response is not JSON", url=url) from exc

    # ── Endpoints ─────────────────────────────────────────────────

    async def get_parameters(self) -> List[PromptVariable]:
        data = await self._request("GET", "/parameters")
        variables = parse_variables(data if isinstance(data, dict) else {})
        logger.debug(f"[CLIENT] {len(variables)} prompt variables")
        return variables

    async def send_chat_message(
        self,
        query: str,
        inputs: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> ChatReply:
        """
        Raises:
            ValueError: blank query.
            DifyAPIError: non-2xx (message from the server body).
        """
        if not (query or "").strip():
            raise ValueError("query must not be empty")
        body = {
            "inputs": inputs or {},
            "query": query,
            "user": self.user,
            "response_mode": "blocking",
            "conversation_id": conversation_id or "",
            "files": [],
        }
        data = await self._request("POST", "/chat-messages", json=body)
        return ChatReply(
            answer=data.get("answer", ""),
            conversation_id=data.get("conversation_id"),
            message_id=data.get("message_id") or data.get("id"),
            raw=data,
        )

    async def list_conversations(self, limit: int = 20) -> List[Conversation]:
        data = await self._request(
            "GET", "/conversations", params={"user": self.user, "limit": limit}
        )
        items = data.get("data") if isinstance(data, dict) else data
        return [Conversation.from_dict(c) for c in items or [] if isinstance(c, dict) and c.get("id")]

    async def delete_conversation(
        self, conversation_id: str, mirror: Optional[ConversationMirror] = None
    ) -> None:
        """Delete on the server, then from *mirror* if given."""
        await self._request(
            "DELETE", f"/conversations/{conversation_id}", json={"user": self.user}
        )
        if mirror is not None:
            await mirror.remove(conversation_id)
        logger.info(f"[CLIENT] Deleted conversation {conversation_id}")
