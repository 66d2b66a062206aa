"""Command extraction delegated to a chat-completions model.

Sends one request per utterance to an OpenAI-compatible
``/chat/completions`` endpoint and validates the JSON answer entry by entry.
"""

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from stockcount.errors import ExtractionError
from stockcount.logging_utils import log_debug, log_warning, redact_secrets
from stockcount.models import Action, Command, ConversationTurn, RecentCommand
from stockcount.units import normalize_unit

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_CONFIDENCE = 0.8
HISTORY_TURNS_IN_PROMPT = 8

SYSTEM_PROMPT = """You convert spoken inventory updates from a coffee shop or \
restaurant into structured commands.

Return a JSON object of the form {"commands": [...]}. Each command has:
- "action": one of "add", "remove", "set", "undo"
- "item": the item name, lower case
- "quantity": a number, or null when not stated
- "unit": the unit, lower case plural (e.g. "gallons", "boxes"), or "" when not stated
- "confidence": a number between 0 and 1
- "isComplete": true when the command can be applied as is

Rules:
- "we have X", "there are X" and a bare "30 gallons of whole milk" state the \
current level: use "set".
- Keep attributes in the item name: "12 ounce paper cups" is one item.
- Split lists joined by "and" or commas into separate commands, in order.
- Relative phrases ("5 more", "the same again") refer to the recent commands \
and conversation history provided; fill in the item and unit from them.
- "undo", "undo that", "undo the X command" produce exactly one command \
{"action": "undo", "item": "<what is being undone or empty>", "isComplete": true, \
"confidence": 0.95}.
- Incomplete statements ("add 20 gallons", "of milk") are returned with the \
missing fields empty and "isComplete": false.
- If the text is not an inventory command, return {"commands": []}.
"""


class CommandPayload(BaseModel):
    """One command entry as returned by the model.

    The model's "isComplete" flag is dropped; completeness is recomputed from
    the fields by ``Command.build``.
    """

    model_config = ConfigDict(extra="ignore")

    action: str
    item: str | None = ""
    quantity: float | None = None
    unit: str | None = ""
    confidence: float | None = None


def build_messages(
    utterance: str,
    conversation_history: Sequence[ConversationTurn],
    recent_commands: Sequence[RecentCommand],
) -> list[dict[str, str]]:
    """Build the chat messages for one extraction request."""
    history = [turn.to_dict() for turn in conversation_history[-HISTORY_TURNS_IN_PROMPT:]]
    recent = [command.to_dict() for command in recent_commands]
    user_content = (
        f"Transcription: {utterance}\n"
        f"Recent Commands: {json.dumps(recent)}\n"
        f"Conversation History: {json.dumps(history)}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def parse_model_output(content: str) -> list[Command]:
    """Turn the model's JSON answer into commands.

    Entries that fail validation are skipped. Actions outside the known set
    become ``unknown`` and only the first undo entry is kept.

    Args:
        content: Message content returned by the model

    Returns:
        Commands in the order the model listed them

    Raises:
        ExtractionError: If the content is not JSON or has the wrong shape
    """
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as e:
        raise ExtractionError(f"Model output is not valid JSON: {e}") from e

    if isinstance(data, dict):
        entries = data.get("commands")
    else:
        entries = data
    if not isinstance(entries, list):
        raise ExtractionError("Model output must be a list of commands")

    commands: list[Command] = []
    undo_seen = False
    for entry in entries:
        try:
            payload = CommandPayload.model_validate(entry)
        except ValidationError as e:
            log_debug(logger, "Skipping invalid model entry", entry=entry, error=e)
            continue

        command = _to_command(payload)
        if command.action == Action.UNDO:
            if undo_seen:
                continue
            undo_seen = True
        commands.append(command)
    return commands


def _to_command(payload: CommandPayload) -> Command:
    try:
        action = Action(payload.action.strip().lower())
    except ValueError:
        action = Action.UNKNOWN

    confidence = payload.confidence if payload.confidence is not None else DEFAULT_CONFIDENCE
    confidence = min(max(confidence, 0.0), 1.0)

    return Command.build(
        action=action,
        item=payload.item,
        quantity=payload.quantity,
        unit=normalize_unit(payload.unit),
        confidence=confidence,
    )


class LLMCommandExtractor:
    """Extract commands with a chat-completions model over HTTP."""

    name = "llm"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        """Initialize the extractor.

        Args:
            api_key: API key (defaults to OPENAI_API_KEY env var)
            base_url: API base URL (defaults to OPENAI_BASE_URL or the public API)
            model: Model name (defaults to STOCKCOUNT_LLM_MODEL or gpt-3.5-turbo)
            timeout: Request timeout in seconds (STOCKCOUNT_LLM_TIMEOUT overrides)
            max_retries: Attempts for transient failures (timeouts, 429, 5xx)
            retry_delay: Base delay between attempts, doubled each retry

        Raises:
            ValueError: If no API key is configured
        """
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required for LLM extraction")

        self.base_url = (base_url or os.environ.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL).rstrip(
            "/"
        )
        self.model = model or os.environ.get("STOCKCOUNT_LLM_MODEL", DEFAULT_MODEL)
        self.timeout = float(os.environ.get("STOCKCOUNT_LLM_TIMEOUT", str(timeout)))
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

        logger.info(
            "Initialized LLM extractor: model=%s, base_url=%s, timeout=%s",
            self.model,
            self.base_url,
            self.timeout,
        )

    async def extract(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        """Extract commands, returning an empty list if the model fails."""
        try:
            return await self.extract_strict(utterance, conversation_history, recent_commands)
        except ExtractionError as e:
            log_warning(logger, "LLM extraction failed", error=e)
            return []

    async def extract_strict(
        self,
        utterance: str,
        conversation_history: Sequence[ConversationTurn] = (),
        recent_commands: Sequence[RecentCommand] = (),
    ) -> list[Command]:
        """Extract commands, raising on transport failure or unusable output.

        Raises:
            ExtractionError: If the request fails or the answer cannot be parsed
        """
        if not utterance or not utterance.strip():
            return []

        payload = {
            "model": self.model,
            "temperature": 0.3,
            "response_format": {"type": "json_object"},
            "messages": build_messages(utterance, conversation_history, recent_commands),
        }
        data = await self._post_chat_completion(payload)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExtractionError("Unexpected chat completion response shape") from e

        commands = parse_model_output(content)
        log_debug(logger, "LLM extracted commands", count=len(commands), model=self.model)
        return commands

    async def _post_chat_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
                    response.raise_for_status()
                    return response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status != 429 and status < 500:
                    raise ExtractionError(f"Chat completion rejected: HTTP {status}") from e
                last_error = e
            except httpx.RequestError as e:
                last_error = e
            except ValueError as e:
                raise ExtractionError("Chat completion response is not JSON") from e

            logger.warning(
                "Chat completion attempt %d/%d failed: %s",
                attempt + 1,
                self.max_retries,
                redact_secrets(str(last_error)),
            )
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2**attempt))

        raise ExtractionError(
            f"Chat completion failed after {self.max_retries} attempts: "
            f"{redact_secrets(str(last_error))}"
        ) from last_error
