"""Conversation history storage, formatting and compression.

The engine reads history through ``ConversationHistoryStore``; the in-memory
store here is what the CLI and the tests use. History is rendered for the
system prompt as a ``<conversation_history>`` block with one line per
message, a speaker label followed by the text in triple double quotes::

    user: <text>
    router to User: <text>
    router to billing: <text>
    billing tool: search: <text>

Two compressors share one policy (``relay.model_metadata.CompressionConfig``):

- conversation compression replaces old stored messages with a persisted
  ``compression_summary`` message;
- ``TurnCompressor`` shrinks the in-flight message list of one generation
  when it grows past the trigger point or when the model asks for it.
"""

import itertools
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from relay.config import ConversationHistoryConfig
from relay.model_metadata import CompressionConfig, estimate_messages_tokens, estimate_tokens

logger = logging.getLogger(__name__)

# Most recent messages that survive any compression
PROTECT_LAST_N_MESSAGES = 4

COMPRESSION_SUMMARY_TYPE = "compression_summary"

Summarizer = Callable[[str], Awaitable[str]]


@dataclass
class MessageRecord:
    conversation_id: str
    role: str  # "user" | "agent" | "assistant" | "system"
    content: Dict[str, Any]  # {"text": str, "parts": [...]}
    message_type: str = "chat"  # "chat" | "a2a-request" | "a2a-response" | "tool-result" | "compression_summary"
    visibility: str = "user-facing"  # "user-facing" | "internal" | "external"
    from_sub_agent_id: Optional[str] = None
    to_sub_agent_id: Optional[str] = None
    from_external_agent_id: Optional[str] = None
    to_external_agent_id: Optional[str] = None
    task_id: Optional[str] = None
    delegation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return self.content.get("text") or ""


@dataclass(frozen=True)
class ConversationScope:
    """Filters for ``scoped`` history mode."""

    sub_agent_id: Optional[str] = None
    task_id: Optional[str] = None

    def matches(self, msg: MessageRecord) -> bool:
        if self.task_id and msg.task_id == self.task_id:
            return True
        if self.sub_agent_id and self.sub_agent_id in (msg.from_sub_agent_id, msg.to_sub_agent_id):
            return True
        return not (self.task_id or self.sub_agent_id)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def role_label(msg: MessageRecord) -> str:
    if msg.role == "user":
        return "user"
    if msg.role == "agent" and msg.message_type in ("a2a-request", "a2a-response"):
        source = msg.from_sub_agent_id or msg.from_external_agent_id or "unknown"
        target = msg.to_sub_agent_id or msg.to_external_agent_id or "unknown"
        return f"{source} to {target}"
    if msg.role == "agent" and msg.message_type == "chat":
        return f"{msg.from_sub_agent_id or 'unknown'} to User"
    if msg.role == "assistant" and msg.message_type == "tool-result":
        tool_name = msg.metadata.get("tool_name") or "unknown"
        return f"{msg.from_sub_agent_id or 'unknown'} tool: {tool_name}"
    return msg.role or "system"


def reconstruct_message_text(msg: MessageRecord) -> str:
    """Message text with artifact data parts turned back into ``<artifact:ref>`` tags."""
    parts = msg.content.get("parts")
    if not parts:
        return msg.text

    pieces = []
    for part in parts:
        kind = part.get("kind") or part.get("type")
        if kind == "text":
            pieces.append(part.get("text") or "")
        elif kind == "data":
            data = part.get("data")
            if isinstance(data, str):
                try:
                    data = json.loads(data)
                except json.JSONDecodeError:
                    continue
            if isinstance(data, dict) and data.get("artifactId") and data.get("toolCallId"):
                pieces.append(f'<artifact:ref id="{data["artifactId"]}" tool="{data["toolCallId"]}" />')
    return "".join(pieces)


def format_conversation_history(messages: List[MessageRecord]) -> str:
    if not messages:
        return ""
    lines = "\n".join(f'{role_label(m)}: """{reconstruct_message_text(m)}"""' for m in messages)
    return f"<conversation_history>\n{lines}\n</conversation_history>\n"


def _drop_current_message(messages: List[MessageRecord], current_message: Optional[str]) -> List[MessageRecord]:
    if current_message and messages and messages[-1].text == current_message:
        return messages[:-1]
    return messages


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConversationHistoryStore(Protocol):
    async def create_message(self, conversation_id: str, role: str, text: str = "", **fields: Any) -> MessageRecord:
        ...

    async def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        include_internal: bool = True,
        message_types: Optional[List[str]] = None,
        scope: Optional[ConversationScope] = None,
    ) -> List[MessageRecord]:
        ...

    async def get_formatted_conversation_history(
        self,
        conversation_id: str,
        current_message: Optional[str] = None,
        options: Optional[ConversationHistoryConfig] = None,
        scope: Optional[ConversationScope] = None,
    ) -> str:
        ...

    async def get_conversation_history_with_compression(
        self,
        conversation_id: str,
        current_message: Optional[str] = None,
        options: Optional[ConversationHistoryConfig] = None,
        scope: Optional[ConversationScope] = None,
        compression_config: Optional[CompressionConfig] = None,
        summarizer: Optional[Summarizer] = None,
    ) -> str:
        ...


class InMemoryConversationStore:
    """Process-local history store. Messages are kept in insertion order."""

    def __init__(self):
        self._messages: Dict[str, List[MessageRecord]] = {}
        self._order = itertools.count()

    async def create_message(self, conversation_id: str, role: str, text: str = "", **fields: Any) -> MessageRecord:
        content = fields.pop("content", None) or {"text": text}
        msg = MessageRecord(conversation_id=conversation_id, role=role, content=content, **fields)
        msg.metadata.setdefault("order", next(self._order))
        self._messages.setdefault(conversation_id, []).append(msg)
        logger.debug("Stored %s message %s in conversation %s", msg.message_type, msg.id, conversation_id)
        return msg

    async def list_messages(
        self,
        conversation_id: str,
        *,
        limit: Optional[int] = None,
        include_internal: bool = True,
        message_types: Optional[List[str]] = None,
        scope: Optional[ConversationScope] = None,
    ) -> List[MessageRecord]:
        """Messages after the latest compression summary (which is kept first)."""
        messages = list(self._messages.get(conversation_id, []))

        summary = None
        for idx in range(len(messages) - 1, -1, -1):
            if messages[idx].message_type == COMPRESSION_SUMMARY_TYPE:
                summary = messages[idx]
                messages = messages[idx + 1:]
                break

        if not include_internal:
            messages = [m for m in messages if m.visibility != "internal"]
        if message_types:
            messages = [m for m in messages if m.message_type in message_types]
        if scope is not None:
            messages = [m for m in messages if scope.matches(m)]
        if limit:
            messages = messages[-limit:]
        return ([summary] if summary else []) + messages

    async def _scoped(
        self,
        conversation_id: str,
        options: ConversationHistoryConfig,
        scope: Optional[ConversationScope],
        limit: Optional[int],
    ) -> List[MessageRecord]:
        if options.mode == "none":
            return []
        return await self.list_messages(
            conversation_id,
            limit=limit,
            include_internal=options.include_internal,
            message_types=options.message_types,
            scope=scope if options.mode == "scoped" else None,
        )

    async def get_formatted_conversation_history(
        self,
        conversation_id: str,
        current_message: Optional[str] = None,
        options: Optional[ConversationHistoryConfig] = None,
        scope: Optional[ConversationScope] = None,
    ) -> str:
        """History capped at ``options.max_output_tokens``, oldest messages dropped first."""
        options = options or ConversationHistoryConfig()
        messages = await self._scoped(conversation_id, options, scope, options.limit)
        messages = _drop_current_message(messages, current_message)

        formatted = format_conversation_history(messages)
        while len(messages) > 1 and estimate_tokens(formatted) > options.max_output_tokens:
            messages = messages[1:]
            formatted = format_conversation_history(messages)
        return formatted

    async def get_conversation_history_with_compression(
        self,
        conversation_id: str,
        current_message: Optional[str] = None,
        options: Optional[ConversationHistoryConfig] = None,
        scope: Optional[ConversationScope] = None,
        compression_config: Optional[CompressionConfig] = None,
        summarizer: Optional[Summarizer] = None,
    ) -> str:
        """Full history; compressed into a stored summary once it passes the trigger point."""
        options = options or ConversationHistoryConfig()
        if options.mode == "none":
            return ""
        # Compression needs tool results and the untruncated history
        options = options.model_copy(update={"include_internal": True})
        messages = await self._scoped(conversation_id, options, scope, None)
        messages = _drop_current_message(messages, current_message)
        if not messages:
            return ""

        if compression_config is not None and compression_config.enabled:
            tokens = estimate_tokens(format_conversation_history(messages))
            if tokens > compression_config.trigger_point:
                messages = await self._compress(conversation_id, messages, tokens, summarizer)
        return format_conversation_history(messages)

    async def _compress(
        self,
        conversation_id: str,
        messages: List[MessageRecord],
        tokens: int,
        summarizer: Optional[Summarizer],
    ) -> List[MessageRecord]:
        if len(messages) <= PROTECT_LAST_N_MESSAGES:
            return messages
        old, recent = messages[:-PROTECT_LAST_N_MESSAGES], messages[-PROTECT_LAST_N_MESSAGES:]
        logger.info(
            "Compressing conversation %s: %d messages (~%d tokens), keeping last %d",
            conversation_id, len(messages), tokens, len(recent),
        )

        summary_text = await summarize_transcript(format_conversation_history(old), len(old), summarizer)
        summary = MessageRecord(
            conversation_id=conversation_id,
            role="system",
            content={"text": summary_text},
            message_type=COMPRESSION_SUMMARY_TYPE,
            visibility="internal",
            metadata={
                "compression_type": "conversation_history",
                "original_message_count": len(old),
                "order": next(self._order),
            },
        )
        # The summary must sort before the messages it leaves in place
        stored = self._messages.setdefault(conversation_id, [])
        stored.insert(stored.index(recent[0]) if recent[0] in stored else len(stored), summary)
        return [summary] + recent


async def summarize_transcript(transcript: str, message_count: int, summarizer: Optional[Summarizer]) -> str:
    """Summary text for compressed history. Falls back to a truncation notice."""
    if summarizer is not None:
        try:
            summary = await summarizer(transcript)
            if summary and summary.strip():
                return f"=== CONVERSATION SUMMARY ===\n{summary.strip()}"
        except Exception as e:
            logger.warning("Summarizer failed, using truncation notice: %s", e)
    return (
        f"[CONTEXT SUMMARY]: {message_count} earlier messages were removed to save context space. "
        "Ask the user to restate anything important that is no longer visible."
    )


# ---------------------------------------------------------------------------
# In-flight (turn) compression
# ---------------------------------------------------------------------------

class TurnCompressor:
    """Shrinks the message list of a running generation.

    Compression is due when the model called ``compress_context`` or the
    estimated message tokens exceed the policy's trigger point. The system
    message, the first user message and the last few messages are kept; a
    ``tool`` message never starts the kept tail, so tool calls stay paired.
    """

    def __init__(self, config: CompressionConfig, summarizer: Optional[Summarizer] = None):
        self.config = config
        self.summarizer = summarizer
        self.manual_reason: Optional[str] = None
        self.compression_count = 0

    def request_manual_compression(self, reason: str) -> None:
        self.manual_reason = reason or "requested"

    def should_compress(self, messages: List[Dict[str, Any]]) -> bool:
        if self.manual_reason is not None:
            return True
        return self.config.enabled and estimate_messages_tokens(messages) > self.config.trigger_point

    async def compress(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        head_len = 0
        for msg in messages:
            if msg.get("role") not in ("system", "user") or head_len >= 2:
                break
            head_len += 1

        tail_start = max(head_len, len(messages) - PROTECT_LAST_N_MESSAGES)
        while tail_start < len(messages) and messages[tail_start].get("role") == "tool":
            tail_start += 1
        middle = messages[head_len:tail_start]
        if not middle:
            self.manual_reason = None
            return messages

        transcript = "\n".join(f"{m.get('role')}: {m.get('content') or ''}" for m in middle)
        summary = await summarize_transcript(transcript, len(middle), self.summarizer)
        logger.info(
            "Compressed %d in-flight messages (%s)",
            len(middle), self.manual_reason or "over trigger point",
        )
        self.compression_count += 1
        self.manual_reason = None
        return messages[:head_len] + [{"role": "user", "content": summary}] + messages[tail_start:]

    def reset(self) -> None:
        self.manual_reason = None
        self.compression_count = 0
