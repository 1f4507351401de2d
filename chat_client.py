"""
Chat completion client for Bot Builder.
Sends the conversation to the OpenAI chat-completions endpoint with fixed
code-generation instructions and extracts the bot code from the reply.
"""
import asyncio
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Set

import aiohttp

from config import CHAT_TIMEOUT, DEFAULT_MODEL, ENHANCED_MODEL, OPENAI_API_KEY, OPENAI_API_URL
from diagnostics import RequestTrace, excerpt
from errors import (
    AuthenticationError, ChatCompletionError, ContextTooLongError, InvalidChatRequestError,
    MalformedResponseError, RateLimitedError, ServiceUnavailableError, ValidationError,
)
from http_retry import (
    EDGE_TIMEOUT_STATUSES, GATEWAY_STATUSES, HttpResponse, ParsedJson, RetryPolicy, Sleep, classify_body, fetch,
    parse_json_body, send_with_retry,
)
from token_calculator import calculate_token_cost, estimate_prompt_cost as _estimate

logger = logging.getLogger(__name__)

SUPPORTED_MODELS = (DEFAULT_MODEL, ENHANCED_MODEL)
TEMPERATURE = 0.5
MAX_TOKENS = 2048

SYSTEM_PROMPT = """You are an expert Discord bot developer. Help users build Discord bots by writing clean, secure JavaScript with discord.js v14+.

Rules for every answer:
1. Preserve the existing code:
   - Read the current code included in the user's message before changing anything
   - Modify the existing code instead of starting from scratch
   - Keep every existing command, import, intent and event handler
   - Add new command handlers inside the existing messageCreate handler, after the existing ones
   - Never remove or replace existing if/else blocks

2. Code block format:
   - Answer with "Here's the updated code:" followed by one ```javascript fenced block
   - Use 2-space indentation
   - Put no text after the code block

3. New features and questions:
   - Start with "Adding [feature] to your bot. Here's the updated code:"
   - Show the complete code with the new feature added
   - Only use the "Error:" prefix for real errors

4. Errors:
   - Start with "Error:" or "Error Detected:"
   - Explain the cause and the fix
   - Include the complete working code with all features kept

5. discord.js v14 setup:
   - const { Client, GatewayIntentBits } = require('discord.js');
   - new Client({ intents: [GatewayIntentBits.Guilds, GatewayIntentBits.GuildMessages, GatewayIntentBits.MessageContent] })
   - Use GatewayIntentBits, never Intents.FLAGS
   - Add GuildMembers for member-related commands and keep existing intents

6. Wrap every API call in try/catch, reply with helpful error messages and handle invalid input.

Never replace or remove existing commands. Only add new ones."""

PRESERVATION_REMINDER = (
    'IMPORTANT: When a message contains "Current code:", that is the existing bot code. '
    "Keep ALL of its functionality and add the new features to it. Never replace the whole file."
)

_STRICT_FENCE_RE = re.compile(r"```javascript\s*([\s\S]*?)\s*```")
_LENIENT_FENCE_RE = re.compile(r"```(?:javascript|js)?\s*([\s\S]*?)\s*```")
_COMMAND_RE = re.compile(r"""['"`]!(\w+)""")


@dataclass
class ChatCompletion:
    content: str
    code: Optional[str]
    explanation: str
    estimated_cost: int
    model: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["estimatedCost"] = data.pop("estimated_cost")
        return data


def is_enhanced_model(model: str) -> bool:
    return model == ENHANCED_MODEL


def estimate_prompt_cost(text: str, model: str = DEFAULT_MODEL) -> int:
    """Token estimate for sending text to the given model."""
    return _estimate(text, is_enhanced_model(model))


def extract_code_block(text: str) -> Optional[str]:
    """
    Pull the bot code out of a model reply.

    A ```javascript fence is preferred; a ```js or untagged fence is the
    fallback. Returns None when the reply has no fence at all.
    """
    match = _STRICT_FENCE_RE.search(text or "") or _LENIENT_FENCE_RE.search(text or "")
    if not match:
        return None
    return match.group(1).strip()


def extract_explanation(text: str) -> str:
    """Reply text before the first code fence."""
    return (text or "").split("```", 1)[0].strip()


def find_commands(code: Optional[str]) -> Set[str]:
    return set(_COMMAND_RE.findall(code or ""))


def find_dropped_commands(previous: Optional[str], new: Optional[str]) -> List[str]:
    """`!command` triggers present in previous code but missing from the new code."""
    if not previous or new is None:
        return []
    return sorted(find_commands(previous) - find_commands(new))


def format_messages(history: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """
    Convert stored chat history into chat-completion messages.

    Entries may already carry a `role`; otherwise `type == "user"` maps to
    the user role and anything else to the assistant role.
    """
    messages = []
    for index, item in enumerate(history):
        if not isinstance(item, dict) or not isinstance(item.get("content"), str):
            raise ValidationError(f"Invalid message at index {index}")
        role = item.get("role")
        if role not in ("user", "assistant"):
            role = "user" if item.get("type", "user") == "user" else "assistant"
        messages.append({"role": role, "content": item["content"]})
    return messages


def classify_chat_error(response: HttpResponse, data: Any) -> Exception:
    """Map a failed completion response to the matching domain error."""
    error = data.get("error") if isinstance(data, dict) else None
    error = error if isinstance(error, dict) else {}
    code = error.get("code")
    kind = error.get("type")
    vendor_message = error.get("message") or f"HTTP {response.status}"

    if response.status == 401 or code == "invalid_api_key":
        return AuthenticationError("The AI service rejected the API key. Check OPENAI_API_KEY.")
    if code == "context_length_exceeded":
        return ContextTooLongError("The conversation is too long. Please start a new one.")
    if code == "rate_limit_exceeded" or response.status == 429:
        return RateLimitedError("Rate limit exceeded. Please wait a moment and try again.")
    if kind == "invalid_request_error":
        return InvalidChatRequestError("Invalid request. Please check your input and try again.",
                                       {"vendorMessage": vendor_message})
    if response.status in GATEWAY_STATUSES:
        return ServiceUnavailableError(response.status, "The AI service is temporarily unavailable. "
                                                        "Please try again later.")
    return ChatCompletionError(vendor_message or "Failed to get a response from the AI service",
                               {"status": response.status})


class ChatClient:
    """OpenAI chat-completions client used for bot code generation."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: Optional[str] = OPENAI_API_KEY,
        url: str = OPENAI_API_URL,
        timeout: float = CHAT_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
    ):
        self.session = session
        self._api_key = (api_key or "").strip()
        self.url = url
        self.policy = RetryPolicy(timeout=timeout, max_delay=10.0,
                                  retriable_statuses=GATEWAY_STATUSES | EDGE_TIMEOUT_STATUSES)
        self._sleep = sleep

    def build_request(self, history: List[Dict[str, Any]], model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "system", "content": PRESERVATION_REMINDER},
                *format_messages(history),
            ],
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }

    async def get_completion(self, history: List[Dict[str, Any]], model: str = DEFAULT_MODEL,
                             trace: Optional[RequestTrace] = None) -> ChatCompletion:
        """
        Ask the model for the next reply in a bot-building conversation.

        Args:
            history: Prior messages, oldest first
            model: Chat model name
            trace: Diagnostic context

        Returns:
            ChatCompletion: Reply text, extracted code and its token cost
        """
        trace = trace or RequestTrace(source="openai")
        if not self._api_key:
            raise AuthenticationError("The AI service API key is not configured")
        if model not in SUPPORTED_MODELS:
            raise ValidationError(f"Unsupported model: {model}")
        if not history:
            raise ValidationError("At least one message is required")

        payload = self.build_request(history, model)
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        trace.log("Request Messages", {"model": model, "messageCount": len(payload["messages"])})

        async def operation() -> HttpResponse:
            return await fetch(self.session, "POST", self.url, headers=headers, json=payload)

        response = await send_with_retry(operation, self.policy, trace=trace, label="chat-completion",
                                         sleep=self._sleep)
        if not response.ok:
            body = classify_body(response)
            error = classify_chat_error(response, body.data if isinstance(body, ParsedJson) else None)
            trace.log("API Error", {"status": response.status, "error": str(error)}, "error")
            raise error

        data = parse_json_body(response, "AI service")
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise MalformedResponseError("AI service response did not contain a message",
                                         excerpt(response.text), response.status)
        content = content or ""

        code = extract_code_block(content)
        cost = calculate_token_cost(code, is_enhanced_model(model)).total_cost if code else 0
        trace.log("Response Content", {"model": model, "hasCode": code is not None,
                                       "estimatedCost": cost})
        logger.info(f"Chat completion from {model}: {len(content)} chars, cost {cost}")
        return ChatCompletion(content=content, code=code, explanation=extract_explanation(content),
                              estimated_cost=cost, model=model)
