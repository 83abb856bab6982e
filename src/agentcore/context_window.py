"""Keeps the conversation inside the model's context window.

Two tiers: ask the model to summarize the middle of the conversation
(condensation), and when that is off or fails drop the oldest half after
the first message (truncation).
"""

import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .cost_tracker import CostTracker
from .interrupt import CancellationToken
from .logger import get_logger
from .messages import ConversationMessage
from .stream_events import StreamError, TextDelta, Usage

log = get_logger("context")

TOKEN_BUFFER_PERCENTAGE = 0.1
DEFAULT_MAX_RESPONSE_TOKENS = 8192
N_MESSAGES_TO_KEEP = 3
MIN_CONDENSE_THRESHOLD = 5
MAX_CONDENSE_THRESHOLD = 100

# Rough characters-per-token ratio; no tokenizer behind it.
CHARS_PER_TOKEN = 4

SUMMARY_PROMPT = """\
Your task is to create a detailed summary of the conversation so far, paying close attention to the user's explicit requests and your previous actions.
This summary will replace the earlier conversation, so it must keep every detail needed to continue the work without losing context.

Structure the summary as:
1. Previous Conversation: what was discussed and asked for.
2. Current Work: what was being worked on right before this summary.
3. Key Technical Concepts: technologies, conventions and decisions.
4. Relevant Files and Code: files examined or changed, with the important snippets.
5. Problem Solving: problems solved and troubleshooting still underway.
6. Pending Tasks and Next Steps: what is left, quoting the most recent instructions verbatim where possible.

Output only the summary, without any additional commentary."""

SUMMARIZE_REQUEST = "Summarize the conversation so far, as described in the prompt instructions."
CONTINUE_FROM_SUMMARY = "Please continue from the following summary:"


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: List[ConversationMessage]) -> int:
    return sum(estimate_tokens(m.text) for m in messages)


def truncate_conversation(messages: List[ConversationMessage], frac_to_remove: float = 0.5) -> List[ConversationMessage]:
    """Drop an even number of messages right after the first one.

    Keeps ``messages[0]`` and never splits a user/assistant pair.
    """
    if not messages:
        return []
    to_remove = math.floor((len(messages) - 1) * frac_to_remove)
    to_remove -= to_remove % 2
    return [messages[0]] + list(messages[to_remove + 1:])


def resolve_condense_threshold(
    global_percent: int,
    profile_thresholds: Optional[Dict[str, int]] = None,
    profile_id: str = "default",
) -> int:
    """Per-profile override of the condense percent; -1 means inherit."""
    value = (profile_thresholds or {}).get(profile_id)
    if value is None or value == -1:
        return global_percent
    if MIN_CONDENSE_THRESHOLD <= value <= MAX_CONDENSE_THRESHOLD:
        return value
    log.warning("invalid condense threshold %r for profile %s, using global %d%%", value, profile_id, global_percent)
    return global_percent


def get_messages_since_last_summary(messages: List[ConversationMessage]) -> List[ConversationMessage]:
    last = -1
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].is_summary:
            last = i
            break
    if last == -1:
        return list(messages)

    since = list(messages[last:])
    if since and since[0].role == "user":
        return since
    first_user = next((m for m in messages if m.role == "user"), None)
    head = first_user or ConversationMessage(role="user", content=CONTINUE_FROM_SUMMARY)
    return [head] + since


@dataclass
class SummarizeResult:
    messages: List[ConversationMessage]
    summary: str = ""
    cost: float = 0.0
    new_context_tokens: int = 0
    error: Optional[str] = None


async def summarize_conversation(
    messages: List[ConversationMessage],
    provider,
    system_prompt: str,
    task_id: str,
    prev_context_tokens: int,
    is_automatic: bool = True,
    custom_prompt: Optional[str] = None,
    cost_tracker: Optional[CostTracker] = None,
    cancel: Optional[CancellationToken] = None,
) -> SummarizeResult:
    """Replace the middle of ``messages`` with a model-written summary.

    ``provider`` is anything with ``create_message(system_prompt, messages,
    tools=None, cancel=None)`` yielding StreamEvents. On any error the
    original messages come back unchanged with ``error`` set.
    """
    log.info("summarize: task=%s automatic=%s messages=%d prev_tokens=%d",
             task_id, is_automatic, len(messages), prev_context_tokens)

    keep = messages[-N_MESSAGES_TO_KEEP:] if len(messages) > N_MESSAGES_TO_KEEP else []
    to_summarize = get_messages_since_last_summary(messages[:-N_MESSAGES_TO_KEEP] if keep else [])
    if len(to_summarize) <= 1:
        return SummarizeResult(messages=messages, error="Not enough messages to condense")
    if any(m.is_summary for m in keep):
        return SummarizeResult(messages=messages, error="Context was condensed recently; skipping")

    request = to_summarize + [ConversationMessage(role="user", content=SUMMARIZE_REQUEST)]
    parts: List[str] = []
    usage: Optional[Usage] = None
    t0 = time.time()
    try:
        async for event in provider.create_message(custom_prompt or SUMMARY_PROMPT, request, None, cancel):
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, Usage):
                usage = event
            elif isinstance(event, StreamError):
                return SummarizeResult(messages=messages, error=f"Condensing failed: {event.message}")
    except Exception as e:
        log.warning("summarize request failed: %s: %s", type(e).__name__, e)
        return SummarizeResult(messages=messages, error=f"Condensing failed: {e}")

    summary = "".join(parts).strip()
    if not summary:
        return SummarizeResult(messages=messages, error="Condensing failed: the summary was empty")

    cost = 0.0
    output_tokens = usage.output_tokens if usage else estimate_tokens(summary)
    if cost_tracker is not None and usage is not None:
        model = getattr(getattr(provider, "config", None), "model", "unknown")
        call = cost_tracker.record_call(model, usage.input_tokens, usage.output_tokens,
                                        (time.time() - t0) * 1000, purpose="condense")
        cost = call.cost

    summary_msg = ConversationMessage(role="assistant", content=summary, is_summary=True)
    new_messages = [messages[0], summary_msg] + list(keep)

    new_context_tokens = output_tokens + estimate_tokens(system_prompt) + estimate_messages_tokens(list(keep))
    if new_context_tokens >= prev_context_tokens:
        log.info("summarize did not shrink context: %d >= %d", new_context_tokens, prev_context_tokens)
        return SummarizeResult(messages=messages, cost=cost,
                               error="Condensing did not reduce the context size")

    log.info("summarize: %d -> %d messages, tokens %d -> %d",
             len(messages), len(new_messages), prev_context_tokens, new_context_tokens)
    return SummarizeResult(messages=new_messages, summary=summary, cost=cost,
                           new_context_tokens=new_context_tokens)


# ── Budget decision ──────────────────────────────────────────────

@dataclass
class TokenBudget:
    context_window_tokens: int
    reserved_for_response_tokens: int
    estimated_conversation_tokens: int

    @property
    def allowed_tokens(self) -> int:
        return int(self.context_window_tokens * (1 - TOKEN_BUFFER_PERCENTAGE) - self.reserved_for_response_tokens)

    @property
    def percent(self) -> float:
        if self.context_window_tokens <= 0:
            return 100.0
        return 100.0 * self.estimated_conversation_tokens / self.context_window_tokens


@dataclass
class ContextDecision:
    messages: List[ConversationMessage] = field(default_factory=list)
    summary: str = ""
    cost: float = 0.0
    error: Optional[str] = None
    prev_context_tokens: int = 0
    new_context_tokens: Optional[int] = None
    action: str = "none"  # none | condensed | truncated


class ContextWindowManager:
    """Per-task budget check run before every backend call."""

    def __init__(self, provider=None, cost_tracker: Optional[CostTracker] = None):
        self.provider = provider
        self.cost_tracker = cost_tracker
        self.last_budget: Optional[TokenBudget] = None

    async def decide(
        self,
        messages: List[ConversationMessage],
        total_tokens: int,
        context_window: int,
        max_response_tokens: Optional[int] = None,
        condense_enabled: bool = True,
        condense_threshold_percent: int = 100,
        system_prompt: str = "",
        task_id: str = "",
        profile_thresholds: Optional[Dict[str, int]] = None,
        profile_id: str = "default",
        cancel: Optional[CancellationToken] = None,
    ) -> ContextDecision:
        # the newest message is not in the provider's token count yet
        last_tokens = estimate_tokens(messages[-1].text) if messages else 0
        prev_tokens = total_tokens + last_tokens
        reserved = max_response_tokens or DEFAULT_MAX_RESPONSE_TOKENS
        budget = TokenBudget(context_window, reserved, prev_tokens)
        self.last_budget = budget

        threshold = resolve_condense_threshold(condense_threshold_percent, profile_thresholds, profile_id)
        over_threshold = budget.percent >= threshold
        over_allowed = prev_tokens > budget.allowed_tokens
        log.debug("budget: tokens=%d window=%d allowed=%d percent=%.1f threshold=%d condense=%s",
                  prev_tokens, context_window, budget.allowed_tokens, budget.percent, threshold, condense_enabled)

        error: Optional[str] = None
        cost = 0.0
        if condense_enabled and (over_threshold or over_allowed):
            if self.provider is None:
                error = "Condensing failed: no provider available"
            else:
                result = await summarize_conversation(
                    messages, self.provider, system_prompt, task_id, prev_tokens,
                    is_automatic=True, cost_tracker=self.cost_tracker, cancel=cancel,
                )
                cost = result.cost
                if result.error is None:
                    return ContextDecision(
                        messages=result.messages, summary=result.summary, cost=cost,
                        prev_context_tokens=prev_tokens, new_context_tokens=result.new_context_tokens,
                        action="condensed",
                    )
                error = result.error
                log.warning("condense failed: %s", error)

        if over_allowed:
            truncated = truncate_conversation(messages, 0.5)
            log.info("truncated conversation: %d -> %d messages", len(messages), len(truncated))
            return ContextDecision(messages=truncated, cost=cost, error=error,
                                   prev_context_tokens=prev_tokens, action="truncated")

        return ContextDecision(messages=list(messages), cost=cost, error=error, prev_context_tokens=prev_tokens)
