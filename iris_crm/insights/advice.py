from __future__ import annotations

import logging
from dataclasses import dataclass

from iris_crm.core.config import Settings, get_settings
from iris_crm.crm.errors import BadRequestError
from iris_crm.insights.client import AdviceClient, AdviceClientError, GeminiAdviceClient, NullAdviceClient
from iris_crm.metrics import observe_advice_request


logger = logging.getLogger("iris.insights")

MIN_DETAILED_LENGTH = 10
GENERIC_LOG_TERMS = frozenset(
    {
        "meet",
        "meeting",
        "call",
        "email",
        "emailed",
        "update",
        "general",
        "note",
        "activity",
        "followed up",
        "checked in",
        "touch base",
        "spoke",
        "talked",
        "no new updates",
        "n/a",
        "none",
    }
)
TOO_GENERIC_MESSAGE = (
    "Your recent updates are too brief or generic for AI to generate meaningful advice. "
    "Please log more detailed activity (e.g., what was discussed, outcomes, next steps)."
)

_KEYWORD_ADVICE: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("meet", "meeting"),
        "Schedule a follow-up meeting to discuss action items and next steps. "
        "Send a summary email to confirm key points discussed.",
    ),
    (
        ("call", "phone"),
        "Send a brief email summarizing the key points from the call and outline the next steps agreed upon.",
    ),
    (
        ("email", "sent"),
        "Follow up in 2-3 days if no response is received. Consider scheduling a call to discuss in more detail.",
    ),
    (
        ("proposal", "quote"),
        "Schedule a review call to walk through the proposal details and address any questions or concerns.",
    ),
    (
        ("issue", "problem", "concern"),
        "Schedule an urgent follow-up call to address concerns and develop an action plan for resolution.",
    ),
)
GENERIC_ADVICE = "Schedule a follow-up conversation to discuss progress and identify any additional needs or opportunities."


@dataclass
class ActivityLog:
    content: str
    date: str | None = None
    type: str | None = None


@dataclass
class Advice:
    advice: str
    source: str


def is_generic_log(content: str | None) -> bool:
    trimmed = (content or "").strip().lower()
    return len(trimmed) < MIN_DETAILED_LENGTH or trimmed in GENERIC_LOG_TERMS


def default_advice(logs: list[ActivityLog]) -> str:
    keywords = " ".join(log.content for log in logs).lower()
    for terms, advice in _KEYWORD_ADVICE:
        if any(term in keywords for term in terms):
            return advice
    return GENERIC_ADVICE


def build_prompt(logs: list[ActivityLog], account_name: str | None) -> str:
    lines = "\n".join(f"- [{log.date or 'undated'}] {log.content} ({log.type or 'note'})" for log in logs)
    return (
        f'You are an expert sales strategist. Analyze the following recent activity log for the account '
        f'"{account_name or "the account"}".\n\nActivity Log:\n{lines}\n\n'
        "Summarize the main themes, then give one specific next best action and any risks or opportunities."
    )


def build_advice_client(settings: Settings) -> AdviceClient:
    if settings.gemini_api_key:
        return GeminiAdviceClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.gemini_timeout_seconds,
        )
    return NullAdviceClient()


class AdviceService:
    def __init__(self, client: AdviceClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> AdviceClient:
        return self._client or build_advice_client(get_settings())

    def get_advice(self, logs: list[ActivityLog], account_name: str | None = None) -> Advice:
        if not logs:
            raise BadRequestError("No logs provided.")

        if all(is_generic_log(log.content) for log in logs):
            observe_advice_request("too_generic")
            return Advice(advice=TOO_GENERIC_MESSAGE, source="too_generic")

        # single attempt; any failure degrades to keyword advice
        try:
            text = self.client.generate(build_prompt(logs, account_name))
        except AdviceClientError as exc:
            logger.warning("insights.advice_fallback", extra={"error": str(exc)})
            observe_advice_request("fallback")
            return Advice(advice=default_advice(logs), source="fallback")

        observe_advice_request("llm")
        return Advice(advice=text, source="llm")
