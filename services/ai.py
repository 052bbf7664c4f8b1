"""
AI Reply Service

Answers a client's policy-information question from the facts of exactly one
deal, via OpenAI / Azure OpenAI chat completions.

Workflow:
1. Build messages array (system prompt with this deal's facts + question)
2. Call Chat Completions under a hard timeout
3. Trim the answer to SMS length

Any failure (timeout, API error, empty answer) raises ReplyGenerationError;
the caller escalates to a human instead of sending anything.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional

import structlog
from openai import AsyncAzureOpenAI, AsyncOpenAI

from config import Settings
from services.errors import ReplyGenerationError

logger = structlog.get_logger("ai")

ELLIPSIS = "..."

SYSTEM_PROMPT = """You are a policy information assistant. You ONLY answer questions about the specific policy details provided below. Keep responses under {max_length} characters for SMS.

STRICT RULES:
- ONLY answer direct questions about the policy information provided
- NEVER mention contacting an agent, representative, or any human
- Be professional, friendly, and concise
- If information is not available, simply say it's not available in your records

Policy Information:
{facts}"""


def build_llm_client(settings: Settings):
    """Azure OpenAI when an endpoint is configured, plain OpenAI otherwise, None if neither."""
    if settings.AZURE_OPENAI_ENDPOINT and settings.AZURE_OPENAI_API_KEY:
        return AsyncAzureOpenAI(
            azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
            api_key=settings.AZURE_OPENAI_API_KEY,
            api_version=settings.AZURE_OPENAI_API_VERSION,
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
    if settings.OPENAI_API_KEY:
        return AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
    return None


def truncate_for_sms(text: str, max_length: int = 320) -> str:
    text = (text or "").strip()
    if len(text) <= max_length:
        return text
    return text[: max_length - len(ELLIPSIS)] + ELLIPSIS


def format_facts(facts: Mapping[str, Any]) -> str:
    carrier = facts.get("carrier") or {}
    agent = facts.get("agent") or {}
    agent_name = f"{agent.get('first_name') or ''} {agent.get('last_name') or ''}".strip()

    def _or(value, fallback="Not specified"):
        return value if value not in (None, "") else fallback

    lines = [
        f"- Client: {_or(facts.get('client_name'))}",
        f"- Policy Number: {_or(facts.get('policy_number'), 'Not available')}",
        f"- Carrier: {_or(carrier.get('name'))}",
        f"- Product: {_or(facts.get('product'))}",
        f"- Agent: {_or(agent_name)}",
        f"- Monthly Premium: ${_or(facts.get('monthly_premium'))}",
        f"- Annual Premium: ${_or(facts.get('annual_premium'))}",
        f"- Effective Date: {_or(facts.get('policy_effective_date'))}",
        f"- Billing Cycle: {_or(facts.get('billing_cycle'))}",
        f"- Status: {_or(facts.get('status') or facts.get('status_standardized'), 'Active')}",
    ]
    return "\n".join(lines)


class ReplyGenerator:
    def __init__(
        self,
        client,
        model: str,
        timeout: float = 15.0,
        max_length: int = 320,
        max_tokens: int = 200,
    ):
        self.client = client
        self.model = model
        self.timeout = timeout
        self.max_length = max_length
        self.max_tokens = max_tokens

    def build_messages(self, question: str, deal_facts: Mapping[str, Any]) -> List[Dict[str, str]]:
        system = SYSTEM_PROMPT.format(max_length=self.max_length, facts=format_facts(deal_facts))
        user = (
            f'Client question: "{question}"\n\n'
            f"Please provide a helpful response about their policy information. "
            f"Keep it under {self.max_length} characters."
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    async def generate(self, question: str, deal_facts: Mapping[str, Any]) -> str:
        if self.client is None:
            raise ReplyGenerationError("LLM client is not configured")

        call_args = {
            "model": self.model,
            "messages": self.build_messages(question, deal_facts),
            "temperature": 0.3,
            "max_tokens": self.max_tokens,
        }

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(**call_args), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning("LLM timed out", timeout=self.timeout)
            raise ReplyGenerationError("LLM timed out") from e
        except Exception as e:
            logger.error("OpenAI API error", error=str(e))
            raise ReplyGenerationError(str(e)) from e

        text: Optional[str] = None
        if response.choices:
            text = response.choices[0].message.content

        if not text or not text.strip():
            logger.error("Empty response from OpenAI")
            raise ReplyGenerationError("LLM returned an empty answer")

        reply = truncate_for_sms(text, self.max_length)
        logger.info("AI reply generated", length=len(reply))
        return reply
