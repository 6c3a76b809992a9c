"""
AI message generation for blast campaigns.

Turns one campaign prompt plus a contact's display attributes into a
short, natural chat message. Calls are synchronous (the SDKs are) and are
run from the async engine through asyncio.to_thread().
"""
import logging
import re
from typing import Dict, Iterable, List, Optional

import config
from blast.pacing import local_datetime_context
from utils.logging_utils import retry_on_rate_limit

logger = logging.getLogger("blast.message_generator")


class GenerationError(Exception):
    """The AI service failed, timed out or returned nothing usable."""


SYSTEM_PROMPT = """You are a helpful assistant that writes personalized chat messages.
Generate a unique, natural-sounding message based on the operator's instructions.
Make the message feel personal and human, avoiding robotic or templated language.
Keep the message concise and appropriate for a chat app.
Do not start with a greeting like "Hi" or the contact's name - just the message content.
Vary your writing style, sentence structure and vocabulary so each message is unique.

Never use marketing or promotional language (promotion, discount, sale, offer, deal,
limited time, buy now, exclusive, free, bonus, voucher, coupon). If the instructions
mention promotions, rephrase them in a personal, conversational way.

Current date and time context ({timezone}):
- Date: {date}
- Time: {time}
- Day: {day}

Use a greeting that fits the time of day if relevant."""

USER_PROMPT = """Generate a personalized message for this contact:
Name: {name}
Phone: {phone}

Operator instructions: {prompt}

Generate a unique message that follows these instructions while sounding natural and human."""

UNIQUENESS_SUFFIX = (
    "\n\n[IMPORTANT: Generate a completely different and unique message. "
    "Be creative and vary your style significantly.]"
)


def get_llm_client(provider: str = None, model: str = None):
    """Get the LLM client for the configured provider. Returns (client, model, provider)."""
    if provider is None:
        provider = getattr(config, 'LLM_PROVIDER', 'openai').lower()

    if provider == 'groq':
        if not config.GROQ_API_KEY:
            raise GenerationError("Groq API key not configured")
        from groq import Groq
        model = model or config.GROQ_MODEL
        return Groq(api_key=config.GROQ_API_KEY, timeout=config.AI_TIMEOUT_SECONDS), model, 'groq'

    from openai import OpenAI
    if provider == 'ollama':
        model = model or config.OLLAMA_MODEL
        base_url = config.OLLAMA_BASE_URL.rstrip("/") + "/v1"
        # Ollama ignores the key but the SDK requires one
        return OpenAI(base_url=base_url, api_key="ollama", timeout=config.AI_TIMEOUT_SECONDS), model, 'ollama'

    if not config.OPENAI_API_KEY:
        raise GenerationError("OpenAI API key not configured")
    model = model or config.OPENAI_MODEL
    return OpenAI(api_key=config.OPENAI_API_KEY, timeout=config.AI_TIMEOUT_SECONDS), model, 'openai'


_WORD_RE = re.compile(r"\s+")


def _words(text: str) -> set:
    return {w for w in _WORD_RE.split((text or "").lower()) if len(w) > 2}


def calculate_similarity(first: str, second: str) -> float:
    """Jaccard similarity over lower-cased words longer than two characters."""
    words1, words2 = _words(first), _words(second)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def is_duplicate(message: str, previous_messages: Iterable[str], threshold: float = None) -> bool:
    if threshold is None:
        threshold = config.DUPLICATE_SIMILARITY_THRESHOLD
    for previous in previous_messages:
        similarity = calculate_similarity(message, previous)
        if similarity >= threshold:
            logger.info(f"duplicate_detected: similarity={similarity:.2f}")
            return True
    return False


class MessageGenerator:
    """Generate one personalized message per contact from a campaign prompt."""

    def __init__(self, provider: str = None, model: str = None):
        self._provider = provider
        self._model = model
        self.client = None
        self.model = None
        self.provider = None

    def _ensure_client(self):
        """Lazy-init so a missing key fails per recipient, not at startup."""
        if self.client is None:
            self.client, self.model, self.provider = get_llm_client(self._provider, self._model)

    @retry_on_rate_limit(max_retries=3, initial_delay=5.0)
    def _make_llm_call(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=config.AI_TEMPERATURE,
            max_tokens=config.AI_MAX_TOKENS,
        )
        return response.choices[0].message.content or ""

    def generate(self, prompt: str, contact: Dict) -> str:
        """Generate a message for `contact` (uses its name and phone_number)."""
        self._ensure_client()
        system_prompt = SYSTEM_PROMPT.format(**local_datetime_context())
        user_prompt = USER_PROMPT.format(
            name=contact.get("name") or "Unknown",
            phone=contact.get("phone_number") or "Unknown",
            prompt=prompt,
        )
        try:
            text = self._make_llm_call(system_prompt, user_prompt)
        except GenerationError:
            raise
        except Exception as e:
            logger.error(f"LLM call failed: {e}")
            raise GenerationError(str(e)) from e

        text = text.strip()
        if not text:
            raise GenerationError("AI service returned an empty message")
        return text

    def generate_unique(
        self,
        prompt: str,
        contact: Dict,
        previous_messages: Optional[List[str]] = None,
        max_retries: int = None,
    ) -> str:
        """
        Generate a message that is not a near-copy of anything in
        `previous_messages`. After `max_retries` similar results, one
        last attempt is made with an explicit "be different" instruction
        and returned as-is.
        """
        if not previous_messages:
            return self.generate(prompt, contact)
        if max_retries is None:
            max_retries = config.DUPLICATE_MAX_RETRIES

        for attempt in range(max_retries):
            message = self.generate(prompt, contact)
            if not is_duplicate(message, previous_messages):
                return message
            logger.info(f"Attempt {attempt + 1}/{max_retries}: message too similar, regenerating")

        return self.generate(prompt + UNIQUENESS_SUFFIX, contact)
