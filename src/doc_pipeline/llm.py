"""
Chat completion calls bounded by a classification deadline.

A document gets one time budget (``CLASSIFY_TIMEOUT``) for every model and
every retry together. Each request's timeout is capped by what is left of
that budget, so a classification abandoned by the worker stops making
requests shortly after the worker gives up on it.
"""

import time

import openai

from .errors import ClassificationTimeoutError
from .utils import retry

RETRYABLE_OPENAI_EXCEPTIONS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def classification_deadline(settings) -> float:
    """Monotonic time by which a classification must be finished."""
    return time.monotonic() + settings.CLASSIFY_TIMEOUT


class OpenAIChatMixin:
    """
    Mixin providing a retried, deadline-aware chat completion call.

    The mixin expects ``self.settings`` to expose ``LLM_MAX_RETRIES`` for the
    retry decorator and ``REQUEST_TIMEOUT`` as the per-request ceiling.
    """

    def _request_timeout(self, deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ClassificationTimeoutError("Classification time budget exhausted")
        return min(float(self.settings.REQUEST_TIMEOUT), remaining)

    @retry(retryable_exceptions=RETRYABLE_OPENAI_EXCEPTIONS)
    def _complete(self, model: str, messages: list[dict], *, deadline: float) -> str:
        """Return the text of one chat completion; raises once the deadline has passed."""
        response = openai.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.1,
            timeout=self._request_timeout(deadline),
        )
        return response.choices[0].message.content or ""
