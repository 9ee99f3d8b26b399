"""
External vision classifier used when the local heuristics are inconclusive.

Anything with a `classify(image_png, prompt, deadline=None) -> str` method can
be used as a vision classifier. The reply is expected in "LABEL:CONFIDENCE" form and is
parsed by `sprite_slicer.classification.parse_vision_response`.
"""

from __future__ import annotations

import base64
import os
import time
from typing import Protocol, runtime_checkable

from dotenv import load_dotenv
from loguru import logger
from openai import APIConnectionError, APITimeoutError, OpenAI, RateLimitError
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, stop_any, wait_exponential

from sprite_slicer.errors import VisionClassifierError

DEFAULT_MODEL = "gpt-4o-mini"

CLASSIFICATION_PROMPT = (
    "Classify this image segment from an email template sprite sheet. Is it: "
    "'color' (colorful illustration), 'mono' (monochrome/outline version), or "
    "'logo' (company logo)? Respond with just the classification and confidence "
    "(0-1) in format: TYPE:CONFIDENCE"
)


@runtime_checkable
class VisionClassifier(Protocol):
    def classify(self, image_png: bytes, prompt: str, deadline: float | None = None) -> str:
        """
        Return the raw "LABEL:CONFIDENCE" answer for a PNG encoded image.

        `deadline` is a `time.monotonic()` timestamp after which the answer
        is no longer wanted.
        """
        ...


def _past_deadline(retry_state: RetryCallState) -> bool:
    deadline = retry_state.kwargs.get("deadline")
    return deadline is not None and time.monotonic() >= deadline


class OpenAIVisionClassifier:
    """
    Vision classifier backed by the OpenAI chat completions API.

    The client is created on first use, so constructing this class needs no
    credentials. Runs whose segments are all classified by the heuristics
    never touch the network.
    """

    def __init__(self, model: str | None = None, api_key: str | None = None,
                 timeout: float = 30.0):
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            load_dotenv()
            api_key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise VisionClassifierError("OPENAI_API_KEY is required for vision classification")
            self.model = self.model or os.getenv("SPRITE_SLICER_VISION_MODEL", DEFAULT_MODEL)
            self._client = OpenAI(api_key=api_key, timeout=self.timeout)
        return self._client

    @retry(
        retry=retry_if_exception_type((RateLimitError, APIConnectionError, APITimeoutError)),
        stop=stop_any(stop_after_attempt(3), _past_deadline),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def classify(self, image_png: bytes, prompt: str = CLASSIFICATION_PROMPT,
                 deadline: float | None = None) -> str:
        """
        Ask the model for a "LABEL:CONFIDENCE" answer.

        With a `deadline`, each request timeout is capped at the time left and
        no request or retry is started once the deadline has passed. Calls
        abandoned by the caller therefore stop using the API soon after.
        """
        client = self._get_client()
        timeout = self.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise VisionClassifierError("deadline exceeded before the vision request was sent")
            timeout = min(timeout, remaining)
        encoded = base64.b64encode(image_png).decode("ascii")

        response = client.chat.completions.create(
            model=self.model,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:image/png;base64,{encoded}",
                            "detail": "low",
                        },
                    },
                ],
            }],
            max_tokens=50,
            temperature=0,
            timeout=timeout,
        )

        if not response.choices:
            raise VisionClassifierError("Vision classifier returned no choices")
        content = response.choices[0].message.content or ""
        logger.debug(f"[vision] {self.model} answered {content!r}")
        return content
