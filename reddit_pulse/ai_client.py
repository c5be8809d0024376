"""OpenAI API Client Wrapper

This module provides an OpenAIClient wrapper around the official openai Python SDK
for JSON chat completions with optional image attachments. Includes per-call
timeouts, cost tracking, and structured error logging.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import openai
import structlog
from openai import APIConnectionError, InternalServerError


def _get_logger():
    """Get logger instance (allows for easier mocking in tests)."""
    return structlog.get_logger()


def build_user_content(user_prompt: str, image_urls: Optional[Sequence[str]] = None):
    """Build the user message content, multimodal when images are attached.

    Example:
        >>> build_user_content("Describe", ["https://i.redd.it/a.jpg"])
        [{'type': 'text', 'text': 'Describe'}, {'type': 'image_url', 'image_url': {'url': 'https://i.redd.it/a.jpg'}}]
    """
    if not image_urls:
        return user_prompt
    content: List[Dict[str, Any]] = [{"type": "text", "text": user_prompt}]
    content.extend(
        {"type": "image_url", "image_url": {"url": url}}
        for url in image_urls
    )
    return content


class OpenAIClient:
    """OpenAI API client wrapper with timeouts and cost tracking.

    Tracks token usage per calendar month and logs a warning once the
    estimated monthly cost crosses MONTHLY_COST_WARNING_THRESHOLD.

    Attributes:
        client: OpenAI SDK client instance
        model: Default model for requests
        timeout: Per-request timeout in seconds
        monthly_prompt_tokens: Prompt tokens used in the current calendar month
        monthly_completion_tokens: Completion tokens used in the current calendar month
        current_month: Current month tuple (year, month)

    Example:
        >>> client = OpenAIClient(api_key="sk-...")
        >>> result = await client.send_chat_completion(
        ...     system_prompt=SYSTEM_PROMPT,
        ...     user_prompt="Title: Battery is amazing",
        ...     image_urls=["https://i.redd.it/abc.jpg"]
        ... )
        >>> result['usage']
        {'prompt_tokens': 410, 'completion_tokens': 96, 'total_tokens': 506}
    """

    # Cost constants for gpt-4o-mini (per 1M tokens)
    COST_PER_1M_INPUT_TOKENS = 0.15
    COST_PER_1M_OUTPUT_TOKENS = 0.60
    MONTHLY_COST_WARNING_THRESHOLD = 60.0

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 30.0):
        """Initialize the client.

        Args:
            api_key: OpenAI API key
            model: Default model for requests
            timeout: Per-request timeout in seconds

        Raises:
            ValueError: If api_key is missing or empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("OpenAI API key is required but was empty.")

        # Retries are handled by the analysis stage, not the SDK
        self.client = openai.OpenAI(api_key=api_key.strip(), timeout=timeout, max_retries=0)
        self.model = model
        self.timeout = timeout
        self.monthly_prompt_tokens = 0
        self.monthly_completion_tokens = 0
        now = datetime.now()
        self.current_month = (now.year, now.month)

        _get_logger().info("openai_client_initialized", model=model, month=f"{now.year}-{now.month:02d}")

    @property
    def monthly_tokens(self) -> int:
        return self.monthly_prompt_tokens + self.monthly_completion_tokens

    def _check_and_reset_monthly_tracking(self) -> None:
        now = datetime.now()
        current_period = (now.year, now.month)

        if current_period != self.current_month:
            _get_logger().info(
                "monthly_cost_tracking_reset",
                old_month=f"{self.current_month[0]}-{self.current_month[1]:02d}",
                new_month=f"{now.year}-{now.month:02d}",
                old_tokens=self.monthly_tokens
            )
            self.monthly_prompt_tokens = 0
            self.monthly_completion_tokens = 0
            self.current_month = current_period

    def _calculate_monthly_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Add this request's tokens to the month and return the estimated monthly cost."""
        self._check_and_reset_monthly_tracking()
        self.monthly_prompt_tokens += prompt_tokens
        self.monthly_completion_tokens += completion_tokens

        input_cost = (self.monthly_prompt_tokens / 1_000_000) * self.COST_PER_1M_INPUT_TOKENS
        output_cost = (self.monthly_completion_tokens / 1_000_000) * self.COST_PER_1M_OUTPUT_TOKENS
        return input_cost + output_cost

    async def send_chat_completion(
        self,
        system_prompt: str,
        user_prompt: str,
        image_urls: Optional[Sequence[str]] = None,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 800,
        response_format: Optional[str] = "json_object",
    ) -> Dict[str, Any]:
        """Send a chat completion request.

        Args:
            system_prompt: System message defining assistant behavior
            user_prompt: User message with the content to analyze
            image_urls: Images attached to the user message
            model: Model name (default: the client's model)
            temperature: Sampling temperature (default: 0.3)
            max_tokens: Max completion tokens (default: 800)
            response_format: Response format type (default: json_object, None to omit)

        Returns:
            Dictionary with:
                - content (str): Raw response content from the assistant
                - usage (dict): prompt_tokens, completion_tokens, total_tokens

        Raises:
            APITimeoutError: The request exceeded the timeout
            RateLimitError: HTTP 429 from OpenAI
            APIConnectionError: Network/connection failures
            InternalServerError: 5xx server errors from OpenAI
            APIError: Other API errors
        """
        model = model or self.model

        try:
            create_kwargs: Dict[str, Any] = {
                "model": model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": build_user_content(user_prompt, image_urls)}
                ],
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
            if response_format:
                create_kwargs["response_format"] = {"type": response_format}

            response = self.client.chat.completions.create(**create_kwargs)

            content = response.choices[0].message.content
            prompt_tokens = response.usage.prompt_tokens
            completion_tokens = response.usage.completion_tokens
            total_tokens = prompt_tokens + completion_tokens

            usage = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": total_tokens
            }

            monthly_cost = self._calculate_monthly_cost(prompt_tokens, completion_tokens)

            _get_logger().info(
                "openai_chat_completion_success",
                model=model,
                image_count=len(image_urls or ()),
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                monthly_tokens=self.monthly_tokens,
                estimated_monthly_cost=round(monthly_cost, 2)
            )

            if monthly_cost >= self.MONTHLY_COST_WARNING_THRESHOLD:
                _get_logger().warning(
                    "monthly_cost_threshold_exceeded",
                    monthly_cost=round(monthly_cost, 2),
                    threshold=self.MONTHLY_COST_WARNING_THRESHOLD,
                    monthly_tokens=self.monthly_tokens,
                    month=f"{self.current_month[0]}-{self.current_month[1]:02d}"
                )

            return {
                "content": content,
                "usage": usage
            }

        except (APIConnectionError, InternalServerError) as e:
            _get_logger().error(
                "openai_api_error",
                error_type=type(e).__name__,
                error_message=str(e),
                model=model,
                retryable=True,
                user_prompt_length=len(user_prompt)
            )
            raise

        except Exception as e:
            _get_logger().error(
                "openai_api_error",
                error_type=type(e).__name__,
                error_message=str(e),
                model=model,
                user_prompt_length=len(user_prompt)
            )
            raise
