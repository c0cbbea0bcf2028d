"""
Keepsake - LLM Router
Routes engine requests to a provider, with fallback, cancellation and timeouts
"""

import threading
import time
from enum import Enum
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

from core.logger import log_warning, log_error
from core.prompt_logger import log_api_request
from llm.kobold_client import KoboldClient, get_kobold_client
from llm.anthropic_client import AnthropicClient, get_anthropic_client


class LLMProvider(Enum):
    """Available LLM providers."""
    ANTHROPIC = "anthropic"
    KOBOLD = "kobold"


class TaskType(Enum):
    """Types of LLM tasks."""
    CLASSIFICATION = "classification"  # Real-time intent checks (short, cheap)
    EXTRACTION = "extraction"          # Bulk memory extraction over a transcript
    ANALYSIS = "analysis"              # Consolidation mining (beliefs, patterns, insights)


@dataclass
class LLMResponse:
    """Unified response from any LLM provider."""
    text: str
    success: bool
    provider: LLMProvider
    tokens_in: int = 0
    tokens_out: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None  # "timeout", "cancelled", "overloaded", ...


class LLMRouter:
    """
    Routes LLM requests to providers.

    Handles:
    - Task-based model selection
    - Fallback to the local provider on failure
    - Caller cancellation and a bounded wait for real-time calls
    """

    def __init__(
        self,
        primary_provider: LLMProvider = LLMProvider.ANTHROPIC,
        fallback_enabled: bool = False
    ):
        self.primary_provider = primary_provider
        self.fallback_enabled = fallback_enabled
        self._anthropic: Optional[AnthropicClient] = None
        self._kobold: Optional[KoboldClient] = None

    def _get_anthropic(self) -> AnthropicClient:
        if self._anthropic is None:
            self._anthropic = get_anthropic_client()
        return self._anthropic

    def _get_kobold(self) -> KoboldClient:
        if self._kobold is None:
            self._kobold = get_kobold_client()
        return self._kobold

    def check_providers(self) -> Dict[LLMProvider, tuple]:
        """
        Check status of all providers.

        Returns:
            Dict mapping provider to (is_available, status_message)
        """
        status = {}

        client = self._get_anthropic()
        if client.is_available():
            status[LLMProvider.ANTHROPIC] = (True, f"Available ({client.model})")
        else:
            status[LLMProvider.ANTHROPIC] = (False, "API key not configured")

        if self.fallback_enabled:
            kobold = self._get_kobold()
            if kobold.is_available():
                status[LLMProvider.KOBOLD] = (True, f"Available ({kobold.get_model_name()})")
            else:
                status[LLMProvider.KOBOLD] = (False, "Not responding")

        return status

    def _model_for_task(self, task_type: TaskType) -> str:
        import config
        if task_type == TaskType.CLASSIFICATION:
            return config.ANTHROPIC_MODEL_CLASSIFICATION
        if task_type == TaskType.EXTRACTION:
            return config.ANTHROPIC_MODEL_EXTRACTION
        return config.ANTHROPIC_MODEL

    def complete(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        task_type: TaskType = TaskType.CLASSIFICATION,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None
    ) -> LLMResponse:
        """
        Send a completion request and wait for it.

        When ``cancel_event`` or ``timeout`` is given the provider call runs
        on a worker thread and this method stops waiting as soon as the
        event is set or the deadline passes. The abandoned call's result is
        discarded.

        Args:
            messages: List of {"role": ..., "content": ...} dicts
            system_prompt: Instruction prompt
            task_type: Type of task for model selection
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            cancel_event: Set by the caller to abandon the call
            timeout: Seconds to wait before giving up

        Returns:
            LLMResponse; ``error_type`` is "cancelled" or "timeout" when the
            wait was abandoned
        """
        if cancel_event is None and timeout is None:
            return self._complete_with_fallback(
                messages, system_prompt, task_type, temperature, max_tokens
            )

        provider = self.primary_provider
        if cancel_event is not None and cancel_event.is_set():
            return LLMResponse(text="", success=False, provider=provider,
                               error="Cancelled before request", error_type="cancelled")

        result: Dict[str, LLMResponse] = {}

        def worker():
            result["response"] = self._complete_with_fallback(
                messages, system_prompt, task_type, temperature, max_tokens
            )

        thread = threading.Thread(target=worker, daemon=True, name=f"llm-{task_type.value}")
        thread.start()

        deadline = time.monotonic() + timeout if timeout is not None else None
        while thread.is_alive():
            thread.join(0.05)
            if cancel_event is not None and cancel_event.is_set():
                log_warning(f"{task_type.value} request cancelled by caller")
                return LLMResponse(text="", success=False, provider=provider,
                                   error="Cancelled by caller", error_type="cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                log_warning(f"{task_type.value} request timed out after {timeout:.1f}s")
                return LLMResponse(text="", success=False, provider=provider,
                                   error=f"No response within {timeout:.1f}s", error_type="timeout")

        return result.get("response") or LLMResponse(
            text="", success=False, provider=provider,
            error="Provider thread returned no response", error_type="unknown"
        )

    def _complete_with_fallback(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str],
        task_type: TaskType,
        temperature: float,
        max_tokens: Optional[int]
    ) -> LLMResponse:
        provider = self.primary_provider
        response = self._send_to_provider(
            provider, messages, system_prompt, task_type, temperature, max_tokens
        )

        if not response.success and self.fallback_enabled:
            fallback_provider = (
                LLMProvider.KOBOLD if provider == LLMProvider.ANTHROPIC
                else LLMProvider.ANTHROPIC
            )
            log_warning(
                f"{provider.value} failed ({response.error_type}), "
                f"falling back to {fallback_provider.value}"
            )
            response = self._send_to_provider(
                fallback_provider, messages, system_prompt, task_type, temperature, max_tokens
            )

        return response

    def _send_to_provider(
        self,
        provider: LLMProvider,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str],
        task_type: TaskType,
        temperature: float,
        max_tokens: Optional[int]
    ) -> LLMResponse:
        """Send request to a specific provider."""
        settings = {"temperature": temperature, "max_tokens": max_tokens}

        if provider == LLMProvider.ANTHROPIC:
            client = self._get_anthropic()
            model = self._model_for_task(task_type)
            response = client.chat(
                messages=messages,
                system_prompt=system_prompt,
                max_tokens=max_tokens,
                temperature=temperature,
                model=model
            )

            log_api_request(
                task_type=task_type.value,
                provider=provider.value,
                model=model,
                system_prompt=system_prompt,
                messages=messages,
                settings=settings,
                response_text=response.text,
                tokens_in=response.input_tokens,
                tokens_out=response.output_tokens,
                success=response.success,
                error=response.error
            )

            return LLMResponse(
                text=response.text,
                success=response.success,
                provider=provider,
                tokens_in=response.input_tokens,
                tokens_out=response.output_tokens,
                error=response.error,
                error_type=response.error_type
            )

        if provider == LLMProvider.KOBOLD:
            client = self._get_kobold()
            response = client.chat(
                messages=messages,
                system_prompt=system_prompt,
                max_length=max_tokens,
                temperature=temperature
            )

            log_api_request(
                task_type=task_type.value,
                provider=provider.value,
                model=client.get_model_name() or "kobold-local",
                system_prompt=system_prompt,
                messages=messages,
                settings=settings,
                response_text=response.text,
                tokens_in=0,  # Kobold doesn't report input tokens
                tokens_out=response.tokens_generated,
                success=response.success,
                error=response.error
            )

            return LLMResponse(
                text=response.text,
                success=response.success,
                provider=provider,
                tokens_out=response.tokens_generated,
                error=response.error,
                error_type=response.error_type
            )

        log_error(f"Unknown provider: {provider}")
        return LLMResponse(
            text="",
            success=False,
            provider=provider,
            error=f"Unknown provider: {provider}",
            error_type="unknown"
        )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        task_type: TaskType = TaskType.ANALYSIS,
        max_tokens: Optional[int] = None,
        temperature: float = 0.3
    ) -> LLMResponse:
        """Simple text generation (wraps complete with a single user message)."""
        return self.complete(
            messages=[{"role": "user", "content": prompt}],
            system_prompt=system_prompt,
            task_type=task_type,
            max_tokens=max_tokens,
            temperature=temperature
        )


# Global router instance
_router: Optional[LLMRouter] = None


def get_llm_router() -> LLMRouter:
    """Get the global LLM router instance."""
    global _router
    if _router is None:
        from config import LLM_PRIMARY_PROVIDER, LLM_FALLBACK_ENABLED
        _router = LLMRouter(
            primary_provider=LLMProvider(LLM_PRIMARY_PROVIDER),
            fallback_enabled=LLM_FALLBACK_ENABLED
        )
    return _router


def init_llm_router(
    primary_provider: str = "anthropic",
    fallback_enabled: bool = False
) -> LLMRouter:
    """Initialize the global LLM router."""
    global _router
    _router = LLMRouter(
        primary_provider=LLMProvider(primary_provider),
        fallback_enabled=fallback_enabled
    )
    return _router
