"""
Keepsake - KoboldCpp Client
HTTP client for a local LLM via the KoboldCpp API (fallback provider)
"""

import requests
from typing import Optional, List, Dict, Any
from dataclasses import dataclass


@dataclass
class KoboldResponse:
    """Response from KoboldCpp API."""
    text: str
    tokens_generated: int
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None


class KoboldClient:
    """
    Client for KoboldCpp API.

    Only used when the router's fallback is enabled; classification prompts
    are formatted as Llama-3 instruct turns.
    """

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:5001",
        max_context: int = 4096,
        max_length: int = 512,
        timeout: int = 120
    ):
        self.api_url = api_url.rstrip("/")
        self.max_context = max_context
        self.max_length = max_length
        self.timeout = timeout
        self._model_name: Optional[str] = None

    def is_available(self) -> bool:
        """Check if KoboldCpp is available and responding."""
        try:
            response = requests.get(
                f"{self.api_url}/api/v1/model",
                timeout=5
            )
            if response.status_code == 200:
                data = response.json()
                self._model_name = data.get("result", "Unknown")
                return True
            return False
        except (requests.RequestException, ValueError):
            return False

    def get_model_name(self) -> Optional[str]:
        """Get the currently loaded model name."""
        if self._model_name is None:
            self.is_available()
        return self._model_name

    def generate(
        self,
        prompt: str,
        max_length: Optional[int] = None,
        temperature: float = 0.7,
        stop_sequences: Optional[List[str]] = None
    ) -> KoboldResponse:
        """
        Generate a text completion.

        Args:
            prompt: The prompt to complete
            max_length: Maximum tokens to generate (uses default if None)
            temperature: Sampling temperature
            stop_sequences: List of sequences to stop generation

        Returns:
            KoboldResponse with generated text
        """
        if max_length is None:
            max_length = self.max_length

        payload = {
            "prompt": prompt,
            "max_length": max_length,
            "temperature": temperature,
            "max_context_length": self.max_context
        }

        if stop_sequences:
            payload["stop_sequence"] = stop_sequences

        try:
            response = requests.post(
                f"{self.api_url}/api/v1/generate",
                json=payload,
                timeout=self.timeout
            )

            if response.status_code == 200:
                results = response.json().get("results", [])

                if results:
                    text = results[0].get("text", "")
                    return KoboldResponse(
                        text=text.strip(),
                        tokens_generated=len(text.split()),  # Approximate
                        success=True
                    )

                return KoboldResponse(
                    text="",
                    tokens_generated=0,
                    success=False,
                    error="No results in response",
                    error_type="unknown"
                )

            return KoboldResponse(
                text="",
                tokens_generated=0,
                success=False,
                error=f"HTTP {response.status_code}: {response.text}",
                error_type="server_error" if response.status_code >= 500 else "bad_request"
            )

        except requests.Timeout:
            return KoboldResponse(
                text="",
                tokens_generated=0,
                success=False,
                error="Request timed out",
                error_type="timeout"
            )
        except requests.ConnectionError:
            return KoboldResponse(
                text="",
                tokens_generated=0,
                success=False,
                error="Connection failed - is KoboldCpp running?",
                error_type="connection_error"
            )
        except (requests.RequestException, ValueError) as e:
            return KoboldResponse(
                text="",
                tokens_generated=0,
                success=False,
                error=str(e),
                error_type="unknown"
            )

    def chat(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        max_length: Optional[int] = None,
        temperature: float = 0.7
    ) -> KoboldResponse:
        """Chat-style completion formatted for instruct-tuned models."""
        prompt_parts = []

        if system_prompt:
            prompt_parts.append(f"<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n\n{system_prompt}<|eot_id|>")
        else:
            prompt_parts.append("<|begin_of_text|>")

        for msg in messages:
            role = msg["role"]
            if role in ("user", "assistant"):
                prompt_parts.append(f"<|start_header_id|>{role}<|end_header_id|>\n\n{msg['content']}<|eot_id|>")

        prompt_parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")

        return self.generate(
            prompt="".join(prompt_parts),
            max_length=max_length,
            temperature=temperature,
            stop_sequences=["<|eot_id|>", "<|end_of_text|>"]
        )


# Global client instance
_kobold_client: Optional[KoboldClient] = None


def get_kobold_client() -> KoboldClient:
    """Get the global KoboldCpp client instance."""
    global _kobold_client
    if _kobold_client is None:
        from config import KOBOLD_API_URL, KOBOLD_MAX_CONTEXT, KOBOLD_MAX_LENGTH
        _kobold_client = KoboldClient(
            api_url=KOBOLD_API_URL,
            max_context=KOBOLD_MAX_CONTEXT,
            max_length=KOBOLD_MAX_LENGTH
        )
    return _kobold_client
