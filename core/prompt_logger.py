"""
Keepsake - Prompt Logger
JSON Lines record of every classification / extraction call
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any
from threading import Lock

import config

# Thread-safe file writing
_write_lock = Lock()


def log_api_request(
    task_type: str,
    provider: str,
    model: str,
    system_prompt: Optional[str],
    messages: List[Dict[str, Any]],
    settings: Dict[str, Any],
    response_text: str,
    tokens_in: int,
    tokens_out: int,
    success: bool,
    error: Optional[str] = None
) -> None:
    """
    Append an API request/response pair to the prompt log.

    Args:
        task_type: Router task type (classification, extraction, analysis)
        provider: LLM provider name (anthropic, kobold)
        model: Model identifier
        system_prompt: Instruction prompt sent with the request
        messages: Message array
        settings: Request settings (temperature, max_tokens)
        response_text: The raw response text, before repair/validation
        tokens_in: Input token count
        tokens_out: Output token count
        success: Whether the request succeeded
        error: Error message if failed
    """
    if not config.PROMPT_LOG_ENABLED:
        return

    entry = {
        "timestamp": datetime.now().isoformat(),
        "task_type": task_type,
        "provider": provider,
        "model": model,
        "system_prompt": system_prompt,
        "messages": messages,
        "settings": settings,
        "response": {
            "text": response_text,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "success": success,
            "error": error
        }
    }

    _write_entry(config.PROMPT_LOG_PATH, entry)


def _write_entry(path: Path, entry: Dict[str, Any]) -> None:
    """Write a single entry to the log file (thread-safe)."""
    path.parent.mkdir(parents=True, exist_ok=True)

    with _write_lock:
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            # Prompt logging must never break extraction
            print(f"Warning: Failed to write prompt log: {e}")


def get_log_stats() -> Dict[str, Any]:
    """
    Summarise the prompt log.

    Returns:
        Dict with entry count, failures and token totals per task type
    """
    path = config.PROMPT_LOG_PATH
    stats: Dict[str, Any] = {"entries": 0, "failures": 0, "by_task": {}}

    if not path.exists():
        return stats

    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue

            stats["entries"] += 1
            response = entry.get("response", {})
            if not response.get("success", False):
                stats["failures"] += 1

            task = stats["by_task"].setdefault(
                entry.get("task_type", "unknown"),
                {"calls": 0, "tokens_in": 0, "tokens_out": 0}
            )
            task["calls"] += 1
            task["tokens_in"] += response.get("tokens_in", 0)
            task["tokens_out"] += response.get("tokens_out", 0)

    return stats
