#!/usr/bin/env python3
"""
Keepsake - Main Entry Point
Memory extraction and consolidation engine for a personal assistant

Usage:
    python main.py message "I'm Brian"        # Store + dispatch one message
    python main.py message "..." --conversation 3
    python main.py consolidate                # Run one consolidation pass now
    python main.py stats                      # Print extraction/graph stats
    python main.py watch                      # Read messages from stdin, consolidate when idle
"""

import sys
import json
import signal
import threading
import argparse
from pathlib import Path
from typing import Optional

# Ensure we can import from project root
sys.path.insert(0, str(Path(__file__).parent))

import config
from core.logger import (
    setup_logging,
    log_startup_banner,
    log_header,
    log_section,
    log_subsection,
    log_success,
    log_warning,
    log_error,
    log_info,
    log_ready,
    log_config
)
from core.context import EngineContext
from core.database import init_database
from core.embeddings import load_embedding_model, get_model_info
from core.exceptions import ProviderUnavailableError
from core.prompt_logger import get_log_stats
from concurrency.locks import LockManager
from llm.router import init_llm_router, get_llm_router, LLMProvider
from memory.conversation import ConversationStore
from memory.consolidation import ConsolidationCoordinator
from extraction.dispatcher import RealTimeDispatcher


# Global shutdown event
_shutdown_event = threading.Event()


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    print()  # New line after ^C
    log_warning("Shutdown signal received...")
    _shutdown_event.set()


def initialize_system() -> Optional[EngineContext]:
    """
    Initialize logging, the store, embeddings and the model router.

    Returns:
        EngineContext if successful, None otherwise
    """
    # Setup logging first
    config.LOGS_DIR.mkdir(parents=True, exist_ok=True)
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    setup_logging(
        log_file_path=config.DIAGNOSTIC_LOG_PATH,
        level=config.LOG_LEVEL,
        log_to_file=config.LOG_TO_FILE,
        log_to_console=config.LOG_TO_CONSOLE
    )

    log_startup_banner(config.VERSION, config.PROJECT_NAME)

    db = init_database(
        db_path=config.DATABASE_PATH,
        busy_timeout_ms=config.DB_BUSY_TIMEOUT_MS
    )
    if db is None:
        log_error("Failed to initialize database")
        return None

    # Without embeddings, memories are stored unembedded and picked up by
    # a later consolidation once the model loads
    embedding_loaded = load_embedding_model(config.EMBEDDING_MODEL)
    if not embedding_loaded:
        log_warning("=" * 60)
        log_warning("RUNNING IN DEGRADED MODE - Embeddings disabled")
        log_warning("Memories are still extracted, but edges and")
        log_warning("duplicate checks by similarity are skipped.")
        log_warning("=" * 60)

    print_configuration()

    locks = LockManager()

    init_llm_router(
        primary_provider=config.LLM_PRIMARY_PROVIDER,
        fallback_enabled=config.LLM_FALLBACK_ENABLED
    )
    check_llm_providers()

    ctx = EngineContext(db=db, llm=get_llm_router(), locks=locks)
    identity = ctx.identity.get_identity()
    if identity is not None:
        log_subsection(f"Identity: {identity.name} (locked)", "🔐")
    else:
        log_subsection("Identity: not yet known", "🔓")

    return ctx


def print_configuration() -> None:
    """Print configuration summary."""
    log_section("Configuration", "📡")
    log_subsection(f"Database: {config.DATABASE_PATH}")
    log_subsection(f"Diagnostic Log: {config.DIAGNOSTIC_LOG_PATH}")

    model_info = get_model_info()
    if model_info["loaded"]:
        log_subsection(f"Embedding Model: {model_info['model_name']} ({model_info['dimensions']} dim)")

    log_section("Real-Time Dispatch", "⚡")
    log_subsection(f"Confidence Threshold: {config.CLASSIFIER_CONFIDENCE_THRESHOLD}")
    log_subsection(f"Call Timeout: {config.REALTIME_CALL_TIMEOUT}s")
    log_subsection(
        f"Relationship Dedup: {config.RELATIONSHIP_DEDUP_STRATEGY} "
        f"(window: {config.RELATIONSHIP_DEDUP_WINDOW_DAYS} days)"
    )

    log_section("Consolidation", "🌙")
    log_subsection(f"Idle Trigger: {config.CONSOLIDATION_IDLE_SECONDS:g}s")
    log_subsection(f"Decay: base rate {config.DECAY_BASE_RATE}, floor {config.DECAY_MIN_STRENGTH}")
    log_subsection(
        f"Edges: similarity >= {config.EDGE_SIMILARITY_THRESHOLD}, "
        f"max {config.EDGE_MAX_PER_MEMORY}/memory, prune <= {config.EDGE_MIN_WEIGHT}"
    )
    log_subsection(f"Patterns: batch {config.PATTERN_BATCH_SIZE}, dormant after {config.PATTERN_DORMANT_DAYS} days")


def check_llm_providers() -> None:
    """Check and display LLM provider status."""
    log_section("LLM Routing", "🤖")

    router = get_llm_router()
    status = router.check_providers()

    primary = router.primary_provider
    primary_status = status.get(primary, (False, "Unknown"))
    if primary_status[0]:
        log_subsection(f"Primary ({primary.value}): ✅ {primary_status[1]}")
    else:
        log_subsection(f"Primary ({primary.value}): ❌ {primary_status[1]}")

    if config.LLM_FALLBACK_ENABLED:
        fallback = LLMProvider.KOBOLD
        fallback_status = status.get(fallback, (False, "Unknown"))
        mark = "✅" if fallback_status[0] else "❌"
        log_subsection(f"Fallback ({fallback.value}): {mark} {fallback_status[1]}")
    else:
        log_subsection("Fallback: DISABLED")


def handle_message(
    ctx: EngineContext,
    dispatcher: RealTimeDispatcher,
    text: str,
    conversation_id: Optional[int] = None
) -> Optional[dict]:
    """
    Store a user message and run real-time dispatch on it.

    Returns:
        The dispatch result as a dict, or None if the message was empty
    """
    conversations = ConversationStore(ctx)
    if conversation_id is None:
        conversation_id = conversations.create_conversation()

    message_id = conversations.add_message(conversation_id, "user", text)
    if message_id is None:
        return None

    result = dispatcher.process_message_realtime(
        text,
        conversation_id=conversation_id,
        message_id=message_id
    )
    payload = result.to_dict()
    payload["conversation_id"] = conversation_id
    payload["message_id"] = message_id
    return payload


def cmd_message(ctx: EngineContext, args) -> int:
    dispatcher = RealTimeDispatcher(ctx)
    payload = handle_message(ctx, dispatcher, args.text, args.conversation)
    if payload is None:
        log_warning("Nothing stored: message was empty")
        return 1
    print(json.dumps(payload, indent=2))
    return 0


def cmd_consolidate(ctx: EngineContext, args) -> int:
    log_header("Consolidation run")
    coordinator = ConsolidationCoordinator(ctx)
    try:
        result = coordinator.run_consolidation()
    except ProviderUnavailableError as e:
        log_error(f"Consolidation aborted, provider unavailable ({e.error_type}): {e}")
        return 2
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.errors else 0


def cmd_stats(ctx: EngineContext, args) -> int:
    coordinator = ConsolidationCoordinator(ctx)
    stats = coordinator.get_consolidation_stats()
    stats["prompt_log"] = get_log_stats()
    print(json.dumps(stats, indent=2, default=str))
    return 0


def cmd_watch(ctx: EngineContext, args) -> int:
    """
    Read one message per line from stdin into a single conversation.

    Each message is dispatched immediately and restarts the idle timer;
    consolidation runs once the input has been quiet for the idle period.
    """
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    dispatcher = RealTimeDispatcher(ctx)
    coordinator = ConsolidationCoordinator(ctx, idle_seconds=args.idle)
    conversation_id = args.conversation or ConversationStore(ctx).create_conversation()

    log_section("Watching", "👀")
    log_config("Conversation", str(conversation_id), indent=1)
    log_config("Idle trigger", f"{args.idle:g}s", indent=1)
    log_ready()

    try:
        for line in sys.stdin:
            if _shutdown_event.is_set():
                break
            text = line.strip()
            if not text:
                continue
            payload = handle_message(ctx, dispatcher, text, conversation_id)
            if payload and payload["matched"]:
                log_info(f"Created: {', '.join(payload['matched'])}", prefix="⚡")
            coordinator.scheduler.notify_activity()
    except KeyboardInterrupt:
        log_warning("Interrupted")

    # Flush whatever is still pending before exiting
    coordinator.scheduler.cancel()
    if not _shutdown_event.is_set():
        coordinator.scheduler.wait_for_idle()
        coordinator.scheduler.trigger_now(background=False)

    ctx.locks.log_stats()
    log_success("Keepsake shutdown complete")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Keepsake - personal memory extraction and consolidation",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    message = subparsers.add_parser("message", help="Store a user message and dispatch it in real time")
    message.add_argument("text", help="Message text")
    message.add_argument("--conversation", "-c", type=int, default=None, help="Existing conversation ID")
    message.set_defaults(func=cmd_message)

    consolidate = subparsers.add_parser("consolidate", help="Run one consolidation pass now")
    consolidate.set_defaults(func=cmd_consolidate)

    stats = subparsers.add_parser("stats", help="Print extraction and graph statistics")
    stats.set_defaults(func=cmd_stats)

    watch = subparsers.add_parser("watch", help="Read messages from stdin and consolidate when idle")
    watch.add_argument("--conversation", "-c", type=int, default=None, help="Existing conversation ID")
    watch.add_argument(
        "--idle",
        type=float,
        default=config.CONSOLIDATION_IDLE_SECONDS,
        help="Seconds of quiet before consolidation runs"
    )
    watch.set_defaults(func=cmd_watch)

    return parser


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = build_parser().parse_args(argv)

    try:
        ctx = initialize_system()
        if ctx is None:
            log_error("System initialization failed")
            return 1
        return args.func(ctx, args)

    except KeyboardInterrupt:
        log_warning("Interrupted")
        return 130

    except Exception as e:
        log_error(f"Fatal error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
