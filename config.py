"""
Keepsake - Configuration
Feature flags, constants, and intervals
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# =============================================================================
# PATHS
# =============================================================================
PROJECT_ROOT = Path(__file__).parent
DATA_DIR = Path(os.getenv("KEEPSAKE_DATA_DIR", str(PROJECT_ROOT / "data")))
LOGS_DIR = Path(os.getenv("KEEPSAKE_LOGS_DIR", str(PROJECT_ROOT / "logs")))
DATABASE_PATH = DATA_DIR / "keepsake.db"
DIAGNOSTIC_LOG_PATH = LOGS_DIR / "diagnostic.log"
PROMPT_LOG_PATH = LOGS_DIR / "prompts.jsonl"

# =============================================================================
# VERSION
# =============================================================================
VERSION = "0.4.0"
PROJECT_NAME = "Keepsake"

# =============================================================================
# LLM CONFIGURATION
# =============================================================================
# Anthropic (Claude)
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")  # Default model
ANTHROPIC_MODEL_CLASSIFICATION = os.getenv("ANTHROPIC_MODEL_CLASSIFICATION", "claude-haiku-4-5-20251001")  # Real-time intent checks
ANTHROPIC_MODEL_EXTRACTION = os.getenv("ANTHROPIC_MODEL_EXTRACTION", "claude-sonnet-4-5-20250929")  # Batch extraction + mining
ANTHROPIC_MAX_TOKENS = int(os.getenv("ANTHROPIC_MAX_TOKENS", "2048"))
ANTHROPIC_TIMEOUT = int(os.getenv("ANTHROPIC_TIMEOUT", "60"))

# KoboldCpp (Local)
KOBOLD_API_URL = os.getenv("KOBOLD_API_URL", "http://127.0.0.1:5001")
KOBOLD_MAX_CONTEXT = int(os.getenv("KOBOLD_MAX_CONTEXT", "4096"))
KOBOLD_MAX_LENGTH = int(os.getenv("KOBOLD_MAX_LENGTH", "512"))

# Routing
LLM_PRIMARY_PROVIDER = os.getenv("LLM_PRIMARY_PROVIDER", "anthropic")  # 'anthropic' or 'kobold'
LLM_FALLBACK_ENABLED = os.getenv("LLM_FALLBACK_ENABLED", "false").lower() == "true"

# API Retry
# Automatic retry for transient errors (500, 502, 503, timeouts)
API_RETRY_MAX_ATTEMPTS = 3                    # Max retries for transient API errors
API_RETRY_INITIAL_DELAY = 1.0                 # Initial backoff delay in seconds
API_RETRY_BACKOFF_MULTIPLIER = 2.0            # Exponential backoff multiplier

# Error types that mean "the provider is down", not "the answer was bad"
PROVIDER_UNAVAILABLE_ERRORS = (
    "connection_error",
    "auth_error",
    "overloaded",
    "server_error",
    "rate_limited",
    "timeout",
)

# =============================================================================
# EMBEDDINGS
# =============================================================================
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2")

# =============================================================================
# DATABASE
# =============================================================================
DB_BUSY_TIMEOUT_MS = 10000

# =============================================================================
# LOGGING
# =============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_TO_FILE = True
LOG_TO_CONSOLE = True
PROMPT_LOG_ENABLED = os.getenv("PROMPT_LOG_ENABLED", "true").lower() == "true"

# =============================================================================
# REAL-TIME DISPATCH
# =============================================================================
# Classifier results below this confidence are treated as "no match".
# Matters most for identity: a false positive locks the wrong name forever.
CLASSIFIER_CONFIDENCE_THRESHOLD = 0.8
CLASSIFIER_TEMPERATURE = 0.1
REALTIME_CALL_TIMEOUT = float(os.getenv("REALTIME_CALL_TIMEOUT", "8.0"))  # seconds

# Identity memories are stored at this salience
IDENTITY_MEMORY_SALIENCE = 10.0

# =============================================================================
# RELATIONSHIP DUPLICATE POLICY
# =============================================================================
# Strategy: 'normalized' (exact normalized text), 'hash' (content hash of the
# normalized text) or 'substring' (legacy containment match)
RELATIONSHIP_DEDUP_STRATEGY = os.getenv("RELATIONSHIP_DEDUP_STRATEGY", "normalized")
RELATIONSHIP_DEDUP_WINDOW_DAYS = int(os.getenv("RELATIONSHIP_DEDUP_WINDOW_DAYS", "30"))

# =============================================================================
# BATCH EXTRACTION
# =============================================================================
EXTRACTION_TEMPERATURE = 0.2
EXTRACTION_MAX_TOKENS = 2000
EXTRACTION_MIN_CONTENT_LENGTH = 5
MEMORY_TYPES = ("fact", "decision", "goal", "event", "preference")
DEFAULT_SALIENCE = 5.0

# =============================================================================
# CONSOLIDATION
# =============================================================================
# Debounce: run after this many seconds without new messages
CONSOLIDATION_IDLE_SECONDS = float(os.getenv("CONSOLIDATION_IDLE_SECONDS", "300"))

# Memory strength (decay / strengthen)
DECAY_BASE_RATE = 0.05
DECAY_MIN_STRENGTH = 0.1
DECAY_ACCESS_WINDOW_DAYS = 7
DECAY_UNACCESSED_MULTIPLIER = 1.5
DECAY_INTERVAL_HOURS = 24                     # A memory decays at most once per interval
STRENGTHEN_BASE_GAIN = 0.1
STRENGTHEN_MAX_STRENGTH = 1.0
STRENGTHEN_FREQUENT_ACCESS = 3
HIGH_SALIENCE_THRESHOLD = 6.0

# Similarity graph
EDGE_SIMILARITY_THRESHOLD = 0.75
EDGE_MAX_PER_MEMORY = 10
EDGE_REINFORCE_AMOUNT = 0.1
EDGE_DECAY_RATE = 0.1
EDGE_DECAY_INTERVAL_HOURS = 24
EDGE_MIN_WEIGHT = 0.2                         # Edges at or below this are pruned
EDGE_SCAN_BATCH = 200

# Mining
PATTERN_BATCH_SIZE = 10
PATTERN_MIN_CONFIDENCE = 0.3
PATTERN_DORMANT_DAYS = 30
BELIEF_MIN_CONFIDENCE = 0.3
INSIGHT_MIN_CONFIDENCE = 0.5
INSIGHT_STALE_DAYS = 30
QUESTION_EXPIRY_DAYS = 14
MINING_TEMPERATURE = 0.3
MINING_MAX_TOKENS = 1500
