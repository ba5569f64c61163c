"""Constants for the Ralph Controller application.

This module defines the defaults used throughout the controller, including
directory paths, loop limits, detector thresholds and the text markers the
supervised agent is expected to emit.

The controller repeatedly runs a CLI coding agent (Claude Code, Codex) or a
local Ollama model against a prompt file, and decides after every iteration
whether to continue, switch model, or stop.
"""

from pathlib import Path

from ralph_controller.models.provider import ProviderType

# =============================================================================
# Provider Configuration
# =============================================================================
# Available executor providers - derived from the ProviderType enum
PROVIDERS = [p.value for p in ProviderType]

# Ollama speaks the OpenAI-compatible chat API on this address by default
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.1:8b"

# =============================================================================
# Project Files
# =============================================================================
DEFAULT_PROMPT_FILE = "prompt.md"
DEFAULT_PLAN_FILE = "implementation_plan.md"
DEFAULT_AGENTS_FILE = "agents.md"
DEFAULT_SPECS_DIRECTORY = "specs"

# =============================================================================
# Loop Limits
# =============================================================================
# Seconds to sleep between iterations
DEFAULT_ITERATION_DELAY = 1.0

# Local call budget per rolling hour
DEFAULT_MAX_CALLS_PER_HOUR = 100
RATE_LIMIT_WINDOW_SECONDS = 3600.0

# Used only for the estimated-cost display
DEFAULT_COST_PER_HOUR = 10.50

# Seconds the executor gets between the soft interrupt and the hard kill
FORCE_STOP_GRACE_PERIOD = 2.0

# Cooldown applied when a provider rate limit is detected without a reset time
PROVIDER_RATE_LIMIT_FALLBACK_SECONDS = 30 * 60

# Cooldown waits are chunked so cancellation is observed at least this often
MAX_WAIT_CHUNK_SECONDS = 60.0

# Pause-gate waits re-check cancellation at this interval
PAUSE_POLL_SECONDS = 0.5

# =============================================================================
# Circuit Breaker
# =============================================================================
NO_PROGRESS_THRESHOLD = 3
SAME_ERROR_THRESHOLD = 5
# An open circuit moves to half-open after this many seconds
CIRCUIT_RECOVERY_SECONDS = 60.0
# Length of the error key compared across iterations
ERROR_KEY_MAX_LENGTH = 100

# =============================================================================
# Response Analyzer
# =============================================================================
COMPLETION_SIGNAL_THRESHOLD = 2
TEST_ONLY_LOOP_THRESHOLD = 3
EXIT_CONFIDENCE_THRESHOLD = 90

# =============================================================================
# Multi-model Verification
# =============================================================================
DEFAULT_VERIFIER_INDEX = 1
DEFAULT_VERIFY_EVERY_N_ITERATIONS = 5
DEFAULT_MAX_VERIFICATION_ATTEMPTS = 3

# =============================================================================
# Agent Output Markers
# =============================================================================
STATUS_BLOCK_START = "---RALPH_STATUS---"
STATUS_BLOCK_END = "---END_STATUS---"
VERIFICATION_REQUEST_MARKER = "---FINAL_VERIFICATION_REQUEST---"
VERIFICATION_BLOCK_START = "---VERIFICATION_RESULT---"
VERIFICATION_BLOCK_END = "---END_VERIFICATION---"

# =============================================================================
# Application Directory Structure
# =============================================================================
# Base directory for controller data (~/.ralph-controller)
RALPH_HOME_DIR = Path.home() / ".ralph-controller"

# Per-run log files written by the CLI
LOG_DIR = RALPH_HOME_DIR / "logs"

# Environment variable prefix for configuration overrides
ENV_PREFIX = "RALPH_"
