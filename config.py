"""
Configuration module for Sandbox Codex.
Handles all environment variables, model specifications, and loop settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    # Empty TEMPERATURE means "let the service decide"
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "0")) if os.getenv("TEMPERATURE", "0") else None
    throughput_mode: str = os.getenv("THROUGHPUT_MODE", "cross-region")


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Sandbox Codex"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    checkpoint_dir: str = os.getenv(
        "CHECKPOINT_DIR",
        os.path.join(os.path.expanduser("~"), ".sandbox-codex", "checkpoints"),
    )
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "120"))


@dataclass
class LoopConfig:
    """Agent loop, history compaction and completion settings."""
    # Hard cap on ASK_MODEL entries per invocation
    recursion_limit: int = int(os.getenv("RECURSION_LIMIT", "25"))
    # deduplicate_repeats: keep at most this many copies of a user/assistant message ...
    max_duplicates: int = int(os.getenv("MAX_DUPLICATES", "3"))
    # ... within this many recent entries
    recent_window: int = int(os.getenv("RECENT_WINDOW", "10"))
    # detect_repetition_loop
    loop_threshold: int = int(os.getenv("LOOP_THRESHOLD", "3"))
    loop_window: int = int(os.getenv("LOOP_WINDOW", "10"))
    # compact_if_oversized
    max_history_length: int = int(os.getenv("MAX_HISTORY_LENGTH", "40"))
    recent_tail: int = int(os.getenv("RECENT_TAIL", "12"))
    max_milestones: int = int(os.getenv("MAX_MILESTONES", "3"))
    max_tool_call_turns: int = int(os.getenv("MAX_TOOL_CALL_TURNS", "3"))
    # deduplicate_tool_results
    tool_result_window: int = int(os.getenv("TOOL_RESULT_WINDOW", "5"))
    write_suppress_turns: int = int(os.getenv("WRITE_SUPPRESS_TURNS", "8"))
    read_suppress_turns: int = int(os.getenv("READ_SUPPRESS_TURNS", "10"))
    # How many recent tool results the completion detector scans for a success signal
    completion_lookback: int = int(os.getenv("COMPLETION_LOOKBACK", "20"))
    # Treat whitespace-only differences as "already written" (off: exact bytes only)
    whitespace_insensitive_match: bool = _env_bool("WHITESPACE_INSENSITIVE_MATCH", "false")
    max_parallel_tools: int = int(os.getenv("MAX_PARALLEL_TOOLS", "4"))
    # One initial attempt plus one retry
    model_max_attempts: int = int(os.getenv("MODEL_MAX_ATTEMPTS", "2"))
    install_manifest: str = os.getenv("INSTALL_MANIFEST", "package.json")


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only models with tool_use support can drive the agent loop.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()
loop_config = LoopConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_name(model_id: str) -> str:
    """Get the display name for a model ID"""
    model = get_model_by_id(model_id)
    return model["name"] if model else model_id


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown IDs get a minimal fallback."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": False,
    }


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
