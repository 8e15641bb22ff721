"""
Coachstream Configuration Loader

Loads configuration from:
1. Environment variables (.env)
2. config.yml (YAML file)
3. Default values

Environment variables take precedence over YAML values.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


# Load .env file
load_dotenv()


# =============================================================================
# Pydantic Configuration Models
# =============================================================================

class SystemConfig(BaseModel):
    """System-level configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    log_level: str = "INFO"
    log_dir: Optional[str] = None
    timezone: str = "Europe/Berlin"
    default_coach: str = "ares"


class DatabaseConfig(BaseModel):
    """SQLite storage configuration."""
    path: str = "./data/coachstream.db"
    in_memory: bool = False


class AuthConfig(BaseModel):
    """Static bearer tokens mapped to user ids."""
    tokens: Dict[str, str] = Field(default_factory=dict)


class ProviderConfig(BaseModel):
    """A single OpenAI-compatible completion provider."""
    base_url: str
    api_key_env: str
    fallback_model: Optional[str] = None
    timeout: float = 120.0


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "gateway": ProviderConfig(
            base_url="https://ai.gateway.lovable.dev/v1",
            api_key_env="LOVABLE_API_KEY",
            fallback_model="google/gemini-2.5-flash",
        ),
        "perplexity": ProviderConfig(
            base_url="https://api.perplexity.ai",
            api_key_env="PERPLEXITY_API_KEY",
        ),
        "openai": ProviderConfig(
            base_url="https://api.openai.com/v1",
            api_key_env="OPENAI_API_KEY",
            fallback_model="gpt-4o-mini",
        ),
    }


def _default_chains() -> Dict[str, List[str]]:
    return {
        "gateway": ["gateway", "openai"],
        "perplexity": ["perplexity", "gateway"],
        "openai": ["openai", "gateway"],
    }


class RouterConfig(BaseModel):
    """Model classification and fallback configuration."""
    fast_model: str = "google/gemini-3-flash-preview"
    standard_model: str = "google/gemini-3-pro-preview"
    research_model: str = "sonar-deep-research"
    default_provider: str = "gateway"
    research_provider: str = "perplexity"
    fast_max_chars: int = 150
    fast_max_conversation: int = 5
    complexity_threshold: float = 0.7
    fallback_chains: Dict[str, List[str]] = Field(default_factory=_default_chains)


class BreakerConfig(BaseModel):
    """Circuit breaker thresholds."""
    error_threshold: int = 5
    window_seconds: float = 300.0
    recovery_timeout: float = 90.0


class ContextConfig(BaseModel):
    """Context aggregation limits."""
    loader_timeout: float = 5.0
    knowledge_top_k: int = 5
    history_fetch: int = 12
    insight_limit: int = 30


class PromptConfig(BaseModel):
    """Prompt assembly budgets."""
    history_turns: int = 6
    history_chars: int = 200
    knowledge_chars: int = 400
    insights_per_category: int = 3
    prompt_snapshot_chars: int = 5000
    output_snapshot_chars: int = 10000


class MemoryConfig(BaseModel):
    """Memory pipeline configuration."""
    dedup_mode: str = "semantic"
    dedup_threshold: float = 0.92
    min_message_length: int = 15
    min_insight_length: int = 10
    extraction_model: str = "google/gemini-2.5-flash"
    extraction_provider: str = "gateway"
    existing_limit: int = 50
    pattern_source_limit: int = 100
    staleness_days: int = 90
    protected_importances: List[str] = Field(default_factory=lambda: ["critical", "high"])
    pattern_retention_days: int = 30
    cleanup_interval_hours: int = 24


class EmbeddingsConfig(BaseModel):
    """Embeddings configuration."""
    backend: str = "http"
    model_name: str = "text-embedding-3-small"
    dimensions: int = 1536
    provider: str = "openai"
    local_model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cpu"


class TasksConfig(BaseModel):
    """Background task execution mode (detached or inline)."""
    mode: str = "detached"


class Config(BaseModel):
    """Main configuration container."""
    system: SystemConfig = Field(default_factory=SystemConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    providers: Dict[str, ProviderConfig] = Field(default_factory=_default_providers)
    router: RouterConfig = Field(default_factory=RouterConfig)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    prompt: PromptConfig = Field(default_factory=PromptConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)

    def provider_key(self, name: str) -> Optional[str]:
        """Return the credential for a provider, or None when unconfigured."""
        provider = self.providers.get(name)
        if provider is None:
            return None
        return os.getenv(provider.api_key_env) or None


# =============================================================================
# Configuration Loading
# =============================================================================

ENV_PREFIX = "COACH_"


def find_config_file() -> Optional[Path]:
    """Find the config.yml file, searching up the directory tree."""
    explicit = os.getenv("COACH_CONFIG_FILE")
    if explicit:
        path = Path(explicit)
        return path if path.exists() else None

    current = Path(__file__).parent

    # Search up to 4 levels
    for _ in range(4):
        config_path = current / "config.yml"
        if config_path.exists():
            return config_path
        current = current.parent

    cwd_config = Path.cwd() / "config.yml"
    if cwd_config.exists():
        return cwd_config

    return None


def load_yaml_config(config_path: Path) -> dict:
    """Load configuration from YAML file."""
    try:
        with open(config_path, "r") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        print(f"Warning: Could not load config from {config_path}: {e}")
        return {}


def apply_env_overrides(config_dict: dict, environ: Optional[Dict[str, str]] = None) -> dict:
    """Apply environment variable overrides to config dictionary.

    Environment variables are mapped using COACH_ prefix and double underscores
    for nesting. For example:
    - COACH_SYSTEM__PORT=9000 -> config['system']['port'] = 9000
    - COACH_MEMORY__DEDUP_MODE=soft -> config['memory']['dedup_mode'] = 'soft'
    - COACH_PROVIDERS__OPENAI__TIMEOUT=30 -> config['providers']['openai']['timeout'] = 30
    """
    environ = os.environ if environ is None else environ

    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key == "COACH_CONFIG_FILE":
            continue

        parts = key[len(ENV_PREFIX):].lower().split("__")
        target = config_dict
        for part in parts[:-1]:
            existing = target.get(part)
            if not isinstance(existing, dict):
                existing = {}
                target[part] = existing
            target = existing
        target[parts[-1]] = _parse_env_value(value)

    return config_dict


def _parse_env_value(value: str):
    """Parse environment variable value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def load_config() -> Config:
    """Load configuration from YAML file and environment variables.

    Returns:
        Config: Validated configuration object
    """
    config_path = find_config_file()
    config_dict = load_yaml_config(config_path) if config_path else {}
    config_dict = apply_env_overrides(config_dict)

    # Provider overrides merge into the defaults instead of replacing them
    if "providers" in config_dict:
        merged = {name: p.model_dump() for name, p in _default_providers().items()}
        for name, values in (config_dict.get("providers") or {}).items():
            merged.setdefault(name, {}).update(values or {})
        config_dict["providers"] = merged

    return Config(**config_dict)


# =============================================================================
# Global Configuration Instance
# =============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads on first call and caches it. Use reload_config() to force a reload.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Force reload of configuration from files."""
    global _config
    _config = load_config()
    return _config
