"""Configuration for texforge with validation."""

from pathlib import Path
from typing import Optional, Dict, List
from pydantic import BaseModel, Field, field_validator, ConfigDict
import structlog

from texforge.tiers import SubscriptionTier

try:
    import toml
    HAS_TOML = True
except ImportError:
    HAS_TOML = False

log = structlog.get_logger()


class ModelConfig(BaseModel):
    """A model offered by a provider and the minimum tier that may use it."""
    id: str
    tier: SubscriptionTier = SubscriptionTier.FREE

    @field_validator('id')
    @classmethod
    def id_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('Model id cannot be empty')
        return v.strip()

    @field_validator('tier', mode='before')
    @classmethod
    def parse_tier(cls, v):
        return SubscriptionTier.parse(v)


class ProviderConfig(BaseModel):
    """Connection settings for one AI provider."""
    display_name: str
    kind: str = Field(default="openai", pattern="^(openai|anthropic|huggingface)$")
    base_url: str
    api_key_env: str
    models: List[ModelConfig] = Field(default_factory=list)
    # None means the provider is not metered
    token_budget: Optional[int] = Field(default=None, gt=0)
    extra_headers: Dict[str, str] = Field(default_factory=dict)


class GenerationConfig(BaseModel):
    """Parameters shared by every provider call."""
    temperature: float = Field(ge=0, le=2, default=0.2)
    max_tokens: int = Field(gt=0, default=4000)
    timeout_seconds: float = Field(gt=0, default=60.0)
    rate_limit_cooldown_seconds: float = Field(gt=0, default=300.0)
    repair_model: str = "gpt-4o"


class CompilerConfig(BaseModel):
    """Settings for the external typesetting binary."""
    binary: str = "tectonic"
    timeout_seconds: float = Field(gt=0, default=120.0)
    probe_timeout_seconds: float = Field(gt=0, default=2.0)
    chatter: str = Field(default="minimal", pattern="^(minimal|default)$")
    keep_logs: bool = True
    work_root: Optional[Path] = None  # None = system temp dir


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "groq": ProviderConfig(
            display_name="Groq",
            base_url="https://api.groq.com/openai/v1",
            api_key_env="GROQ_API_KEY",
            models=[ModelConfig(id="mixtral-8x7b", tier="free")],
            token_budget=1_000_000,
        ),
        "together": ProviderConfig(
            display_name="TogetherAI",
            base_url="https://api.together.xyz/v1",
            api_key_env="TOGETHER_API_KEY",
            models=[ModelConfig(id="mistral-7b-instruct", tier="free")],
        ),
        "huggingface": ProviderConfig(
            display_name="HuggingFace",
            kind="huggingface",
            base_url="https://api-inference.huggingface.co/models",
            api_key_env="HUGGINGFACE_API_KEY",
            models=[ModelConfig(id="HuggingFaceH4/zephyr-7b-beta", tier="free")],
        ),
        "anthropic": ProviderConfig(
            display_name="Anthropic",
            kind="anthropic",
            base_url="https://api.anthropic.com/v1",
            api_key_env="ANTHROPIC_API_KEY",
            models=[
                ModelConfig(id="claude-3-7-sonnet-20250219", tier="pro"),
                ModelConfig(id="claude-3-haiku-20240307", tier="basic"),
            ],
        ),
        "openai": ProviderConfig(
            display_name="OpenAI",
            base_url="https://api.openai.com/v1",
            api_key_env="OPENAI_API_KEY",
            models=[
                ModelConfig(id="gpt-4o", tier="power"),
                ModelConfig(id="gpt-3.5-turbo", tier="basic"),
            ],
        ),
        "openrouter": ProviderConfig(
            display_name="OpenRouter",
            base_url="https://openrouter.ai/api/v1",
            api_key_env="OPENROUTER_API_KEY",
            models=[
                ModelConfig(id="google/gemini-pro", tier="basic"),
                ModelConfig(id="anthropic/claude-3-sonnet", tier="pro"),
                ModelConfig(id="openai/gpt-4", tier="power"),
            ],
            extra_headers={
                "HTTP-Referer": "http://localhost:5000",
                "X-Title": "AI LaTeX Generator",
            },
        ),
    }


DEFAULT_CHAIN = ["groq", "together", "huggingface", "anthropic", "openai", "openrouter"]


class TexforgeConfig(BaseModel):
    """Main configuration for texforge with validation."""

    model_config = ConfigDict(validate_assignment=True)

    # Providers, keyed by provider name
    providers: Dict[str, ProviderConfig] = Field(default_factory=_default_providers)
    # Fallback priority; names must be keys of `providers`
    chain: List[str] = Field(default_factory=lambda: list(DEFAULT_CHAIN))

    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    compiler: CompilerConfig = Field(default_factory=CompilerConfig)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    json_logs: bool = False

    @field_validator('chain')
    @classmethod
    def chain_has_no_duplicates(cls, v):
        if len(set(v)) != len(v):
            raise ValueError('chain must not list a provider twice')
        return v

    @classmethod
    def load(cls, path: Optional[str] = None) -> 'TexforgeConfig':
        """Load configuration from TOML file.

        Search order if path not provided:
        1. ./texforge.toml (project-specific)
        2. ~/.texforge/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            TexforgeConfig instance
        """
        if path is None:
            candidates = [
                Path("texforge.toml"),
                Path("~/.texforge/config.toml").expanduser()
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        if path and Path(path).exists():
            if not HAS_TOML:
                log.warning("toml_not_installed", fallback="defaults")
                return cls()

            try:
                data = toml.load(path)
                log.info("config_loaded", path=path)
                return cls(**data)
            except Exception as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

        log.info("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to TOML file.

        Args:
            path: File path to save to
        """
        if not HAS_TOML:
            raise RuntimeError("toml package not installed")

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            data = self.model_dump(mode='json', exclude_none=True)
            toml.dump(data, f)
        log.info("config_saved", path=path)


def validate_config(config: TexforgeConfig, env: Optional[Dict[str, str]] = None) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Configuration to validate
        env: Environment used to look up credentials (defaults to os.environ)

    Returns:
        List of warning messages (empty if all good)
    """
    import os

    env = os.environ if env is None else env
    warnings = []

    for name in config.chain:
        if name not in config.providers:
            warnings.append(f"Chain lists unknown provider '{name}'")

    for name, provider in config.providers.items():
        if not provider.models:
            warnings.append(f"Provider '{name}' has no models configured")

    credentialed = [
        name for name, provider in config.providers.items()
        if env.get(provider.api_key_env)
    ]
    if not credentialed:
        warnings.append(
            "No provider credentials found; set one of: "
            + ", ".join(p.api_key_env for p in config.providers.values())
        )

    known_models = {
        model.id for provider in config.providers.values() for model in provider.models
    }
    if config.generation.repair_model not in known_models:
        warnings.append(
            f"Repair model '{config.generation.repair_model}' is not offered by any provider"
        )

    return warnings
