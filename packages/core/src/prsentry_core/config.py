import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from prsentry_core.prompts import BUILTIN_GUIDELINES

DEFAULT_CONFIG: dict = {
    "provider": "anthropic",
    "tiers": {
        "light": {
            "model": "claude-3-5-haiku-latest",
            "max_concurrency": 8,
            "max_attempts": 4,
            "min_interval_seconds": 0.0,
        },
        "heavy": {
            "model": "claude-sonnet-4-20250514",
            "max_concurrency": 4,
            "max_attempts": 4,
            "min_interval_seconds": 0.5,
        },
    },
    "budgets": {},  # per-model overrides: {model: {max_total_tokens, max_output_tokens, reserved_output_tokens}}
    "guidelines": None,  # None = use built-in default; set to a path string to override
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "review_draft_prs": False,
    "run_timeout_seconds": 900,
    "prompt_reserve_tokens": 2000,
    "tokenizer_encoding": "cl100k_base",
    "store": "comment",  # comment | sqlite | gist | memory
    "store_author": None,  # login that writes state comments; None = the token's user
    "batch_limit": 60,  # inline comments per posted review
}

# Model defaults used when --provider openai is picked without explicit tier models.
OPENAI_TIER_MODELS = {"light": "gpt-4o-mini", "heavy": "gpt-4o"}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _fresh_defaults() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(config_path: str = ".prsentry.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prsentry.yml in the current directory
      3. CLI argument overrides

    Nested sections (`tiers`, `budgets`) merge per key, so a file that only
    sets `tiers.heavy.max_concurrency` keeps every other tier default.
    """
    config = _fresh_defaults()

    path = Path(config_path)
    file_config: dict = {}
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config = _merge(config, file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Switching provider without naming models should not leave Anthropic model ids behind.
    if config["provider"] == "openai":
        file_tiers = file_config.get("tiers") or {}
        for tier, model in OPENAI_TIER_MODELS.items():
            if "model" not in (file_tiers.get(tier) or {}):
                config["tiers"][tier]["model"] = model

    # Resolve credentials from environment variables
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def load_guidelines(config: dict) -> str:
    """
    Load review guidelines.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Otherwise falls back to the built-in default.
    """
    custom_path = config.get("guidelines")
    if custom_path:
        p = Path(custom_path)
        if not p.exists():
            raise FileNotFoundError(f"Guidelines file not found: {custom_path}")
        return p.read_text()
    return BUILTIN_GUIDELINES


@dataclass(frozen=True)
class TierConfig:
    model: str
    max_concurrency: int = 4
    max_attempts: int = 4
    min_interval_seconds: float = 0.0
    backoff_initial_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    backoff_jitter_seconds: float = 1.0
    request_timeout_seconds: Optional[float] = 120.0

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_dict(cls, data: dict) -> "TierConfig":
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown tier settings: {', '.join(sorted(unknown))}")
        return cls(**data)


@dataclass(frozen=True)
class ReviewConfig:
    """Immutable run configuration threaded through the orchestrator.

    Built once from the merged config dict; nothing in the engine reads
    environment variables or the YAML file directly.
    """

    light: TierConfig
    heavy: TierConfig
    provider: str = "anthropic"
    budget_overrides: dict = field(default_factory=dict)
    exclude: tuple[str, ...] = ()
    review_draft_prs: bool = False
    run_timeout_seconds: Optional[float] = 900
    prompt_reserve_tokens: int = 2000
    tokenizer_encoding: str = "cl100k_base"

    @classmethod
    def from_dict(cls, config: dict) -> "ReviewConfig":
        tiers = config.get("tiers") or {}
        if "light" not in tiers or "heavy" not in tiers:
            raise ValueError("Configuration must define both 'tiers.light' and 'tiers.heavy'.")
        return cls(
            light=TierConfig.from_dict(tiers["light"]),
            heavy=TierConfig.from_dict(tiers["heavy"]),
            provider=config.get("provider", "anthropic"),
            budget_overrides=dict(config.get("budgets") or {}),
            exclude=tuple(config.get("exclude") or ()),
            review_draft_prs=bool(config.get("review_draft_prs", False)),
            run_timeout_seconds=config.get("run_timeout_seconds"),
            prompt_reserve_tokens=int(config.get("prompt_reserve_tokens", 2000)),
            tokenizer_encoding=config.get("tokenizer_encoding", "cl100k_base"),
        )

    def tier(self, name) -> TierConfig:
        name = getattr(name, "value", name)
        if name == "light":
            return self.light
        if name == "heavy":
            return self.heavy
        raise ValueError(f"Unknown tier: {name!r}")
