"""Configuration for the memory engine.

Loads configuration from ~/.cortex/config.json. Every recognised option is
declared on a dataclass with its default, so a missing file or a missing
section simply yields the defaults.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".cortex"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"
DEFAULT_MODEL = "llama-3.3-70b-versatile"

DEFAULT_PERMANENT_PREDICATES = (
    "NAME",
    "FULL_NAME",
    "ALLERGY",
    "MEDICAL_CONDITION",
    "BIRTHDAY",
    "BIRTH_DATE",
    "EMAIL",
    "PHONE",
    "ADDRESS",
    "LANGUAGE",
    "TIMEZONE",
)

DEFAULT_EPHEMERAL_PREDICATES = (
    "WEARING",
    "CURRENT_MOOD",
    "CURRENT_ACTIVITY",
    "CURRENT_LOCATION",
    "CURRENTLY",
    "RIGHT_NOW",
    "TODAY",
    "FEELING",
)

DEFAULT_MULTI_VALUED_PREDICATES = (
    "USES_TECH",
    "SPEAKS_LANGUAGE",
    "HAS_HOBBY",
    "KNOWS_PERSON",
    "WORKING_ON",
    "INTERESTED_IN",
    "SKILL",
)

# Substring match against the normalized predicate
DEFAULT_SAFETY_FRAGMENTS = (
    "HAS_ALLERGY",
    "ALLERGY",
    "ALLERGIC_TO",
    "MEDICAL_CONDITION",
    "MEDICAL",
    "DISABILITY",
    "DO_NOT",
    "NEVER",
    "BOUNDARY",
    "EMERGENCY_CONTACT",
    "BLOOD_TYPE",
)

CONFLICT_STRATEGIES = ("latest", "keep_both", "merge")


def _upper_all(values: list[str]) -> list[str]:
    return [v.upper() for v in values]


@dataclass
class DecayConfig:
    """Time-based relevance settings.

    Attributes:
        enabled: When False every fact has weight 1 and never expires.
        default_ttl_days: Lifetime of regular facts; None means never expire.
        low_weight_ttl_days: Lifetime of regular facts below the confidence threshold.
        low_confidence_threshold: Confidence under which the short TTL applies.
        permanent_predicates: Extra never-decaying predicates (added to defaults).
        ephemeral_predicates: Extra fast-decaying predicates (added to defaults).
        ephemeral_ttl_hours: Lifetime of ephemeral facts.
        reinforcement_threshold: Accesses after which a fact stops decaying.
        min_weight: Weight below which facts are left out of retrieval.
    """

    enabled: bool = True
    default_ttl_days: float | None = 90
    low_weight_ttl_days: float = 7
    low_confidence_threshold: float = 0.5
    permanent_predicates: list[str] = field(default_factory=list)
    ephemeral_predicates: list[str] = field(default_factory=list)
    ephemeral_ttl_hours: float = 24
    reinforcement_threshold: int = 3
    min_weight: float = 0.1

    def __post_init__(self) -> None:
        self.permanent_predicates = _merge_defaults(
            DEFAULT_PERMANENT_PREDICATES, self.permanent_predicates
        )
        self.ephemeral_predicates = _merge_defaults(
            DEFAULT_EPHEMERAL_PREDICATES, self.ephemeral_predicates
        )
        if self.default_ttl_days is not None and self.default_ttl_days <= 0:
            raise ValueError("default_ttl_days must be positive or None")
        if self.low_weight_ttl_days <= 0:
            raise ValueError("low_weight_ttl_days must be positive")
        if self.ephemeral_ttl_hours <= 0:
            raise ValueError("ephemeral_ttl_hours must be positive")
        if self.reinforcement_threshold < 1:
            raise ValueError("reinforcement_threshold must be at least 1")


@dataclass
class ConsolidationConfig:
    """Thresholds for the three-stage memory model."""

    short_term_hours: float = 1
    working_hours: float = 24
    working_access_threshold: int = 2
    long_term_access_threshold: int = 5

    def __post_init__(self) -> None:
        if self.short_term_hours < 0 or self.working_hours < 0:
            raise ValueError("stage hours must not be negative")
        if self.working_hours < self.short_term_hours:
            raise ValueError("working_hours must be >= short_term_hours")


@dataclass
class CacheConfig:
    """Query cache settings."""

    enabled: bool = True
    max_size: int = 100
    ttl_ms: int = 300_000
    similarity_threshold: float = 0.85

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("max_size must be at least 1")
        if not 0 <= self.similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be within [0, 1]")


@dataclass
class TieredConfig:
    """Hot/cold placement settings."""

    hot_fact_limit: int = 50
    hot_conversation_limit: int = 20
    auto_promote: bool = True
    auto_demote: bool = True

    def __post_init__(self) -> None:
        if self.hot_fact_limit < 1:
            raise ValueError("hot_fact_limit must be at least 1")
        if self.hot_conversation_limit < 1:
            raise ValueError("hot_conversation_limit must be at least 1")


@dataclass
class PipelineConfig:
    """Extraction pipeline settings."""

    min_confidence: float = 0.5
    conflict_strategy: str = "latest"
    context_fact_limit: int = 50
    max_queue_size: int = 0
    multi_valued_predicates: list[str] = field(
        default_factory=lambda: list(DEFAULT_MULTI_VALUED_PREDICATES)
    )
    safety_predicate_fragments: list[str] = field(
        default_factory=lambda: list(DEFAULT_SAFETY_FRAGMENTS)
    )
    default_confidence: float = 0.8
    default_importance: int = 5

    def __post_init__(self) -> None:
        if self.conflict_strategy not in CONFLICT_STRATEGIES:
            raise ValueError(
                f"conflict_strategy must be one of {CONFLICT_STRATEGIES}"
            )
        if not 0 <= self.min_confidence <= 1:
            raise ValueError("min_confidence must be within [0, 1]")
        self.multi_valued_predicates = _upper_all(self.multi_valued_predicates)
        self.safety_predicate_fragments = _upper_all(self.safety_predicate_fragments)


@dataclass
class HydrateConfig:
    """Read path settings."""

    max_facts: int = 20
    min_confidence: float = 0.5
    max_history: int = 5


@dataclass
class CortexConfig:
    """Top-level configuration."""

    data_dir: Path | None = None
    llm_model: str = DEFAULT_MODEL
    decay: DecayConfig = field(default_factory=DecayConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    tiered: TieredConfig = field(default_factory=TieredConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    hydrate: HydrateConfig = field(default_factory=HydrateConfig)

    def __post_init__(self) -> None:
        if self.data_dir is None:
            env_dir = os.environ.get("CORTEX_DATA_DIR")
            self.data_dir = Path(env_dir).expanduser() if env_dir else DEFAULT_DATA_DIR
        env_model = os.environ.get("CORTEX_MODEL")
        if env_model and self.llm_model == DEFAULT_MODEL:
            self.llm_model = env_model

    @property
    def db_path(self) -> Path:
        assert self.data_dir is not None
        return self.data_dir / "facts.db"

    @property
    def log_dir(self) -> Path:
        assert self.data_dir is not None
        return self.data_dir / "logs"


def _merge_defaults(defaults: tuple[str, ...], extra: list[str]) -> list[str]:
    merged = list(defaults)
    for item in _upper_all(extra):
        if item not in merged:
            merged.append(item)
    return merged


SECTIONS: dict[str, type] = {
    "decay": DecayConfig,
    "consolidation": ConsolidationConfig,
    "cache": CacheConfig,
    "tiered": TieredConfig,
    "pipeline": PipelineConfig,
    "hydrate": HydrateConfig,
}


def load_config(config_path: Path | None = None) -> CortexConfig:
    """Load CortexConfig from a JSON file.

    The config file mirrors the dataclasses, one object per section:
    ```json
    {
      "data_dir": "~/.cortex",
      "decay": {"ephemeral_ttl_hours": 12},
      "cache": {"similarity_threshold": 0.9},
      "pipeline": {"conflict_strategy": "latest"}
    }
    ```

    Args:
        config_path: Path to config file. Uses DEFAULT_CONFIG_PATH if None.

    Returns:
        CortexConfig instance with loaded values.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return CortexConfig()

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        return CortexConfig()
    except OSError as e:
        logger.warning("Cannot read %s: %s. Using defaults.", path, e)
        return CortexConfig()

    if not isinstance(data, dict):
        logger.warning("Config in %s is not an object. Using defaults.", path)
        return CortexConfig()

    return _parse_config(data)


def _parse_section(name: str, cls: type, raw: Any) -> Any:
    """Build one section, dropping unknown keys and invalid values."""
    if not isinstance(raw, dict):
        return cls()

    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in raw.items() if k in known}
    unknown = set(raw) - known
    if unknown:
        logger.warning("Ignoring unknown %s options: %s", name, sorted(unknown))

    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        logger.warning("Invalid %s config: %s. Using defaults.", name, e)
        return cls()


def _parse_config(data: dict[str, Any]) -> CortexConfig:
    """Parse config dictionary into CortexConfig."""
    data_dir: Path | None = None
    raw_dir = data.get("data_dir")
    if isinstance(raw_dir, str) and raw_dir:
        data_dir = Path(raw_dir).expanduser()

    model = data.get("llm_model")
    if not isinstance(model, str) or not model:
        model = DEFAULT_MODEL

    sections = {
        name: _parse_section(name, cls, data.get(name, {}))
        for name, cls in SECTIONS.items()
    }

    return CortexConfig(data_dir=data_dir, llm_model=model, **sections)
