"""Configuration models for the memory subsystem."""

import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mnemon.xdg import get_xdg_config_path, get_xdg_data_path

DEFAULT_EXTRACT_MODEL = "openai:gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"
MAX_EXTRACTION_HINT_CHARS = 2000


def _get_default_db_path() -> Path:
    """Get the default database location."""
    return get_xdg_data_path() / "memories.duckdb"


class MemorySettings(BaseModel):
    """Per-agent memory behaviour."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    passive_updates_enabled: bool = False
    max_memories: int = Field(default=15, gt=0)  # injected per turn
    max_stored_memories: int = Field(default=200, gt=0)  # hard cap, enforced by eviction
    decay_rate: float = Field(default=0.1, ge=0, le=1)  # strength lost per week without access
    reinforce_amount: float = Field(default=0.2, ge=0, le=1)
    similarity_weight: float = Field(default=0.5, ge=0, le=1)
    min_strength: float = Field(default=0.1, ge=0, le=1)
    extraction_hint: str = ""

    @field_validator("extraction_hint", mode="before")
    @classmethod
    def clip_extraction_hint(cls, v):
        """Keep agent-supplied extraction guidance short."""
        if v is None:
            return ""
        return str(v)[:MAX_EXTRACTION_HINT_CHARS].strip()


class AgentConfig(BaseModel):
    """Configuration for a single agent known to the subsystem."""

    name: Optional[str] = None
    memory: MemorySettings = Field(default_factory=MemorySettings)


class WorkerSettings(BaseModel):
    """Passive memory worker tuning."""

    tick_seconds: float = Field(default=1.5, gt=0)
    lease_seconds: int = Field(default=180, gt=0)
    extract_model: str = DEFAULT_EXTRACT_MODEL
    refine_model: Optional[str] = None  # falls back to extract_model
    transcript_max_tokens: int = Field(default=4000, gt=0)
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embeddings_enabled: bool = True

    def resolve_extract_model(self) -> str:
        return os.environ.get("MNEMON_PASSIVE_MODEL") or self.extract_model

    def resolve_refine_model(self) -> str:
        return os.environ.get("MNEMON_REFINE_MODEL") or self.refine_model or self.resolve_extract_model()


class MnemonConfig(BaseModel):
    """Main configuration."""

    db_path: Path = Field(default_factory=_get_default_db_path)
    log_level: str = "info"
    agents: Dict[str, AgentConfig] = Field(default_factory=dict)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        return self.agents.get(agent_id)

    def memory_settings(self, agent_id: str) -> MemorySettings:
        """Settings for an agent, defaults when the agent is not configured."""
        agent = self.agents.get(agent_id)
        return agent.memory if agent else MemorySettings()


def _expand_env_vars(data: dict, *keys: str) -> None:
    """Expand environment variables in the specified string-valued keys in-place."""
    for key in keys:
        if key in data and isinstance(data[key], str):
            data[key] = os.path.expandvars(data[key])


def load_config(path: Optional[Path] = None) -> MnemonConfig:
    """Load configuration from YAML.

    Args:
        path: Path to config file. If None, uses default XDG location

    Returns:
        MnemonConfig instance. Returns defaults if the default file doesn't exist.

    Raises:
        ValueError: If an explicit config file is missing or invalid
    """
    if path is None:
        path = get_xdg_config_path("config.yaml")
        if not path.exists():
            return MnemonConfig()

    if not path.exists():
        raise ValueError(f"Config not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config must be a mapping: {path}")

    _expand_env_vars(data, "db_path", "log_level")
    if "db_path" in data:
        data["db_path"] = Path(data["db_path"]).expanduser()

    worker = data.get("worker")
    if isinstance(worker, dict):
        _expand_env_vars(worker, "extract_model", "refine_model", "embedding_model")

    return MnemonConfig.model_validate(data)


def save_config(config: MnemonConfig, path: Optional[Path] = None) -> Path:
    """Save configuration to a YAML file.

    Args:
        config: MnemonConfig instance to save
        path: Path to save config. If None, uses default XDG location

    Returns:
        Path where config was saved
    """
    if path is None:
        path = get_xdg_config_path("config.yaml")

    path.parent.mkdir(parents=True, exist_ok=True)

    # mode="json" ensures Path objects become strings
    config_data = config.model_dump(exclude_none=True, mode="json")

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)

    return path
