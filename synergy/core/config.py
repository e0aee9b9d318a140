from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseModel):
    data_dir: Path = Field(Path("data"), description="Directory holding the agents, tasks, projects and goals stores.")


class AuditSettings(BaseModel):
    log_dir: Path = Field(Path("audit-logs"), description="Directory receiving daily JSONL audit files.")
    file_prefix: str = Field("policy", min_length=1)
    buffer_size: int = Field(10, ge=1, description="Entries buffered in memory before an automatic flush.")
    max_log_size_bytes: int = Field(10 * 1024 * 1024, ge=1024)
    default_query_limit: int = Field(1000, ge=1)


class PolicySettings(BaseModel):
    install_default_rules: bool = Field(True, description="Install the per-role default capability sets.")


class RollbackSettings(BaseModel):
    backup_dir: Path = Field(Path(".synergy/rollback"))
    ttl_days: int = Field(7, ge=1)
    max_backup_bytes: int = Field(100 * 1024 * 1024, ge=1)
    history_limit: int = Field(50, ge=1)


class CollaborationSettings(BaseModel):
    history_file: str = Field("collaboration-history.json", min_length=1)
    max_records: int = Field(1000, ge=1)
    max_depth: int = Field(3, ge=1, description="Maximum nesting of agent-to-agent help requests.")
    skill_acquisition_count: int = Field(5, ge=1)
    skill_acquisition_success_rate: float = Field(80.0, ge=0.0, le=100.0)


class ProviderConfig(BaseModel):
    name: str = Field(min_length=1, description="Display name, matched against task skills.")
    provider: str = Field(min_length=1, description="Provider class, e.g. claude or openai.")
    enabled: bool = Field(True)


class BiddingSettings(BaseModel):
    providers: list[ProviderConfig] = Field(default_factory=list)
    default_provider: str = Field("default", min_length=1)
    priority_provider: str = Field("claude", min_length=1)
    breadth_provider: str = Field("openai", min_length=1)
    breadth_skill_threshold: int = Field(3, ge=1)
    base_tokens: int = Field(500, ge=0)


class EnsembleSettings(BaseModel):
    min_agents: int = Field(3, ge=1)
    consensus_threshold: float = Field(0.6, ge=0.0, le=1.0)
    default_vote_confidence: float = Field(0.9, ge=0.0, le=1.0)
    validate_priorities: list[Literal["critical", "high", "medium", "low"]] = Field(
        default_factory=lambda: ["critical"],
        description="Task priorities whose results are cross-checked by an ensemble vote.",
    )


class ConflictSettings(BaseModel):
    similarity_threshold: float = Field(0.5, ge=0.0, le=1.0)
    low_confidence: float = Field(0.5, ge=0.0, le=1.0)
    high_confidence: float = Field(0.8, ge=0.0, le=1.0)


class DecisionSettings(BaseModel):
    approval_timeout_seconds: float | None = Field(
        900.0,
        gt=0.0,
        description="How long a task waits for a human verdict. None waits indefinitely.",
    )
    timeout_action: Literal["deny", "escalate"] = Field("escalate")
    approval_types: list[str] = Field(
        default_factory=lambda: ["hire", "fire", "budget", "security", "vault_access"],
        description="Decision types that always require a human verdict.",
    )


class SchedulingSettings(BaseModel):
    max_agents: int = Field(50, ge=1)
    max_concurrent_tasks: int = Field(20, ge=1)
    auto_hire: bool = Field(True)
    hire_approval_threshold: int = Field(10, ge=0, description="Organization size from which hiring needs approval.")
    task_timeout_seconds: float = Field(480.0, gt=0.0)
    default_retry_attempts: int = Field(2, ge=1)
    base_backoff_seconds: float = Field(1.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(30.0, ge=0.0)
    process_interval_seconds: float = Field(1.0, gt=0.0, description="Pause between background scheduling passes.")


class EventSettings(BaseModel):
    delivery_attempts: int = Field(3, ge=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    storage: StorageSettings = Field(default_factory=StorageSettings)  # type: ignore[arg-type]
    audit: AuditSettings = Field(default_factory=AuditSettings)  # type: ignore[arg-type]
    policy: PolicySettings = Field(default_factory=PolicySettings)  # type: ignore[arg-type]
    rollback: RollbackSettings = Field(default_factory=RollbackSettings)  # type: ignore[arg-type]
    collaboration: CollaborationSettings = Field(default_factory=CollaborationSettings)  # type: ignore[arg-type]
    bidding: BiddingSettings = Field(default_factory=BiddingSettings)  # type: ignore[arg-type]
    ensemble: EnsembleSettings = Field(default_factory=EnsembleSettings)  # type: ignore[arg-type]
    conflicts: ConflictSettings = Field(default_factory=ConflictSettings)  # type: ignore[arg-type]
    decisions: DecisionSettings = Field(default_factory=DecisionSettings)  # type: ignore[arg-type]
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    events: EventSettings = Field(default_factory=EventSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
