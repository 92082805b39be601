"""Configuration settings for factloom."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_factloom_home() -> Path:
    """Default directory for local factloom data."""
    return Path.home() / ".factloom"


class FactloomSettings(BaseSettings):
    """Settings loaded from ``FACTLOOM_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="FACTLOOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    # Storage
    db_path: Path = Field(default_factory=lambda: get_factloom_home() / "knowledge.db")

    # Table names
    knowledge_table: str = "agent_knowledge_base"
    links_table: str = "agent_knowledge_links"
    actions_table: str = "agent_actions"
    metrics_table: str = "agent_metrics"
    reflections_table: str = "agent_reflections"
    rules_table: str = "agent_rules"
    messages_table: str = "agent_messages"

    # Action refiner
    failure_rate_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    min_actions: int = Field(default=3, ge=0)
    refinement_window_hours: int = Field(default=24, gt=0)

    # Failure report window used by the performance analyst
    failure_report_window_days: int = Field(default=7, gt=0)

    # Consolidator
    consolidation_entity_limit: int = Field(default=500, gt=0)
    consolidation_group_limit: int = Field(default=100, gt=1)
    consolidation_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    # Relationship builder
    link_candidate_limit: int = Field(default=50, gt=0)
    link_min_confidence: float = Field(default=0.4, ge=0.0, le=1.0)
    link_similarity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)

    # Evolutionary controller
    evolution_sample_size: int = Field(default=20, gt=0)
    evolution_min_samples: int = Field(default=5, gt=1)
    evolution_z_threshold: float = 1.5
    evolution_mean_threshold: float = 500.0
    index_latency_threshold: float = 200.0

    # Promotion
    broadcast_min_confidence: float = Field(default=0.9, ge=0.0, le=1.0)

    # Health audit
    audit_cost_ceiling: float = 1.0  # total_cost per trailing hour
    audit_min_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)

    def table_names(self) -> dict:
        """Logical name -> physical table name mapping for the store."""
        return {
            "knowledge": self.knowledge_table,
            "links": self.links_table,
            "actions": self.actions_table,
            "metrics": self.metrics_table,
            "reflections": self.reflections_table,
            "rules": self.rules_table,
            "messages": self.messages_table,
        }


@lru_cache
def get_settings() -> FactloomSettings:
    """Get cached settings instance."""
    return FactloomSettings()
