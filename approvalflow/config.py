from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class OrchestratorConfig(BaseModel):
    """Concurrency and policy settings for the orchestrator."""

    max_conflict_retries: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.005, ge=0)
    self_approval: Literal["forbid_initiator", "allow"] = "forbid_initiator"


class ApprovalflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    rules_path: Optional[str] = None
    log_level: str = "INFO"
    orchestrator: OrchestratorConfig = OrchestratorConfig()


def load_config(path: Optional[str] = None) -> ApprovalflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to APPROVALFLOW_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("APPROVALFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ApprovalflowConfig(**data)
    else:
        config = ApprovalflowConfig()

    env_db_url = os.getenv("APPROVALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_rules = os.getenv("APPROVALFLOW_RULES")
    if env_rules:
        config.rules_path = env_rules
    return config
