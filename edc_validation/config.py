"""
Engine configuration.

Settings come from environment variables, optionally seeded from a
``.env`` file. Database connection settings (``DB_HOST``, ``DB_PORT``,
``DB_NAME``, ``DB_USER``, ``DB_PASSWORD``) are read by
:class:`edc_validation.storage.connection.DatabaseConnectionPool` itself.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class EngineSettings(BaseModel):
    """
    Tunables for rule evaluation and query creation.

    Attributes:
        expression_max_steps: Node visits allowed per expression evaluation
        expression_timeout_ms: Wall-clock budget per expression evaluation
        expression_max_length: Longest rule expression accepted
        regex_timeout_ms: Wall-clock budget per format-rule regex match
        legacy_rules_path: YAML legacy rules module (None disables the source)
        workflow_workers: Threads used for fire-and-forget workflow triggers
    """

    expression_max_steps: int = Field(default=10_000, gt=0)
    expression_timeout_ms: int = Field(default=250, gt=0)
    expression_max_length: int = Field(default=2_000, gt=0)
    regex_timeout_ms: int = Field(default=100, gt=0)
    legacy_rules_path: Path | None = None
    workflow_workers: int = Field(default=2, ge=1)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "EngineSettings":
        """
        Build settings from ``EDC_*`` environment variables.

        Args:
            env_file: Optional .env file loaded first (existing variables win)

        Returns:
            EngineSettings instance
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)

        values: dict[str, object] = {}
        env_map = {
            "expression_max_steps": "EDC_EXPRESSION_MAX_STEPS",
            "expression_timeout_ms": "EDC_EXPRESSION_TIMEOUT_MS",
            "expression_max_length": "EDC_EXPRESSION_MAX_LENGTH",
            "regex_timeout_ms": "EDC_REGEX_TIMEOUT_MS",
            "legacy_rules_path": "EDC_LEGACY_RULES_PATH",
            "workflow_workers": "EDC_WORKFLOW_WORKERS",
        }
        for field_name, env_name in env_map.items():
            raw = os.getenv(env_name)
            if raw:
                values[field_name] = raw

        return cls(**values)
