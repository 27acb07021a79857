"""
DesiredState — the validated desired-state document.

Loaded from converge.yml by the config loader. By the time this model
exists, substitution values have been merged and applied to every
action's string parameters; the planner and executor receive no
hidden inputs beyond what is stored here.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from hostconverge.core.models.action import Action
from hostconverge.core.models.policy import ExecutionPolicy


class HostRequirements(BaseModel):
    """Minimum host resources; reported as warnings by ``check``."""

    model_config = ConfigDict(extra="forbid")

    min_memory_mb: int | None = None
    min_disk_gb: int | None = None
    disk_path: str = "/"


class DesiredState(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = 1
    name: str = ""
    description: str = ""
    policy: ExecutionPolicy = Field(default_factory=ExecutionPolicy)
    values: dict[str, str] = Field(default_factory=dict)
    secrets: list[str] = Field(default_factory=list)      # names in ``values``
    env_file: str | None = None
    required_values: list[str] = Field(default_factory=list)
    requirements: HostRequirements = Field(default_factory=HostRequirements)
    actions: list[Action] = Field(default_factory=list)

    # Not part of the YAML: where the document lives
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)
    source: Path | None = Field(default=None, exclude=True)

    def get_action(self, identifier: str) -> Action | None:
        for action in self.actions:
            if action.identifier == identifier:
                return action
        return None

    def secret_values(self) -> set[str]:
        """Every concrete value that must be redacted from output."""
        found = {self.values[name] for name in self.secrets if self.values.get(name)}
        for action in self.actions:
            found |= action.sensitive_values()
        return found

    @property
    def state_dir(self) -> Path:
        return self.base_dir / ".state"
