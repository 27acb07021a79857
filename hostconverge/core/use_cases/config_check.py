"""
Check use case — validate converge.yml without touching the host.

Errors (the document cannot be run):
    unreadable or invalid YAML, schema violations, missing required
    values, duplicate / dangling / cyclic dependencies

Warnings (the document runs, but probably not as intended):
    shell steps with no ``creates`` or ``unless`` (never idempotent),
    templates that cannot be rendered, host below ``requirements``
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from hostconverge.core.config.loader import ConfigError, find_document, load_document
from hostconverge.core.engine.graph import build_graph
from hostconverge.core.engine.handlers import render_file
from hostconverge.core.errors import ActionApplyError, GraphBuildError
from hostconverge.core.models.action import ActionKind, ShellStepParams
from hostconverge.core.models.document import DesiredState, HostRequirements


@dataclass
class ConfigCheckResult:
    valid: bool = False
    document: DesiredState | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "name": self.document.name if self.document else None,
            "action_count": len(self.document.actions) if self.document else 0,
        }


def check_config(
    config_path: Path | None = None,
    overrides: dict[str, str] | None = None,
    check_host: bool = True,
) -> ConfigCheckResult:
    result = ConfigCheckResult()

    if config_path is None:
        config_path = find_document()
    if config_path is None:
        result.errors.append("No converge.yml found.")
        return result
    result.config_path = config_path

    try:
        document = load_document(config_path, overrides)
    except ConfigError as e:
        result.errors.append(str(e))
        return result
    result.document = document

    try:
        build_graph(document.actions)
    except GraphBuildError as e:
        result.errors.append(str(e))
        return result

    if not document.actions:
        result.warnings.append("No actions declared. The document has nothing to converge.")

    for action in document.actions:
        if action.kind == ActionKind.SHELL_STEP and action.precondition is None:
            params: ShellStepParams = action.params
            if not params.creates and not params.unless:
                result.warnings.append(
                    f"shell_step '{action.identifier}' has no creates/unless/precondition: "
                    "it runs on every apply"
                )
        if action.kind == ActionKind.RENDERED_FILE:
            try:
                render_file(action.params, document.values)
            except ActionApplyError as e:
                result.warnings.append(f"rendered_file '{action.identifier}': {e}")

    if check_host:
        result.warnings.extend(check_requirements(document.requirements))

    result.valid = not result.errors
    return result


def check_requirements(req: HostRequirements) -> list[str]:
    """Compare host memory and disk against the document's minimums."""
    warnings = []
    if req.min_memory_mb:
        memory_mb = _total_memory_mb()
        if memory_mb is not None and memory_mb < req.min_memory_mb:
            warnings.append(f"Host has {memory_mb} MB RAM, document wants {req.min_memory_mb} MB")
    if req.min_disk_gb:
        try:
            free_gb = shutil.disk_usage(req.disk_path).free // (1024 ** 3)
        except OSError as e:
            warnings.append(f"Cannot check free disk on {req.disk_path}: {e}")
        else:
            if free_gb < req.min_disk_gb:
                warnings.append(
                    f"{req.disk_path} has {free_gb} GB free, document wants {req.min_disk_gb} GB"
                )
    return warnings


def _total_memory_mb() -> int | None:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES") // (1024 * 1024)
    except (ValueError, OSError, AttributeError):
        return None
