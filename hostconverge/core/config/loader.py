"""
Document loader — reads converge.yml into a validated DesiredState.

Steps:
    read YAML → merge values → check required values → substitute
    values into action parameters → resolve template paths → validate

Values are merged in precedence order:
    document ``values``  <  ``env_file``  <  ``--set`` overrides

After loading, every ``{key}`` naming a merged value has been replaced
in every string parameter, so later stages see only concrete inputs.
Template files are rendered later, at plan time, with the same values.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from hostconverge.core.models.document import DesiredState
from hostconverge.core.templating import render_template, substitute

logger = logging.getLogger(__name__)

DOCUMENT_FILE = "converge.yml"


class ConfigError(Exception):
    """Raised when the desired-state document is invalid or missing."""


def find_document(start_dir: Path | None = None) -> Path | None:
    """Search for converge.yml starting from the given directory, walking up."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / DOCUMENT_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def parse_overrides(pairs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """``["domain=example.org", ...]`` → dict. Raises ConfigError."""
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Invalid --set '{pair}': expected KEY=VALUE")
        result[key.strip()] = value
    return result


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file into a key/value dict.

    Handles:
    - KEY=value
    - KEY="value"
    - KEY='value'
    - export KEY=value
    - Comments (#)
    - Empty lines
    """
    result: dict[str, str] = {}
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read env file {path}: {e}") from e

    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:].strip()
        if "=" not in line:
            continue

        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        result[key] = value

    return result


def load_document(
    path: Path | None = None,
    overrides: dict[str, str] | None = None,
) -> DesiredState:
    """Load and validate a desired-state document.

    Args:
        path: Explicit path to converge.yml. If None, searches upward.
        overrides: ``--set`` values; they win over everything else.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid, or a
            required value has no value.
    """
    if path is None:
        path = find_document()

    if path is None:
        raise ConfigError(f"No {DOCUMENT_FILE} found. Specify one with --config.")

    if not path.is_file():
        raise ConfigError(f"Document not found: {path}")

    logger.debug("Loading desired state from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    base_dir = path.parent.resolve()
    values = _merge_values(data, base_dir, overrides or {})

    missing = [k for k in data.get("required_values") or [] if not values.get(k)]
    if missing:
        raise ConfigError(
            f"Missing required value(s): {', '.join(missing)} "
            "(set them in values, env_file, or with --set KEY=VALUE)"
        )

    actions = data.get("actions") or []
    if not isinstance(actions, list):
        raise ConfigError(f"'actions' must be a list in {path}")
    data = {
        **data,
        "values": values,
        "actions": [_prepare_action(a, values, base_dir) for a in actions],
    }

    try:
        document = DesiredState.model_validate({**data, "base_dir": base_dir, "source": path})
    except ValidationError as e:
        raise ConfigError(f"Invalid document {path}:\n{e}") from e

    unknown = [s for s in document.secrets if s not in values]
    if unknown:
        logger.warning("Secret name(s) not found in values: %s", ", ".join(unknown))

    logger.info("Loaded '%s' with %d action(s)", document.name or path.name, len(document.actions))
    return document


def _merge_values(data: dict[str, Any], base_dir: Path, overrides: dict[str, str]) -> dict[str, str]:
    raw_values = data.get("values") or {}
    if not isinstance(raw_values, dict):
        raise ConfigError("'values' must be a mapping")
    values = {str(k): "" if v is None else str(v) for k, v in raw_values.items()}

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file)
        if not env_path.is_absolute():
            env_path = base_dir / env_path
        if env_path.is_file():
            values.update(parse_env_file(env_path))
        else:
            logger.warning("env_file %s does not exist, skipping", env_path)

    values.update(overrides)

    # One pass of self-reference: site_url: "https://{domain}"
    return {k: render_template(v, values) for k, v in values.items()}


def _prepare_action(raw: Any, values: dict[str, str], base_dir: Path) -> Any:
    if not isinstance(raw, dict):
        return raw  # validation reports it
    action = dict(raw)
    for key in ("params", "precondition", "description"):
        if key in action:
            action[key] = substitute(action[key], values)

    params = action.get("params")
    if action.get("kind") == "rendered_file" and isinstance(params, dict) and params.get("template"):
        template = Path(params["template"])
        if not template.is_absolute():
            params = {**params, "template": str(base_dir / template)}
            action["params"] = params
    return action
