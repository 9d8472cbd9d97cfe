"""Load tool specs from a YAML catalog."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from agentic_qa.agent.registry import ToolRegistry, ToolSpec
from agentic_qa.agent.schema import build_args_model

logger = structlog.get_logger(__name__)


def parse_catalog(data: dict[str, Any], *, default_timeout_seconds: float = 30.0) -> list[ToolSpec]:
    specs: list[ToolSpec] = []
    for entry in data.get("tools", []) or []:
        name = entry["name"]
        specs.append(
            ToolSpec(
                name=name,
                description=entry.get("description", ""),
                args_schema=build_args_model(name, entry.get("parameters", {}) or {}),
                endpoint=entry["endpoint"],
                timeout_seconds=float(entry.get("timeout_seconds", default_timeout_seconds)),
                principal=entry.get("principal", "default"),
                tags=tuple(entry.get("tags", []) or []),
            )
        )
    return specs


def load_catalog(
    path: str | Path,
    registry: ToolRegistry,
    *,
    default_timeout_seconds: float = 30.0,
) -> list[ToolSpec]:
    """Register every tool declared in the YAML file at `path`."""

    with Path(path).open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    specs = parse_catalog(data, default_timeout_seconds=default_timeout_seconds)
    for spec in specs:
        registry.register(spec)
    logger.info("tool_catalog_loaded", path=str(path), tools=[spec.name for spec in specs])
    return specs
