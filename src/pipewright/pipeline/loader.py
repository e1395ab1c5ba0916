"""
Load pipeline definitions from YAML or JSON files.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from pipewright.config import get_config
from pipewright.errors import ConfigurationError
from pipewright.models import ProbeSpec, ResourceSpec, RetryPolicy, StageSpec
from pipewright.pipeline.graph import StageGraph
from pipewright.pipeline.stage import split_command


@dataclass
class PipelineDefinition:
    """A validated pipeline: its name, variables and stage graph."""

    name: str
    graph: StageGraph
    variables: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    """
    Load a pipeline definition from YAML or JSON.

    Required fields:
        - stages: list of stage mappings, each with a ``name`` and either a
          ``command`` or a ``probe``

    Optional fields:
        - name: str (default: file stem)
        - variables: mapping of template values
        - defaults: ``timeout`` and ``retry`` applied to every stage
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read pipeline file {path}: {e}") from e

    if path.suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    elif path.suffix == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
    else:
        raise ConfigurationError(f"Unsupported file type: {path.suffix}. Use .yaml, .yml, or .json")

    definition = parse_definition(data, default_name=path.stem)
    definition.source = path
    return definition


def parse_definition(data: Any, default_name: str = "pipeline") -> PipelineDefinition:
    """Build a PipelineDefinition from already-decoded data."""
    if not isinstance(data, dict):
        raise ConfigurationError("Pipeline definition must be a mapping")

    raw_stages = data.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ConfigurationError("Pipeline definition missing required field: stages")

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise ConfigurationError("'variables' must be a mapping")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ConfigurationError("'defaults' must be a mapping")

    stages = [parse_stage(raw, defaults) for raw in raw_stages]
    return PipelineDefinition(
        name=str(data.get("name") or default_name),
        graph=StageGraph(stages),
        variables={str(k): str(v) for k, v in variables.items()},
    )


def parse_stage(raw: Any, defaults: Optional[Dict[str, Any]] = None) -> StageSpec:
    """Build a StageSpec from one stage mapping."""
    defaults = defaults or {}
    if not isinstance(raw, dict) or not raw.get("name"):
        raise ConfigurationError(f"Stage definition needs a 'name': {raw!r}")

    name = str(raw["name"])
    needs = raw.get("needs") or []
    if isinstance(needs, str):
        needs = [needs]
    if not isinstance(needs, list):
        raise ConfigurationError(f"Stage {name!r}: 'needs' must be a stage name or a list, got {needs!r}")

    command = split_command(raw.get("command"))
    probe = _parse_probe(name, raw.get("probe"))
    if bool(command) == bool(probe):
        raise ConfigurationError(f"Stage {name!r} needs exactly one of 'command' or 'probe'")

    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigurationError(f"Stage {name!r}: 'env' must be a mapping")

    default_retry = _mapping(name, "defaults.retry", defaults.get("retry"))
    retry = _mapping(name, "retry", raw.get("retry"))

    return StageSpec(
        name=name,
        needs=tuple(str(n) for n in needs),
        command=command,
        timeout=_parse_timeout(name, raw.get("timeout", defaults.get("timeout"))),
        retry=_parse_retry(name, {**default_retry, **retry}),
        description=str(raw.get("description", "")),
        env=tuple(sorted((str(k), str(v)) for k, v in env.items())),
        probe=probe,
        resource=_parse_resource(name, raw.get("resource")),
    )


def _mapping(stage: str, field_name: str, raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Stage {stage!r}: {field_name!r} must be a mapping, got {raw!r}")
    return raw


def _parse_timeout(stage: str, raw: Any) -> Optional[float]:
    if raw is None:
        return None
    try:
        timeout = float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Stage {stage!r}: invalid 'timeout' {raw!r}") from e
    if timeout <= 0:
        raise ConfigurationError(f"Stage {stage!r}: 'timeout' must be positive")
    return timeout


def _parse_retry(stage: str, raw: Dict[str, Any]) -> RetryPolicy:
    config = get_config()
    retry_on_timeout = raw.get("retry_on_timeout", True)
    if not isinstance(retry_on_timeout, bool):
        raise ConfigurationError(f"Stage {stage!r}: 'retry.retry_on_timeout' must be true or false")
    try:
        policy = RetryPolicy(
            max_attempts=int(raw.get("max_attempts", config.default_max_attempts)),
            backoff_seconds=float(raw.get("backoff_seconds", config.default_backoff_seconds)),
            backoff_multiplier=float(raw.get("backoff_multiplier", 2.0)),
            retry_on_timeout=retry_on_timeout,
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Stage {stage!r}: invalid retry policy: {e}") from e
    if policy.max_attempts < 1:
        raise ConfigurationError(f"Stage {stage!r}: retry.max_attempts must be at least 1")
    if policy.backoff_seconds < 0:
        raise ConfigurationError(f"Stage {stage!r}: retry.backoff_seconds must not be negative")
    return policy


def _parse_probe(stage: str, raw: Any) -> Optional[ProbeSpec]:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"url": raw}
    if not isinstance(raw, dict) or not raw.get("url"):
        raise ConfigurationError(f"Stage {stage!r}: probe needs a 'url'")
    try:
        expect_status = int(raw.get("expect_status", 200))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Stage {stage!r}: invalid 'probe.expect_status' {raw.get('expect_status')!r}"
        ) from e
    contains = raw.get("contains")
    return ProbeSpec(
        url=str(raw["url"]),
        method=str(raw.get("method", "GET")).upper(),
        expect_status=expect_status,
        contains=str(contains) if contains is not None else None,
    )


def _parse_resource(stage: str, raw: Any) -> Optional[ResourceSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict) or "id_pattern" not in raw:
        raise ConfigurationError(f"Stage {stage!r}: resource needs an 'id_pattern'")
    pattern = raw["id_pattern"]
    if not isinstance(pattern, str):
        raise ConfigurationError(f"Stage {stage!r}: 'resource.id_pattern' must be a string, got {pattern!r}")
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        raise ConfigurationError(f"Stage {stage!r}: invalid id_pattern: {e}") from e
    if compiled.groups > 1:
        raise ConfigurationError(f"Stage {stage!r}: id_pattern may capture at most one group")
    return ResourceSpec(
        kind=str(raw.get("kind", "resource")),
        id_pattern=pattern,
        teardown=split_command(raw.get("teardown")),
    )


def describe(definition: PipelineDefinition) -> List[str]:
    """Human-readable execution plan, one line per stage."""
    lines = []
    for index, name in enumerate(definition.graph.order(), start=1):
        stage = definition.graph[name]
        needs = f" (needs: {', '.join(stage.needs)})" if stage.needs else ""
        lines.append(f"{index:>2}. {name}{needs}")
    return lines
