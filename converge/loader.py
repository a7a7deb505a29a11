"""
Desired-state loader - parse and validate desired-state documents.

The loader provides:
- load(): parse a document (path, YAML/JSON text, or mapping) into a DesiredState
- validate(): graph checks (duplicate names, unknown references, cycles)
- StackRegistry: look up named stack documents in a definitions directory

Loading is pure: nothing outside the document is read or written.
"""

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from converge.errors import CycleError, ParseError, ValidationError
from converge.graph import find_cycle
from converge.schemas import DesiredState, ResourceKind, ResourceSpec, find_refs

logger = logging.getLogger(__name__)

Source = Union[str, Path, Mapping[str, Any]]

STACK_EXTENSIONS = (".yaml", ".yml", ".json")

_RESOURCE_KEYS = {"kind", "name", "config", "depends_on"}


def load(source: Source) -> DesiredState:
    """
    Load and validate a desired-state document.

    Args:
        source: A path to a .yaml/.yml/.json file, a YAML or JSON string,
                or an already-parsed mapping

    Returns:
        The validated DesiredState

    Raises:
        ParseError: If the document is unreadable or malformed
        ValidationError: If names collide, a reference is unknown, or the
                         dependency graph has a cycle
    """
    data = _read_source(source)
    desired = parse_document(data)
    validate(desired)
    logger.debug(f"Loaded desired state '{desired.name}' with {len(desired)} resources")
    return desired


def _read_source(source: Source) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source

    if isinstance(source, Path) or (
        isinstance(source, str) and "\n" not in source and source.endswith(STACK_EXTENSIONS)
    ):
        path = Path(source)
        if not path.exists():
            raise ParseError(f"Desired-state file not found: {path}")
        try:
            text = path.read_text()
        except OSError as e:
            raise ParseError(f"Failed to read {path}: {e}")
        if path.suffix.lower() == ".json":
            return _parse_json(text, str(path))
        return _parse_yaml(text, str(path))

    if isinstance(source, str):
        stripped = source.lstrip()
        if stripped.startswith("{"):
            return _parse_json(source, "<string>")
        return _parse_yaml(source, "<string>")

    raise ParseError(f"Unsupported desired-state source: {type(source).__name__}")


def _parse_json(text: str, origin: str) -> Mapping[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in {origin}: {e}")
    return _require_mapping(data, origin)


def _parse_yaml(text: str, origin: str) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML in {origin}: {e}")
    return _require_mapping(data, origin)


def _require_mapping(data: Any, origin: str) -> Mapping[str, Any]:
    if data is None:
        raise ParseError(f"Desired-state document {origin} is empty")
    if not isinstance(data, Mapping):
        raise ParseError(
            f"Desired-state document {origin} must be a mapping, got {type(data).__name__}"
        )
    return data


def parse_document(data: Mapping[str, Any]) -> DesiredState:
    """
    Build a DesiredState from a parsed document without graph validation.

    Raises:
        ParseError: On missing or mistyped fields or unknown kinds
        ValidationError: On duplicate names
    """
    name = data.get("name", "default")
    if not isinstance(name, str) or not name:
        raise ParseError("Document 'name' must be a non-empty string")

    raw_resources = data.get("resources", [])
    if not isinstance(raw_resources, list):
        raise ParseError("'resources' must be a list")

    specs = []
    seen: set[str] = set()
    duplicates: set[str] = set()
    for index, raw in enumerate(raw_resources):
        spec = _parse_resource(raw, index)
        if spec.name in seen:
            duplicates.add(spec.name)
        seen.add(spec.name)
        specs.append(spec)

    if duplicates:
        raise ValidationError(f"Duplicate resource names: {sorted(duplicates)}")

    return DesiredState(name=name, resources=tuple(specs))


def _parse_resource(raw: Any, index: int) -> ResourceSpec:
    where = f"resources[{index}]"
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where} must be a mapping")

    unknown = set(raw) - _RESOURCE_KEYS
    if unknown:
        raise ParseError(f"{where}: unknown fields {sorted(unknown)}")

    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise ParseError(f"{where}: 'name' must be a non-empty string")
    where = f"resource '{name}'"

    kind = raw.get("kind")
    if not isinstance(kind, str):
        raise ParseError(f"{where}: 'kind' is required")
    try:
        resource_kind = ResourceKind.from_string(kind)
    except ValueError as e:
        raise ParseError(f"{where}: {e}")

    config = raw.get("config") or {}
    if not isinstance(config, Mapping):
        raise ParseError(f"{where}: 'config' must be a mapping")

    depends_on = raw.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ParseError(f"{where}: 'depends_on' must be a list of names")

    if name in depends_on:
        raise CycleError(f"Dependency cycle: {name} -> {name}", cycle=[name, name])

    return ResourceSpec(
        kind=resource_kind,
        name=name,
        config=dict(config),
        depends_on=tuple(dict.fromkeys(depends_on)),
    )


def validate(desired: DesiredState) -> None:
    """
    Check the dependency graph of a desired state.

    Raises:
        ValidationError: If a depends_on entry or @ref.* names a resource
                         that does not exist
        CycleError: If the dependency graph contains a cycle
    """
    names = set(desired.names)
    for spec in desired:
        missing = sorted(set(spec.depends_on) - names)
        if missing:
            raise ValidationError(
                f"Resource '{spec.name}' depends on unknown resources: {missing}"
            )
        missing_refs = sorted(find_refs(spec.config) - names)
        if missing_refs:
            raise ValidationError(
                f"Resource '{spec.name}' references unknown resources: {missing_refs}"
            )

    cycle = find_cycle({spec.name: spec.dependencies for spec in desired})
    if cycle:
        raise CycleError(f"Dependency cycle: {' -> '.join(cycle)}", cycle=cycle)


class StackRegistry:
    """
    Registry for locating desired-state documents by stack name.

    Example directory structure:
        stacks/
            webapp.yaml
            staging/
                webapp-staging.yaml
    """

    def __init__(self, definitions_dir: Union[Path, str]):
        self._definitions_dir = Path(definitions_dir)
        self._cache: dict[str, DesiredState] = {}

    @property
    def definitions_dir(self) -> Path:
        return self._definitions_dir

    def resolve(self, stack: str) -> Path:
        """
        Resolve a stack argument to a document path.

        An existing path is returned as-is; otherwise the stack is looked up
        by filename stem under the definitions directory (YAML preferred).

        Raises:
            ParseError: If no document is found
        """
        direct = Path(stack)
        if direct.is_file():
            return direct

        path = self._find_definition(stack)
        if path is None:
            raise ParseError(f"Stack not found: {stack}")
        return path

    def load(self, stack: str) -> DesiredState:
        """Load and cache a stack by name or path."""
        if stack in self._cache:
            return self._cache[stack]
        desired = load(self.resolve(stack))
        self._cache[stack] = desired
        return desired

    def list_stacks(self) -> list[str]:
        """Sorted stack names found in the definitions directory."""
        if not self._definitions_dir.exists():
            return []
        names = set()
        for ext in STACK_EXTENSIONS:
            for f in self._definitions_dir.glob(f"**/*{ext}"):
                names.add(f.stem)
        return sorted(names)

    def _find_definition(self, stack: str) -> Optional[Path]:
        for ext in STACK_EXTENSIONS:
            filename = f"{stack}{ext}"
            root_path = self._definitions_dir / filename
            if root_path.exists():
                return root_path
            matches = sorted(self._definitions_dir.glob(f"**/{filename}"))
            if matches:
                return matches[0]
        return None
