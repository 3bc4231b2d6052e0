"""
Local connectors.

File-based origin and target plus the default mapper and rule-condition
evaluator, so a synchronization can run end to end without any remote
system.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

from syncledger.connectors.base import TargetWriteResult
from syncledger.errors import OriginReadError, TargetWriteError, TransformationError, ValidationError
from syncledger.models import CrudAction, MappingConfig, SourceDescriptor, TargetDescriptor, new_uuid


_MISSING = object()


def get_path(data: Any, path: str) -> Any:
    """Resolve a dotted path; returns ``_MISSING`` when any segment is absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path, creating intermediate mappings."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def delete_path(data: dict[str, Any], path: str) -> bool:
    parts = path.split(".")
    parent = get_path(data, ".".join(parts[:-1])) if len(parts) > 1 else data
    if isinstance(parent, dict) and parts[-1] in parent:
        del parent[parts[-1]]
        return True
    return False


class KeyPathMapper:
    """
    Dotted key-path mapper.

    Each ``mapping`` entry copies the value found at a dotted source path
    to a (possibly dotted) target key. A source path that does not exist
    in the input is taken as a literal value. ``pass_through`` starts from
    a deep copy of the input, ``unset`` removes keys afterwards.

    Example:
        mapper = KeyPathMapper()
        mapper.transform(
            {"id": "o1", "person": {"name": "Alice"}},
            MappingConfig(mapping={"name": "person.name", "kind": "person"}),
        )
        # {"name": "Alice", "kind": {"name": "Alice"}}
    """

    def transform(self, record: dict[str, Any], mapping: MappingConfig) -> dict[str, Any]:
        if not isinstance(record, Mapping):
            raise TransformationError(
                f"Cannot map a {type(record).__name__}, expected a mapping",
                code="mapping_input",
            )

        result: dict[str, Any] = copy.deepcopy(dict(record)) if mapping.pass_through else {}

        for key, source_path in mapping.mapping.items():
            value = get_path(record, source_path)
            set_path(result, key, source_path if value is _MISSING else copy.deepcopy(value))

        for key in mapping.unset:
            delete_path(result, key)

        return result


class ConditionEvaluator:
    """
    Evaluates rule conditions against a rule context.

    ``conditions`` maps dotted paths into the context to an expected value.
    A plain value is an equality test; a single-key mapping selects an
    operator: ``{"==": v}``, ``{"!=": v}``, ``{"in": [...]}`` or
    ``{"exists": bool}``. All conditions must hold; no conditions is true.
    """

    OPERATORS = ("==", "!=", "in", "exists")

    def evaluate(self, conditions: dict[str, Any], context: dict[str, Any]) -> bool:
        return all(self._check(path, expected, context) for path, expected in conditions.items())

    def _check(self, path: str, expected: Any, context: dict[str, Any]) -> bool:
        value = get_path(context, path)

        if not (isinstance(expected, Mapping) and len(expected) == 1
                and next(iter(expected)) in self.OPERATORS):
            return value is not _MISSING and value == expected

        operator, operand = next(iter(expected.items()))
        if operator == "exists":
            return (value is not _MISSING) == bool(operand)
        if operator == "in":
            if not isinstance(operand, (list, tuple)):
                raise ValidationError(f"Condition {path}: 'in' expects a list", code="invalid_condition")
            return value is not _MISSING and value in operand

        resolved = None if value is _MISSING else value
        if operator == "!=":
            return resolved != operand
        return resolved == operand


class JsonLinesOrigin:
    """
    Reads origin records from a JSON-lines file, one object per line.

    Lines are read lazily; blank lines are ignored. A line that is not a
    JSON object aborts the enumeration with OriginReadError.
    """

    async def enumerate(self, descriptor: SourceDescriptor) -> AsyncIterator[dict[str, Any]]:
        path = Path(descriptor.location)
        if not path.exists():
            raise OriginReadError(f"Origin file not found: {path}", code="origin_missing")

        with path.open(encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    raise OriginReadError(f"{path}:{line_number}: invalid JSON ({e.msg})") from e
                if not isinstance(record, dict):
                    raise OriginReadError(f"{path}:{line_number}: expected a JSON object")
                yield record


class DirectoryTarget:
    """
    Writes each target object as ``<location>/<target_id>.json``.

    New objects get the value of ``options["id_field"]`` (default ``"id"``)
    from the mapped record as their id, or a fresh UUID.
    """

    def _path(self, descriptor: TargetDescriptor, target_id: str) -> Path:
        if not target_id or "/" in target_id or target_id in (".", ".."):
            raise TargetWriteError(f"Invalid target id: {target_id!r}")
        return Path(descriptor.location) / f"{target_id}.json"

    async def write(
        self,
        descriptor: TargetDescriptor,
        record: dict[str, Any],
        action: CrudAction,
        target_id: str | None = None,
    ) -> TargetWriteResult:
        if target_id is None:
            id_field = descriptor.options.get("id_field", "id")
            target_id = str(record.get(id_field) or new_uuid())

        path = self._path(descriptor, target_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(record, indent=2, sort_keys=True, default=str), encoding="utf-8")
        except OSError as e:
            raise TargetWriteError(f"Failed to write {path}: {e}") from e

        return TargetWriteResult(target_id=target_id, record=record)

    async def read(self, descriptor: TargetDescriptor, target_id: str) -> dict[str, Any] | None:
        path = self._path(descriptor, target_id)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    async def delete(self, descriptor: TargetDescriptor, target_id: str) -> None:
        path = self._path(descriptor, target_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise TargetWriteError(f"Failed to delete {path}: {e}") from e
