"""
Shared types for the reconciliation ledger and event delivery.

Configuration entities (Synchronization, its descriptors, rules and
EventSubscription) arrive as untyped maps from files or API payloads. They
are built through explicit ``from_map`` constructors that check required
fields, reject unknown ones and report every bad field at once through
``FieldValidationError``. Both ``snake_case`` and ``camelCase`` keys are
accepted.

Ledger rows (contracts, logs, messages) are created by the engine itself
and only ever come back from the store, so they are plain dataclasses.
"""

from __future__ import annotations

import json
import re
import uuid as uuid_lib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Mapping

from syncledger.errors import FieldValidationError


MIN_LOG_SIZE = 4096


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid_lib.uuid4())


class CrudAction(str, Enum):
    """Action applied (or to be applied) to a target object."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


class TargetResult(str, Enum):
    """Outcome recorded on a contract log row."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class RuleTiming(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class RuleType(str, Enum):
    MAPPING = "mapping"
    ERROR = "error"
    SCRIPT = "script"
    SYNCHRONIZATION = "synchronization"


class MessageStatus(str, Enum):
    """Delivery state of an EventMessage."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class SubscriptionStyle(str, Enum):
    PUSH = "push"
    PULL = "pull"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    GONE = "gone"


# =============================================================================
# Map decoding helpers
# =============================================================================

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

Converter = Callable[[Any], Any]


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def _decode(
    entity: str,
    data: Any,
    fields: dict[str, tuple[bool, Converter]],
) -> dict[str, Any]:
    """
    Validate ``data`` against a field table and convert each value.

    Args:
        entity: Entity name used in error messages
        data: Untyped input map
        fields: ``name -> (required, converter)``

    Returns:
        Converted values for the fields present in ``data``

    Raises:
        FieldValidationError: listing every missing, unknown or bad field
    """
    if not isinstance(data, Mapping):
        raise FieldValidationError(entity, {"<root>": "expected a mapping"})

    normalized = {_snake(str(key)): value for key, value in data.items()}
    problems: dict[str, str] = {}
    values: dict[str, Any] = {}

    for key in normalized:
        if key not in fields:
            problems[key] = "unknown field"

    for name, (required, convert) in fields.items():
        raw = normalized.get(name)
        if raw is None:
            if required:
                problems[name] = "required"
            continue
        try:
            values[name] = convert(raw)
        except FieldValidationError as e:
            for sub_field, problem in e.problems.items():
                problems[f"{name}.{sub_field}"] = problem
        except (TypeError, ValueError) as e:
            problems[name] = str(e)

    if problems:
        raise FieldValidationError(entity, problems)
    return values


def _str(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    text = str(value)
    if not text:
        raise ValueError("must not be empty")
    return text


def _text(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    return value


def _int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected an integer, got {type(value).__name__}")
    return value


def _positive_int(value: Any) -> int:
    number = _int(value)
    if number <= 0:
        raise ValueError("must be positive")
    return number


def _bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected a boolean, got {type(value).__name__}")
    return value


def _dict(value: Any) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"expected a mapping, got {type(value).__name__}")
    return dict(value)


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"expected a list, got {type(value).__name__}")
    if not all(isinstance(item, str) for item in value):
        raise TypeError("expected a list of strings")
    return list(value)


def _str_map(value: Any) -> dict[str, str]:
    mapping = _dict(value)
    if not all(isinstance(v, str) for v in mapping.values()):
        raise TypeError("expected string values")
    return mapping


def _datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value)
    else:
        raise TypeError(f"expected a datetime, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _enum(enum_cls: type[Enum]) -> Converter:
    def convert(value: Any) -> Enum:
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(member.value for member in enum_cls)
            raise ValueError(f"must be one of: {allowed}") from None

    return convert


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Synchronization configuration
# =============================================================================


@dataclass
class SourceDescriptor:
    """Where origin records come from."""

    type: str
    location: str = ""
    id_field: str = "id"
    options: dict[str, Any] = field(default_factory=dict)

    FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "type": (True, _str),
        "location": (False, _text),
        "id_field": (False, _str),
        "options": (False, _dict),
    }

    @classmethod
    def from_map(cls, data: Any) -> "SourceDescriptor":
        return cls(**_decode("source", data, cls.FIELDS))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TargetDescriptor:
    """Where mapped records are written."""

    type: str
    location: str = ""
    required_fields: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)

    FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "type": (True, _str),
        "location": (False, _text),
        "required_fields": (False, _str_list),
        "options": (False, _dict),
    }

    @classmethod
    def from_map(cls, data: Any) -> "TargetDescriptor":
        return cls(**_decode("target", data, cls.FIELDS))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MappingConfig:
    """
    Declarative reshaping of an origin record.

    ``mapping`` maps target keys to dotted source paths; ``unset`` lists
    target keys to drop; ``pass_through`` starts from a copy of the input.
    """

    mapping: dict[str, str] = field(default_factory=dict)
    unset: list[str] = field(default_factory=list)
    pass_through: bool = False

    FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "mapping": (False, _str_map),
        "unset": (False, _str_list),
        "pass_through": (False, _bool),
    }

    @classmethod
    def from_map(cls, data: Any) -> "MappingConfig":
        return cls(**_decode("mapping", data, cls.FIELDS))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Rule:
    """
    Common part of every rule variant.

    ``action`` of ``None`` applies the rule to every action. ``conditions``
    are opaque to the engine and handed to the RuleEvaluator.
    """

    id: str
    name: str = ""
    action: CrudAction | None = None
    timing: RuleTiming = RuleTiming.BEFORE
    conditions: dict[str, Any] = field(default_factory=dict)
    order: int = 0

    type: ClassVar[RuleType]
    CONFIG_FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {}

    COMMON_FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "id": (True, _str),
        "name": (False, _text),
        "type": (True, _enum(RuleType)),
        "action": (False, _enum(CrudAction)),
        "timing": (False, _enum(RuleTiming)),
        "conditions": (False, _dict),
        "order": (False, _int),
        "configuration": (False, _dict),
    }

    def applies_to(self, action: CrudAction, timing: RuleTiming) -> bool:
        return self.timing == timing and (self.action is None or self.action == action)

    def configuration(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "action": self.action.value if self.action else None,
            "timing": self.timing.value,
            "conditions": self.conditions,
            "order": self.order,
            "configuration": self.configuration(),
        }


@dataclass
class MappingRule(Rule):
    """Reshape the record with a mapping."""

    mapping: MappingConfig = field(default_factory=MappingConfig)

    type: ClassVar[RuleType] = RuleType.MAPPING
    CONFIG_FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "mapping": (True, MappingConfig.from_map),
    }

    def configuration(self) -> dict[str, Any]:
        return {"mapping": self.mapping.to_dict()}


@dataclass
class ErrorRule(Rule):
    """Reject the record with a fixed error."""

    code: int = 400
    error_name: str = "Bad Request"
    message: str = ""

    type: ClassVar[RuleType] = RuleType.ERROR
    CONFIG_FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "code": (False, _positive_int),
        "name": (False, _text),
        "message": (True, _text),
    }

    def configuration(self) -> dict[str, Any]:
        return {"code": self.code, "name": self.error_name, "message": self.message}


@dataclass
class ScriptRule(Rule):
    """Run an opaque script through the ScriptRunner collaborator."""

    script: str = ""

    type: ClassVar[RuleType] = RuleType.SCRIPT
    CONFIG_FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "script": (True, _str),
    }

    def configuration(self) -> dict[str, Any]:
        return {"script": self.script}


@dataclass
class SynchronizationRule(Rule):
    """Request a follow-up run of another synchronization."""

    synchronization_id: str = ""

    type: ClassVar[RuleType] = RuleType.SYNCHRONIZATION
    CONFIG_FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "synchronization_id": (True, _str),
    }

    def configuration(self) -> dict[str, Any]:
        return {"synchronization_id": self.synchronization_id}


RULE_TYPES: dict[RuleType, type[Rule]] = {
    RuleType.MAPPING: MappingRule,
    RuleType.ERROR: ErrorRule,
    RuleType.SCRIPT: ScriptRule,
    RuleType.SYNCHRONIZATION: SynchronizationRule,
}


def rule_from_map(data: Any) -> Rule:
    """Decode a rule map into the variant named by its ``type``."""
    common = _decode("rule", data, Rule.COMMON_FIELDS)
    rule_type: RuleType = common.pop("type")
    rule_cls = RULE_TYPES[rule_type]

    config = _decode(f"{rule_type.value} rule configuration", common.pop("configuration", {}), rule_cls.CONFIG_FIELDS)
    if rule_cls is ErrorRule and "name" in config:
        config["error_name"] = config.pop("name")
    return rule_cls(**common, **config)


def _rules(value: Any) -> list[Rule]:
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"expected a list, got {type(value).__name__}")
    problems: dict[str, str] = {}
    rules: list[Rule] = []
    for index, item in enumerate(value):
        try:
            rules.append(rule_from_map(item))
        except FieldValidationError as e:
            for sub_field, problem in e.problems.items():
                problems[f"{index}.{sub_field}"] = problem
    if problems:
        raise FieldValidationError("rules", problems)
    return sorted(rules, key=lambda rule: rule.order)


@dataclass
class Synchronization:
    """A configured origin -> target synchronization."""

    id: str
    source: SourceDescriptor
    target: TargetDescriptor
    name: str = ""
    mapping: MappingConfig | None = None
    rules: list[Rule] = field(default_factory=list)
    interval_seconds: int = 3600
    enabled: bool = True
    delete_orphans: bool = False
    last_run: datetime | None = None
    next_run: datetime | None = None

    FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "id": (True, _str),
        "name": (False, _text),
        "source": (True, SourceDescriptor.from_map),
        "target": (True, TargetDescriptor.from_map),
        "mapping": (False, MappingConfig.from_map),
        "rules": (False, _rules),
        "interval_seconds": (False, _positive_int),
        "enabled": (False, _bool),
        "delete_orphans": (False, _bool),
        "last_run": (False, _datetime),
        "next_run": (False, _datetime),
    }

    @classmethod
    def from_map(cls, data: Any) -> "Synchronization":
        return cls(**_decode("synchronization", data, cls.FIELDS))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "mapping": self.mapping.to_dict() if self.mapping else None,
            "rules": [rule.to_dict() for rule in self.rules],
            "interval_seconds": self.interval_seconds,
            "enabled": self.enabled,
            "delete_orphans": self.delete_orphans,
            "last_run": _iso(self.last_run),
            "next_run": _iso(self.next_run),
        }


# =============================================================================
# Ledger rows
# =============================================================================


@dataclass
class SynchronizationContract:
    """Ledger row linking one origin object to one target object."""

    synchronization_id: str
    origin_id: str | None = None
    origin_hash: str | None = None
    target_id: str | None = None
    target_hash: str | None = None
    id: int | None = None
    uuid: str = field(default_factory=new_uuid)
    version: int = 0
    created: datetime | None = None
    updated: datetime | None = None

    @property
    def is_empty(self) -> bool:
        """Both sides gone: the contract must be deleted."""
        return self.origin_id is None and self.target_id is None

    def clear_origin(self) -> None:
        self.origin_id = None
        self.origin_hash = None

    def clear_target(self) -> None:
        self.target_id = None
        self.target_hash = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created"] = _iso(self.created)
        data["updated"] = _iso(self.updated)
        return data


def _json_size(data: dict[str, Any]) -> int:
    size = len(json.dumps(data, default=str).encode("utf-8"))
    return max(size, MIN_LOG_SIZE)


@dataclass
class SynchronizationLog:
    """One row per reconciliation run."""

    synchronization_id: str
    id: int | None = None
    uuid: str = field(default_factory=new_uuid)
    result: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    test: bool = False
    force: bool = False
    execution_time: int = 0
    created: datetime | None = None
    expires: datetime | None = None
    size: int = MIN_LOG_SIZE

    def calculate_size(self) -> int:
        self.size = _json_size(self.to_dict(include_size=False))
        return self.size

    def to_dict(self, include_size: bool = True) -> dict[str, Any]:
        data = asdict(self)
        data["created"] = _iso(self.created)
        data["expires"] = _iso(self.expires)
        if not include_size:
            data.pop("size")
        return data


@dataclass
class SynchronizationContractLog:
    """One row per per-object outcome within a run."""

    synchronization_id: str
    synchronization_log_id: int | None
    target_result: TargetResult
    synchronization_contract_id: int | None = None
    source: dict[str, Any] | None = None
    target: dict[str, Any] | None = None
    message: str = ""
    test: bool = False
    force: bool = False
    id: int | None = None
    uuid: str = field(default_factory=new_uuid)
    created: datetime | None = None
    expires: datetime | None = None
    size: int = MIN_LOG_SIZE

    def calculate_size(self) -> int:
        self.size = _json_size(self.to_dict(include_size=False))
        return self.size

    def to_dict(self, include_size: bool = True) -> dict[str, Any]:
        data = asdict(self)
        data["target_result"] = self.target_result.value
        data["created"] = _iso(self.created)
        data["expires"] = _iso(self.expires)
        if not include_size:
            data.pop("size")
        return data


# =============================================================================
# Events
# =============================================================================


@dataclass
class Event:
    """A change notification, serialized as a CloudEvents 1.0 structure."""

    type: str
    source: str
    data: dict[str, Any] = field(default_factory=dict)
    subject: str | None = None
    id: str = field(default_factory=new_uuid)
    time: datetime = field(default_factory=utcnow)

    def to_cloudevent(self) -> dict[str, Any]:
        return {
            "specversion": "1.0",
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "time": self.time.isoformat(),
            "datacontenttype": "application/json",
            "data": self.data,
        }


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


@dataclass
class EventSubscription:
    """A subscriber registration, push (sink URL) or pull (cursor reads)."""

    reference: str
    style: SubscriptionStyle = SubscriptionStyle.PUSH
    sink: str | None = None
    types: list[str] = field(default_factory=list)
    source: str | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    id: int | None = None
    uuid: str = field(default_factory=new_uuid)
    created: datetime | None = None
    updated: datetime | None = None

    FIELDS: ClassVar[dict[str, tuple[bool, Converter]]] = {
        "reference": (True, _str),
        "style": (False, _enum(SubscriptionStyle)),
        "sink": (False, _str),
        "types": (False, _str_list),
        "source": (False, _str),
        "filters": (False, _dict),
        "status": (False, _enum(SubscriptionStatus)),
    }

    @classmethod
    def from_map(cls, data: Any) -> "EventSubscription":
        values = _decode("subscription", data, cls.FIELDS)
        style = values.get("style", SubscriptionStyle.PUSH)
        if style == SubscriptionStyle.PUSH and not values.get("sink"):
            raise FieldValidationError("subscription", {"sink": "required for push subscriptions"})
        return cls(**values)

    def matches(self, event: Event) -> bool:
        """Whether this subscription wants ``event``."""
        if self.status != SubscriptionStatus.ACTIVE:
            return False
        if self.types and event.type not in self.types:
            return False
        if self.source and event.source != self.source:
            return False
        return all(_lookup(event.data, path) == expected for path, expected in self.filters.items())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["style"] = self.style.value
        data["status"] = self.status.value
        data["created"] = _iso(self.created)
        data["updated"] = _iso(self.updated)
        return data


@dataclass
class EventMessage:
    """One event queued for one subscription."""

    subscription_id: int
    event_id: str
    payload: dict[str, Any]
    style: SubscriptionStyle = SubscriptionStyle.PUSH
    status: MessageStatus = MessageStatus.PENDING
    retry_count: int = 0
    last_attempt: datetime | None = None
    next_attempt: datetime | None = None
    last_response: dict[str, Any] | None = None
    id: int | None = None
    uuid: str = field(default_factory=new_uuid)
    created: datetime | None = None
    updated: datetime | None = None
    expires: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["style"] = self.style.value
        data["status"] = self.status.value
        for key in ("last_attempt", "next_attempt", "created", "updated", "expires"):
            data[key] = _iso(getattr(self, key))
        return data
