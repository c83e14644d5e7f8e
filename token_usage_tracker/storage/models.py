"""
Data models for storage layer.

Defines the usage buckets and the ledger tree persisted in the settings blob.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


COUNTER_FIELDS = ("input", "output", "reasoning", "total", "messageCount")

KEYED_MAPS = ("byDay", "byHour", "byWeek", "byMonth", "byChat", "byModel", "bySource")


def _as_counter(value: Any, name: str) -> int:
    """Convert a persisted counter to a non-negative int.

    Raises:
        ValueError: If the value is not a non-negative whole number
    """
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{name}' must be a number, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"'{name}' cannot be negative")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"'{name}' must be a whole number")
    return int(value)


@dataclass
class UsageBucket:
    """Additive token counters for one time window or identity dimension.

    ``total`` always equals ``input + output + reasoning``; it is maintained
    by :meth:`add` and never recomputed lazily.
    """
    input: int = 0
    output: int = 0
    reasoning: int = 0
    total: int = 0
    message_count: int = 0
    models: Optional[Dict[str, "UsageBucket"]] = None
    sources: Optional[Dict[str, "UsageBucket"]] = None

    def add(
        self,
        input_tokens: int,
        output_tokens: int,
        reasoning_tokens: int = 0,
        messages: int = 1,
    ) -> None:
        """Add one exchange to this bucket."""
        self.input += input_tokens
        self.output += output_tokens
        self.reasoning += reasoning_tokens
        self.total += input_tokens + output_tokens + reasoning_tokens
        self.message_count += messages

    def child(self, kind: str, key: str) -> "UsageBucket":
        """Return the nested ``models``/``sources`` breakdown for *key*, creating it on demand."""
        children = getattr(self, kind)
        if children is None:
            children = {}
            setattr(self, kind, children)
        if key not in children:
            children[key] = UsageBucket()
        return children[key]

    def merge(self, other: "UsageBucket") -> None:
        """Add every counter of *other*, including nested breakdowns."""
        self.input += other.input
        self.output += other.output
        self.reasoning += other.reasoning
        self.total += other.total
        self.message_count += other.message_count
        for kind in ("models", "sources"):
            incoming = getattr(other, kind)
            if not incoming:
                continue
            for key, bucket in incoming.items():
                self.child(kind, key).merge(bucket)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "total": self.total,
            "messageCount": self.message_count,
        }
        if self.models is not None:
            data["models"] = {k: v.to_dict() for k, v in self.models.items()}
        if self.sources is not None:
            data["sources"] = {k: v.to_dict() for k, v in self.sources.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str = "bucket") -> "UsageBucket":
        """Build a bucket from its persisted form.

        Missing counters default to 0 and a missing ``total`` is recomputed
        from the parts. A ``total`` larger than the parts carries reasoning
        that was never stored separately; the difference becomes
        ``reasoning``. Older day buckets stored ``models[modelId]`` as a bare
        token total; those are migrated using the day's input/output ratio.

        Raises:
            ValueError: If the data is not a mapping, a counter is invalid or
                ``total`` is smaller than ``input + output + reasoning``
        """
        if not isinstance(data, dict):
            raise ValueError(f"{path} must be an object")

        counters = {name: _as_counter(data.get(name), f"{path}.{name}") for name in COUNTER_FIELDS}
        parts = counters["input"] + counters["output"] + counters["reasoning"]
        if data.get("total") is None:
            counters["total"] = parts
        elif counters["total"] > parts:
            counters["reasoning"] = counters["total"] - counters["input"] - counters["output"]
        elif counters["total"] < parts:
            raise ValueError(
                f"{path}.total ({counters['total']}) is smaller than input + output + reasoning ({parts})"
            )

        bucket = cls(
            input=counters["input"],
            output=counters["output"],
            reasoning=counters["reasoning"],
            total=counters["total"],
            message_count=counters["messageCount"],
        )

        for kind in ("models", "sources"):
            raw_children = data.get(kind)
            if raw_children is None:
                continue
            if not isinstance(raw_children, dict):
                raise ValueError(f"{path}.{kind} must be an object")
            children = {}
            for key, value in raw_children.items():
                if kind == "models" and not isinstance(value, dict):
                    value = bucket._migrate_legacy_model_total(value, f"{path}.{kind}.{key}")
                children[key] = cls.from_dict(value, f"{path}.{kind}.{key}")
            setattr(bucket, kind, children)

        return bucket

    def _migrate_legacy_model_total(self, value: Any, path: str) -> Dict[str, int]:
        total = _as_counter(value, path)
        ratio = total / self.total if self.total else 0
        input_tokens = min(round(self.input * ratio), total)
        return {
            "input": input_tokens,
            "output": total - input_tokens,
            "total": total,
        }


@dataclass
class SessionBucket(UsageBucket):
    """Usage since the last session reset."""
    start_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["startTime"] = self.start_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: str = "session") -> "SessionBucket":
        base = UsageBucket.from_dict(data, path)
        start_time = data.get("startTime")
        if start_time is not None and not isinstance(start_time, str):
            raise ValueError(f"{path}.startTime must be a string")
        return cls(
            input=base.input,
            output=base.output,
            reasoning=base.reasoning,
            total=base.total,
            message_count=base.message_count,
            start_time=start_time,
        )


@dataclass
class UsageLedger:
    """The full aggregation tree persisted under ``usage``."""
    session: SessionBucket = field(default_factory=SessionBucket)
    all_time: UsageBucket = field(default_factory=UsageBucket)
    by_day: Dict[str, UsageBucket] = field(default_factory=dict)
    by_hour: Dict[str, UsageBucket] = field(default_factory=dict)
    by_week: Dict[str, UsageBucket] = field(default_factory=dict)
    by_month: Dict[str, UsageBucket] = field(default_factory=dict)
    by_chat: Dict[str, UsageBucket] = field(default_factory=dict)
    by_model: Dict[str, UsageBucket] = field(default_factory=dict)
    by_source: Dict[str, UsageBucket] = field(default_factory=dict)

    _ATTRIBUTES = {
        "byDay": "by_day",
        "byHour": "by_hour",
        "byWeek": "by_week",
        "byMonth": "by_month",
        "byChat": "by_chat",
        "byModel": "by_model",
        "bySource": "by_source",
    }

    def keyed_map(self, name: str) -> Dict[str, UsageBucket]:
        """Return the keyed map persisted as *name* (e.g. ``"byDay"``)."""
        return getattr(self, self._ATTRIBUTES[name])

    def copy(self) -> "UsageLedger":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "session": self.session.to_dict(),
            "allTime": self.all_time.to_dict(),
        }
        for name in KEYED_MAPS:
            data[name] = {k: v.to_dict() for k, v in self.keyed_map(name).items()}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UsageLedger":
        """Build a ledger from its persisted form, filling in missing sections.

        Raises:
            ValueError: If any section or bucket is malformed
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("usage must be an object")

        ledger = cls(
            session=SessionBucket.from_dict(data.get("session") or {}),
            all_time=UsageBucket.from_dict(data.get("allTime") or {}, "allTime"),
        )
        for name in KEYED_MAPS:
            raw = data.get(name) or {}
            if not isinstance(raw, dict):
                raise ValueError(f"usage.{name} must be an object")
            target = ledger.keyed_map(name)
            for key, value in raw.items():
                target[key] = UsageBucket.from_dict(value, f"{name}.{key}")
        return ledger
