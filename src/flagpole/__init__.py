from __future__ import annotations
import re
import logging
import dill
import os
import time
import json
import jsonschema
import threading
from abc import abstractmethod
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterable, Literal, Sequence
from hashlib import md5
from types import MappingProxyType

from prometheus_client import Histogram


logger = logging.getLogger(__name__)

type FlagKey = str
type UserIdentifier = str
type DictConfig = dict[str, Any]
type EvaluationKind = Literal["disabled", "rule", "rollout", "default"]

ANONYMOUS_IDENTIFIER = "anonymous"


# Context and snapshots


@dataclass(frozen=True, slots=True)
class UserContext:
    """
    The identity of the user a flag is evaluated for. Either identifier may be
    absent. custom_attributes is an open mapping reserved for future rule
    types and is not read by any rule today.
    """

    user_id: str | None = None
    user_email: str | None = None
    # Read-only. Left out of the hash since mappings are unhashable.
    custom_attributes: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "custom_attributes", MappingProxyType(dict(self.custom_attributes)))

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> UserContext:
        """
        Build a context from a request body. Missing keys mean the value is
        absent. Unknown keys are ignored.
        """
        if not isinstance(d, Mapping):
            raise TypeError(f"context must be a dict, not {type(d).__name__}")
        for k in ("user_id", "user_email"):
            v = d.get(k)
            if v is not None and not isinstance(v, str):
                raise TypeError(f"{k} must be a string, not {type(v).__name__}")
        attrs = d.get("custom_attributes")
        if attrs is None:
            attrs = {}
        if not isinstance(attrs, Mapping):
            raise TypeError(f"custom_attributes must be a dict, not {type(attrs).__name__}")
        for k, v in attrs.items():
            if not isinstance(k, str):
                raise TypeError(f"attribute key must be a string, not {type(k).__name__}")
            if not isinstance(v, str):
                raise TypeError(f"attribute value must be a string, not {type(v).__name__}")
        return UserContext(
            user_id=d.get("user_id"),
            user_email=d.get("user_email"),
            custom_attributes=dict(attrs),
        )


class RuleType(StrEnum):
    USER_ID = "user_id"
    USER_EMAIL = "user_email"
    EMAIL_DOMAIN = "email_domain"
    # Types written by a newer management layer. Never matches.
    UNKNOWN = "unknown"

    @staticmethod
    def parse(s: str) -> RuleType:
        try:
            t = RuleType(s)
        except ValueError:
            return RuleType.UNKNOWN
        return t


@dataclass(frozen=True, slots=True)
class FlagSnapshot:
    key: FlagKey
    enabled: bool
    rollout_percentage: int = 0


@dataclass(frozen=True, slots=True)
class RuleSnapshot:
    """
    A targeting rule of a single flag. A matching rule always enables the flag;
    enabled only controls whether the rule takes part in matching.
    """

    type: RuleType
    value: str
    enabled: bool = True
    priority: int = 0


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    """
    The result of evaluating a flag.
    """

    enabled: bool
    reason: str
    kind: EvaluationKind
    # The matched rule when kind is "rule".
    rule: RuleSnapshot | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "reason": self.reason}


# Rule matching


def _rule_matches(rule: RuleSnapshot, context: UserContext) -> bool:
    match rule.type:
        case RuleType.USER_ID:
            return context.user_id is not None and context.user_id == rule.value
        case RuleType.USER_EMAIL:
            return context.user_email is not None and context.user_email == rule.value
        case RuleType.EMAIL_DOMAIN:
            # The leading "@" of the value is checked when the rule is authored,
            # not here.
            return context.user_email is not None and context.user_email.endswith(rule.value)
        case RuleType.UNKNOWN:
            return False
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


def match_rules(rules: Iterable[RuleSnapshot], context: UserContext) -> RuleSnapshot | None:
    """
    Return the highest priority enabled rule matching the context, or None.

    Rules are scanned in descending priority. sorted() is stable so rules of
    equal priority keep their input order. Scanning stops at the first match.
    """
    for rule in sorted(rules, key=lambda r: -r.priority):
        if not rule.enabled:
            continue
        if _rule_matches(rule, context):
            return rule
    return None


# Rollout bucketing


def _hash64(s: str) -> int:
    """
    Hashes the given string to an unsigned 64-bit integer.

    The algorithm is pinned: the first 8 bytes of the MD5 digest of the UTF-8
    encoded string, read as a big-endian unsigned integer. Any client computing
    rollout buckets independently must use the same algorithm, so this must
    never change. Python's builtin hash() is salted per process and cannot be
    used.
    """
    return int.from_bytes(
        md5(s.encode("utf-8")).digest()[:8],
        byteorder="big",  # Being explicit to survive default changes.
        signed=False,  # Being explicit to survive default changes.
    )


def rollout_bucket(flag_key: FlagKey, user_identifier: UserIdentifier) -> int:
    """
    Return the stable bucket in [0, 100) of the user for the given flag.
    """
    return _hash64(f"{flag_key}:{user_identifier}") % 100


def in_rollout(flag_key: FlagKey, user_identifier: UserIdentifier, percentage: int) -> bool:
    if percentage <= 0:
        return False
    if percentage >= 100:
        return True
    return rollout_bucket(flag_key, user_identifier) < percentage


def resolve_user_identifier(context: UserContext) -> UserIdentifier:
    """
    The identifier used for rollout bucketing and audit records: the user id,
    else the user email, else "anonymous". All anonymous users share a single
    bucket per flag.
    """
    if context.user_id is not None:
        return context.user_id
    if context.user_email is not None:
        return context.user_email
    return ANONYMOUS_IDENTIFIER


# Evaluation


def evaluate(flag: FlagSnapshot, rules: Iterable[RuleSnapshot], context: UserContext) -> EvaluationResult:
    """
    Decide whether the flag is enabled for the context. The checks run in a
    fixed order and the first one that applies decides:

    1. A globally disabled flag is disabled for everyone.
    2. A matching rule enables the flag.
    3. A positive rollout percentage enables the flag for users whose bucket
       falls under it.
    4. Otherwise the flag is enabled.
    """
    if not flag.enabled:
        return EvaluationResult(False, "Flag is globally disabled", "disabled")

    rule = match_rules(rules, context)
    if rule is not None:
        return EvaluationResult(True, f"Matched {rule.type} rule: {rule.value}", "rule", rule)

    if flag.rollout_percentage > 0:
        p = flag.rollout_percentage
        if in_rollout(flag.key, resolve_user_identifier(context), p):
            return EvaluationResult(True, f"User in {p}% rollout", "rollout")
        return EvaluationResult(False, f"User not in {p}% rollout", "rollout")

    return EvaluationResult(True, "Flag enabled globally, no specific rules applied", "default")


def evaluate_batch(
    flags: Iterable[FlagSnapshot],
    rules_by_flag: Mapping[FlagKey, Sequence[RuleSnapshot]],
    context: UserContext,
) -> dict[FlagKey, EvaluationResult]:
    """
    Evaluate each flag with its own rules. Flags without an entry in
    rules_by_flag have no rules. Evaluations are independent of each other.
    """
    return {flag.key: evaluate(flag, rules_by_flag.get(flag.key, ()), context) for flag in flags}


# Snapshot compilation


_flag_key_re = re.compile(r"[a-z][a-z0-9_-]*")


def validate_flag_key(key: str):
    if not key:
        raise ValueError("flag key cannot be empty")
    if len(key) > 64:
        raise ValueError(f"flag key {key!r} is too long (max 64 characters)")
    if not key[0].isascii() or not key[0].isalpha():
        raise ValueError(f"flag key {key!r} must start with a letter")
    if not _flag_key_re.fullmatch(key):
        raise ValueError(f"flag key {key!r} may only contain lowercase letters, digits, '_' and '-'")


def validate_rollout_percentage(percentage: int):
    if type(percentage) is not int:
        raise ValueError(f"rollout percentage must be an integer, not {percentage!r}")
    if not 0 <= percentage <= 100:
        raise ValueError(f"rollout percentage must be between 0 and 100, not {percentage}")


def validate_rule_type(rule_type: str):
    if RuleType.parse(rule_type) is RuleType.UNKNOWN:
        known = ", ".join(t.value for t in RuleType if t is not RuleType.UNKNOWN)
        raise ValueError(f"invalid rule type {rule_type!r}, must be one of: {known}")


def validate_rule_value(rule_type: str, rule_value: str):
    if not rule_value.strip():
        raise ValueError("rule value cannot be empty")
    match RuleType.parse(rule_type):
        case RuleType.EMAIL_DOMAIN:
            if not rule_value.startswith("@"):
                raise ValueError(f"email domain {rule_value!r} must start with '@' (e.g. @company.com)")
            if len(rule_value) < 3:
                raise ValueError(f"email domain {rule_value!r} is too short")
        case RuleType.USER_EMAIL:
            if "@" not in rule_value:
                raise ValueError(f"invalid email {rule_value!r}")
        case _:
            pass


def merge_configs(*configs: DictConfig) -> DictConfig:
    """
    Merge the flags of the given configs into a single config. Order is not
    important. Flag definitions are shallow copied. A flag key defined in more
    than one config is an error.

    The merged config is not validated. Compile it with Snapshot.from_dict.
    """
    merged: dict[str, Any] = {}
    for config in configs:
        flags = config.get("flags", {})
        intersection = merged.keys() & flags.keys()
        if intersection:
            raise ValueError(f"Duplicate flag keys: {intersection}")
        merged.update(flags)
    return {"flags": merged}


with open(os.path.join(os.path.dirname(__file__), "config_schema.json")) as f:
    _config_schema = json.load(f)


class Snapshot:
    """
    A validated, read-only set of flags and their rules ready to be loaded into
    the evaluator.
    """

    __slots__ = ("flags", "rules_by_flag")
    flags: dict[FlagKey, FlagSnapshot]
    # Rules of each flag, sorted by descending priority.
    rules_by_flag: dict[FlagKey, tuple[RuleSnapshot, ...]]

    @staticmethod
    def from_bytes(b: bytes) -> Snapshot:
        obj = dill.loads(b)
        assert isinstance(obj, Snapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def from_dict(c: DictConfig) -> Snapshot:
        """
        Validate the config and compile it into a snapshot.
        """
        jsonschema.validate(c, _config_schema)

        flags: dict[FlagKey, FlagSnapshot] = {}
        rules_by_flag: dict[FlagKey, tuple[RuleSnapshot, ...]] = {}
        for key, f in c.get("flags", {}).items():
            validate_flag_key(key)
            percentage = f.get("rollout_percentage", 0)
            validate_rollout_percentage(percentage)
            flags[key] = FlagSnapshot(key, f.get("enabled", False), percentage)

            rules = []
            for r in f.get("rules", []):
                rule_type = RuleType.parse(r["type"])
                if rule_type is RuleType.UNKNOWN:
                    logger.warning("flag %s has rule of unknown type %r which will never match", key, r["type"])
                validate_rule_value(r["type"], r["value"])
                priority = r.get("priority", 0)
                # The schema accepts integral floats such as 2.0.
                if type(priority) is not int:
                    raise ValueError(f"rule priority must be an integer, not {priority!r}")
                rules.append(RuleSnapshot(rule_type, r["value"], r.get("enabled", True), priority))
            rules.sort(key=lambda r: -r.priority)
            rules_by_flag[key] = tuple(rules)

        s = Snapshot()
        s.flags = flags
        s.rules_by_flag = rules_by_flag
        return s


# Evaluator service


@dataclass(frozen=True, slots=True)
class EvaluationRecord:
    """
    Audit entry of a single flag evaluation.
    """

    flag_key: FlagKey
    user_identifier: UserIdentifier
    enabled: bool
    kind: EvaluationKind
    # Start of the export block the evaluation happened in.
    timestamp: float


class Exporter:
    """
    The exporter is responsible for exporting evaluation records to a storage
    system for analytics and auditing.
    """

    @abstractmethod
    def export(self, entries: list[EvaluationRecord]) -> None: ...


_prom_labels = ["flag", "enabled", "kind"]
_prom_eval_duration = Histogram(
    "flagpole_evaluation_seconds",
    "Flag evaluation duration in seconds",
    buckets=[1e-6, 1e-5, 1e-4, 1e-3, 1e-2, 1e-1],
    labelnames=_prom_labels,
)


class Evaluator:
    """
    The evaluator holds the loaded snapshot, evaluates flags against it and
    queues evaluation records for the exporter. The evaluator is thread-safe.
    """

    def __init__(
        self,
        exporter: Exporter | None = None,
        export_block_seconds: int = 60 * 5,
    ):
        self._snapshot_mu = threading.RLock()
        self._snapshot: Snapshot | None = None

        if exporter:
            self._exporter = exporter
            self._export_block_seconds = export_block_seconds
            self._records_mu = threading.Lock()
            self._records: dict[int, dict[tuple[int, str, str], EvaluationRecord]] = defaultdict(dict)
            self._stop_wait = threading.Event()
            self._start_exporter()

    def _start_exporter(self):
        def _worker():
            while not self._stop_wait.is_set():
                self._stop_wait.wait(self._export_block_seconds)
                cur_block_id = self._export_block_id(time.time())
                entries = self._pop_records(lambda block_id: block_id < cur_block_id)
                if not entries:
                    continue
                try:
                    self._exporter.export(entries)
                except Exception:
                    logger.exception("Error exporting evaluation records")

        threading.Thread(target=_worker, daemon=True).start()

    def stop_exporter(self):
        if hasattr(self, "_exporter"):
            self._stop_wait.set()

    def _pop_records(self, select) -> list[EvaluationRecord]:
        blocks = []
        with self._records_mu:
            for block_id, block in list(self._records.items()):
                if select(block_id):
                    blocks.append(block)
                    del self._records[block_id]
        return [e for d in blocks for e in d.values()]

    def flush_exports(self):
        """
        Export all pending evaluation records, including those of the current
        block. Unlike the background exporter, errors are raised to the caller.
        """
        if not hasattr(self, "_exporter"):
            return
        entries = self._pop_records(lambda _: True)
        if entries:
            self._exporter.export(entries)

    def load_snapshot(self, snapshot: Snapshot):
        """
        Load the snapshot into the evaluator. load_snapshot is thread-safe.
        """
        with self._snapshot_mu:
            self._snapshot = snapshot
        logger.debug("loaded snapshot with %d flags", len(snapshot.flags))

    def _export_block_id(self, t: float) -> int:
        return (int(t) // self._export_block_seconds) * self._export_block_seconds

    def detailed_evaluate_all(
        self,
        keys: Iterable[FlagKey] | None,
        context: UserContext | Mapping[str, Any],
        now: float | None = None,
    ) -> dict[FlagKey, EvaluationResult]:
        """
        Evaluate the given flags, or all flags of the snapshot when keys is
        None, and return EvaluationResults. context is either a UserContext or
        a request body dict. detailed_evaluate_all is thread-safe.
        """
        if not isinstance(context, UserContext):
            context = UserContext.from_dict(context)
        if now is None:
            now = time.time()

        with self._snapshot_mu:
            snapshot = self._snapshot
        if snapshot is None:
            raise RuntimeError("snapshot not loaded")

        if keys is None:
            keys = snapshot.flags.keys()

        # Evaluate flags

        results: dict[FlagKey, EvaluationResult] = {}
        for key in set(keys):
            flag = snapshot.flags.get(key)
            if flag is None:
                raise ValueError(f"Flag {key} does not exist in the snapshot")
            start = time.perf_counter()
            r = evaluate(flag, snapshot.rules_by_flag.get(key, ()), context)
            dur = time.perf_counter() - start
            _prom_eval_duration.labels(flag=key, enabled=str(r.enabled), kind=r.kind).observe(dur)
            results[key] = r

        # Queue evaluation records

        if hasattr(self, "_exporter"):
            block_id = self._export_block_id(now)
            identifier = resolve_user_identifier(context)
            upd = {(block_id, identifier, key): EvaluationRecord(key, identifier, r.enabled, r.kind, block_id) for key, r in results.items()}
            with self._records_mu:
                self._records[block_id].update(upd)

        return results

    def evaluate(self, key: FlagKey, context: UserContext | Mapping[str, Any]) -> bool:
        """
        Evaluate the given flag. evaluate is thread-safe.

        key: The key of the flag.
        context: The user context to evaluate the flag for.
        """
        return self.detailed_evaluate_all([key], context)[key].enabled

    def evaluate_all(self, keys: Iterable[FlagKey] | None, context: UserContext | Mapping[str, Any]) -> dict[FlagKey, bool]:
        """
        Evaluate the given flags for the context. evaluate_all is thread-safe.
        """
        return {k: r.enabled for k, r in self.detailed_evaluate_all(keys, context).items()}

    def evaluate_response(self, context: UserContext | Mapping[str, Any]) -> dict[str, Any]:
        """
        Evaluate every flag of the snapshot and return the SDK response body.
        """
        return {"flags": {k: r.to_dict() for k, r in self.detailed_evaluate_all(None, context).items()}}
