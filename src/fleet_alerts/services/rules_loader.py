from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from src.fleet_alerts.errors import RuleLoadError
from src.fleet_alerts.schemas.common import utc_now
from src.fleet_alerts.schemas.rules import AutoCloseRule, ClassifierRule, EscalationRule, RuleSetOut

logger = logging.getLogger(__name__)

STRUCTURED_KEYS = ("rules", "escalation", "auto_close")


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of validated rules. Swapped as a whole on reload, never edited."""

    escalation: Mapping[str, EscalationRule] = field(default_factory=lambda: MappingProxyType({}))
    auto_close: Mapping[str, AutoCloseRule] = field(default_factory=lambda: MappingProxyType({}))
    classifiers: Tuple[ClassifierRule, ...] = ()
    source_format: str = "empty"
    loaded_at: Optional[datetime] = None
    dropped: Tuple[str, ...] = ()

    def to_out(self) -> RuleSetOut:
        return RuleSetOut(
            source_format=self.source_format,
            loaded_at=self.loaded_at.isoformat() if self.loaded_at else None,
            rules=[r.model_dump(by_alias=True, mode="json") for r in self.classifiers],
            escalation={
                k: v.model_dump(mode="json", exclude={"source_type"}) for k, v in self.escalation.items()
            },
            auto_close={
                k: {"auto_close_if": list(v.fields)} for k, v in self.auto_close.items()
            },
            dropped=list(self.dropped),
        )


EMPTY_RULESET = RuleSet()


def _validation_summary(exc: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())


class _Builder:
    """Collects valid entries; invalid ones are logged and recorded by name, never raised."""

    def __init__(self) -> None:
        self.escalation: Dict[str, EscalationRule] = {}
        self.auto_close: Dict[str, AutoCloseRule] = {}
        self.classifiers: List[ClassifierRule] = []
        self.dropped: List[str] = []

    def drop(self, name: str, why: str) -> None:
        logger.warning("Dropping rule entry %s: %s", name, why)
        self.dropped.append(name)

    def add_escalation(self, source_type: str, cfg: Mapping[str, Any]) -> None:
        try:
            self.escalation[source_type] = EscalationRule.model_validate({**cfg, "source_type": source_type})
        except ValidationError as exc:
            self.drop(f"escalation.{source_type}", _validation_summary(exc))

    def add_auto_close(self, source_type: str, fields: Any) -> None:
        try:
            self.auto_close[source_type] = AutoCloseRule.model_validate({"source_type": source_type, "fields": fields})
        except ValidationError as exc:
            self.drop(f"auto_close.{source_type}", _validation_summary(exc))

    def add_classifier(self, idx: int, entry: Any) -> None:
        if not isinstance(entry, Mapping):
            self.drop(f"rules[{idx}]", "not an object")
            return
        try:
            self.classifiers.append(ClassifierRule.model_validate(entry))
        except ValidationError as exc:
            self.drop(f"rules[{idx}]", _validation_summary(exc))

    def build(self, source_format: str) -> RuleSet:
        return RuleSet(
            escalation=MappingProxyType(dict(self.escalation)),
            auto_close=MappingProxyType(dict(self.auto_close)),
            classifiers=tuple(self.classifiers),
            source_format=source_format,
            loaded_at=utc_now(),
            dropped=tuple(self.dropped),
        )


def _parse_legacy(raw: Mapping[str, Any], b: _Builder) -> None:
    # sourceType -> {escalate_if_count, window_mins, escalate_to, auto_close_if}
    for source_type, cfg in raw.items():
        if not isinstance(cfg, Mapping):
            b.drop(str(source_type), "not an object")
            continue
        if "escalate_if_count" in cfg or "window_mins" in cfg:
            b.add_escalation(str(source_type), cfg)
        if "auto_close_if" in cfg:
            b.add_auto_close(str(source_type), cfg["auto_close_if"])


def _parse_structured(raw: Mapping[str, Any], b: _Builder) -> None:
    rules = raw.get("rules") or []
    if isinstance(rules, list):
        for idx, entry in enumerate(rules):
            b.add_classifier(idx, entry)
    else:
        b.drop("rules", "not a list")

    escalation = raw.get("escalation") or {}
    if isinstance(escalation, Mapping):
        for source_type, cfg in escalation.items():
            if isinstance(cfg, Mapping):
                b.add_escalation(str(source_type), cfg)
            else:
                b.drop(f"escalation.{source_type}", "not an object")
    else:
        b.drop("escalation", "not an object")

    auto_close = raw.get("auto_close") or {}
    if isinstance(auto_close, Mapping):
        for source_type, cfg in auto_close.items():
            # {"compliance": {"auto_close_if": "document_valid"}} or {"compliance": ["a", "b"]}
            fields = cfg.get("auto_close_if", cfg.get("fields")) if isinstance(cfg, Mapping) else cfg
            b.add_auto_close(str(source_type), fields)
    else:
        b.drop("auto_close", "not an object")


# PUBLIC_INTERFACE
def parse_ruleset(raw: Any) -> RuleSet:
    """
    Validate and sanitise a rule document into a RuleSet.

    Accepts the legacy flat map (sourceType -> settings) and the structured
    {rules, escalation, auto_close} document. Unknown keys are stripped and invalid
    entries are dropped; only a document that is not an object at all is rejected.
    """
    if not isinstance(raw, Mapping):
        raise RuleLoadError("rule document must be a JSON object")

    b = _Builder()
    if any(k in raw for k in STRUCTURED_KEYS):
        _parse_structured(raw, b)
        return b.build("structured")
    _parse_legacy(raw, b)
    return b.build("legacy")


class RuleSetLoader:
    """
    Process-wide holder of the current RuleSet.

    Readers call current() without locking and get whichever complete snapshot was last
    published. Loads build a new snapshot and swap the reference in one assignment; a failed
    load logs the error and keeps the previous snapshot. current() also reloads lazily once
    the rule file's modification time moves.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._current: RuleSet = EMPTY_RULESET
        self._attempted = False
        self._seen_mtime: Optional[int] = None
        self._last_error: Optional[str] = None
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def _stat_mtime(self) -> Optional[int]:
        try:
            return self._path.stat().st_mtime_ns
        except OSError:
            return None

    def _read(self) -> RuleSet:
        try:
            raw_text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise RuleLoadError(f"cannot read rules file {self._path}: {exc}") from exc
        try:
            raw = json.loads(raw_text)
        except ValueError as exc:
            raise RuleLoadError(f"rules file {self._path} is not valid JSON: {exc}") from exc
        return parse_ruleset(raw)

    # PUBLIC_INTERFACE
    def load(self) -> RuleSet:
        """Re-read and sanitise the rule source. Returns the snapshot in effect afterwards."""
        with self._lock:
            mtime = self._stat_mtime()
            self._attempted = True
            self._seen_mtime = mtime
            try:
                ruleset = self._read()
            except RuleLoadError as exc:
                self._last_error = str(exc)
                logger.error("Rules load failed; keeping previous ruleset (%s): %s", self._current.source_format, exc)
                return self._current

            self._current = ruleset
            self._last_error = None
            logger.info(
                "Loaded rules from %s format=%s escalation=%d auto_close=%d classifiers=%d dropped=%d",
                self._path,
                ruleset.source_format,
                len(ruleset.escalation),
                len(ruleset.auto_close),
                len(ruleset.classifiers),
                len(ruleset.dropped),
            )
            return ruleset

    # PUBLIC_INTERFACE
    def reload(self) -> bool:
        """Force a reload. Returns False (and keeps the previous ruleset) when loading failed."""
        self.load()
        return self._last_error is None

    # PUBLIC_INTERFACE
    def current(self) -> RuleSet:
        """Return the last successfully loaded snapshot, loading first if needed."""
        if not self._attempted:
            self.load()
        else:
            mtime = self._stat_mtime()
            if mtime is not None and mtime != self._seen_mtime:
                self.load()
        return self._current
