"""Danger rule configuration: loading, validation and compilation."""
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Union

import yaml
from pydantic import ValidationError

from inspector import config
from inspector.models import DangerHit, RuleDefinition, RuleFile, Severity, ToolActionRule

logger = logging.getLogger("inspector.rules")


class RuleConfigError(RuntimeError):
    """Rule configuration is missing or invalid."""


@dataclass(frozen=True)
class PatternRule:
    category: str
    severity: Severity
    label: str
    regexes: tuple[re.Pattern[str], ...]

    def first_match(self, text: str) -> re.Pattern[str] | None:
        """Return the first pattern (in definition order) that matches ``text``."""
        for regex in self.regexes:
            if regex.search(text):
                return regex
        return None

    def hit(self, msg_id: str | None, tool_name: str, text: str) -> DangerHit:
        return DangerHit(
            msgId=msg_id,
            command=f"{tool_name or '?'}: {text[:200]}",
            category=self.category,
            severity=self.severity,
            label=self.label,
        )


@dataclass(frozen=True)
class ToolRule:
    category: str
    severity: Severity
    label: str
    tool_rules: tuple[ToolActionRule, ...]

    def match(self, msg_id: str | None, tool_name: str, action: str) -> list[DangerHit]:
        """One hit per (toolName, actions) pair matching this invocation."""
        hits: list[DangerHit] = []
        for tool_rule in self.tool_rules:
            if tool_rule.toolName != tool_name:
                continue
            if tool_rule.actions is not None and not (action and action in tool_rule.actions):
                continue
            hits.append(
                DangerHit(
                    msgId=msg_id,
                    command=f"{tool_name}: {action}" if action else tool_name,
                    category=self.category,
                    severity=self.severity,
                    label=self.label,
                )
            )
        return hits


CompiledRule = Union[PatternRule, ToolRule]


@dataclass(frozen=True)
class RuleSet:
    rules: tuple[CompiledRule, ...] = ()
    source: str = ""
    pattern_rules: tuple[PatternRule, ...] = field(init=False)
    tool_rules: tuple[ToolRule, ...] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "pattern_rules", tuple(r for r in self.rules if isinstance(r, PatternRule)))
        object.__setattr__(self, "tool_rules", tuple(r for r in self.rules if isinstance(r, ToolRule)))

    def __len__(self) -> int:
        return len(self.rules)


def _compile_one(idx: int, definition: RuleDefinition) -> CompiledRule:
    patterns = [p for p in (definition.patterns or []) if p]
    tool_rules = list(definition.toolRules or [])
    label = definition.label or definition.category

    if patterns and tool_rules:
        raise RuleConfigError(
            f"Rule #{idx} ({definition.category}) defines both patterns and toolRules"
        )
    if tool_rules:
        return ToolRule(
            category=definition.category,
            severity=definition.severity,
            label=label,
            tool_rules=tuple(tool_rules),
        )
    if not patterns:
        raise RuleConfigError(
            f"Rule #{idx} ({definition.category}) defines neither patterns nor toolRules"
        )

    regexes: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            regexes.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            raise RuleConfigError(
                f"Rule #{idx} ({definition.category}) has an invalid pattern {pattern!r}: {exc}"
            ) from exc
    return PatternRule(
        category=definition.category,
        severity=definition.severity,
        label=label,
        regexes=tuple(regexes),
    )


def compile_rules(definitions: Iterable[RuleDefinition], source: str = "") -> RuleSet:
    """Compile rule definitions; patterns become case-insensitive regexes."""
    compiled = [_compile_one(idx, definition) for idx, definition in enumerate(definitions)]
    return RuleSet(rules=tuple(compiled), source=source)


def parse_rule_document(raw: object) -> list[RuleDefinition]:
    if not isinstance(raw, dict):
        raise RuleConfigError("Rule document must be a mapping with a 'rules' list")
    try:
        return RuleFile.model_validate(raw).rules
    except ValidationError as exc:
        raise RuleConfigError(f"Invalid rule definitions: {exc}") from exc


def load_rule_definitions(path: Path) -> list[RuleDefinition]:
    """Read a JSON or YAML rule document."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RuleConfigError(f"Rule file not found: {path}") from exc
    except OSError as exc:
        raise RuleConfigError(f"Cannot read rule file {path}: {exc}") from exc

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RuleConfigError(f"Rule file {path} is not valid JSON/YAML: {exc}") from exc
    return parse_rule_document(raw)


def seed_user_rules(data_dir: Path, default_path: Path | None = None) -> Path | None:
    """Copy the bundled rules into the data dir if the user has no copy yet."""
    default_path = default_path or config.DEFAULT_RULES_PATH
    user_path = data_dir / config.RULES_FILENAME
    if user_path.exists() or not default_path.exists():
        return None
    try:
        shutil.copyfile(default_path, user_path)
    except OSError as exc:
        logger.warning(f"Could not seed rule file into {data_dir}: {exc}")
        return None
    logger.info(f"Seeded default danger rules to {user_path}")
    return user_path


def resolve_rules_path(data_dir: Path | None = None) -> Path:
    """Explicit override, then the data-dir copy, then the bundled default."""
    if config.RULES_PATH.strip():
        return Path(config.RULES_PATH.strip()).expanduser()
    user_path = (data_dir or config.DATA_DIR) / config.RULES_FILENAME
    if user_path.exists():
        return user_path
    return config.DEFAULT_RULES_PATH


def load_rule_set(path: Path | None = None, data_dir: Path | None = None) -> RuleSet:
    """Load and compile the active rule set. Raises RuleConfigError."""
    rules_path = path or resolve_rules_path(data_dir)
    definitions = load_rule_definitions(rules_path)
    rule_set = compile_rules(definitions, source=str(rules_path))
    logger.info(
        "Loaded %d danger rules (%d pattern, %d tool) from %s",
        len(rule_set),
        len(rule_set.pattern_rules),
        len(rule_set.tool_rules),
        rules_path,
    )
    return rule_set
