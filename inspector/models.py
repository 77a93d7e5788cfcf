"""Pydantic models matching the inspector UI's TypeScript types."""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Arbitrary JSON, as found in tool-call arguments.
JsonValue = Union[dict[str, "JsonValue"], list["JsonValue"], str, int, float, bool, None]

PARSE_ERROR_TYPE = "parse-error"


# ── Rule models ─────────────────────────────────────────────────────

class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


class ToolActionRule(BaseModel):
    toolName: str
    actions: Optional[list[str]] = None  # None matches any action


class RuleDefinition(BaseModel):
    category: str
    severity: Severity
    label: str = ""
    patterns: Optional[list[str]] = None
    toolRules: Optional[list[ToolActionRule]] = None


class RuleFile(BaseModel):
    rules: list[RuleDefinition]


class DangerHit(BaseModel):
    msgId: Optional[str] = None
    command: str
    category: str
    severity: Severity
    label: str = ""


# ── Session entry models ────────────────────────────────────────────

class ParseError(BaseModel):
    line: int
    raw: str
    error: str


class SessionMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = ""  # "user" | "assistant" | "toolResult"
    content: Optional[list[Any]] = None
    isError: Optional[bool] = None
    toolName: Optional[str] = None
    toolCallId: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


class SessionEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = ""
    id: Optional[str] = None
    timestamp: Optional[str] = None
    message: Optional[SessionMessage] = None
    lineNumber: Optional[int] = None
    parseError: Optional[ParseError] = None


class ParsedSession(BaseModel):
    entries: list[SessionEntry] = Field(default_factory=list)
    parseErrors: list[ParseError] = Field(default_factory=list)
    totalLines: int = 0


class ParsedSessionResponse(ParsedSession):
    filename: str
    sessionId: Optional[str] = None
    dangerHits: list[DangerHit] = Field(default_factory=list)


# ── Progress models ─────────────────────────────────────────────────

class ProgressEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    lastReadId: Optional[str] = None
    lastReadAt: Optional[str] = None
    totalMsgs: Optional[int] = None
    unreadCount: Optional[int] = None
    readAll: Optional[bool] = None
    customLabel: Optional[str] = None


# ── Corpus models ───────────────────────────────────────────────────

class SessionFileInfo(BaseModel):
    filename: str
    size: int = 0
    mtime: float = 0.0  # epoch milliseconds
    createdAt: Optional[str] = None
    sessionId: Optional[str] = None
    deleted: bool = False
    status: str = "orphan"  # "active" | "orphan" | "deleted"
    label: str = ""


class SessionStatus(BaseModel):
    status: str
    label: str = ""
