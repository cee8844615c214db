"""Pydantic models for transcript entries, watcher events and ingested records."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ── Transcript entries ──────────────────────────────────────────────


class _LogEntryBase(BaseModel):
    # Unknown fields are kept on the model but never interpreted.
    model_config = ConfigDict(extra="allow", frozen=True)

    uuid: str
    parentUuid: Optional[str] = None
    timestamp: str
    sessionId: Optional[str] = None
    cwd: str = ""
    version: str = ""
    isSidechain: bool = False
    userType: str = "external"


class UserMessagePayload(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    role: Literal["user"]
    content: Union[str, list[Any]]


class AssistantMessagePayload(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    role: Literal["assistant"]
    content: list[Any]
    id: Optional[str] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    usage: Optional[dict[str, Any]] = None


class UserLogEntry(_LogEntryBase):
    type: Literal["user"]
    message: UserMessagePayload
    isMeta: Optional[bool] = None
    toolUseResult: Any = None


class AssistantLogEntry(_LogEntryBase):
    type: Literal["assistant"]
    message: AssistantMessagePayload
    requestId: Optional[str] = None
    isApiErrorMessage: Optional[bool] = None


class SystemLogEntry(_LogEntryBase):
    type: Literal["system"]
    content: str
    level: Optional[Literal["info", "warning", "error", "debug"]] = None
    isMeta: Optional[bool] = None


class ResultLogEntry(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    type: Literal["result"]
    uuid: Optional[str] = None
    timestamp: Optional[str] = None
    sessionId: Optional[str] = None
    subtype: str = ""
    is_error: bool = False
    result: Optional[str] = None
    duration_ms: Optional[int] = None
    num_turns: Optional[int] = None
    total_cost_usd: Optional[float] = None


class SummaryLogEntry(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    type: Literal["summary"]
    summary: str
    leafUuid: str


ClaudeLogEntry = Annotated[
    Union[UserLogEntry, AssistantLogEntry, SystemLogEntry, ResultLogEntry, SummaryLogEntry],
    Field(discriminator="type"),
]

claude_log_entry_adapter: TypeAdapter[Any] = TypeAdapter(ClaudeLogEntry)


class ParsedLines(BaseModel):
    """Outcome of parsing raw JSONL content.

    ``lineIndexes[i]`` is the position (among non-blank lines) of ``entries[i]``.
    ``consumedLines`` counts complete non-blank lines, valid or not; an
    unterminated trailing fragment that does not parse is left unconsumed.
    ``headDigest`` fingerprints the first consumed line so a file replaced
    under the same path can be told apart from one that only grew.
    """

    entries: list[ClaudeLogEntry] = Field(default_factory=list)
    lineIndexes: list[int] = Field(default_factory=list)
    rawLines: list[str] = Field(default_factory=list)
    consumedLines: int = 0
    skippedLines: int = 0
    pendingTail: bool = False
    headDigest: str = ""


class ParsedLogFile(BaseModel):
    filePath: str
    projectName: str
    sessionId: str
    entries: list[ClaudeLogEntry] = Field(default_factory=list)
    lineIndexes: list[int] = Field(default_factory=list)
    rawLines: list[str] = Field(default_factory=list)
    consumedLines: int = 0
    skippedLines: int = 0
    headDigest: str = ""


# ── Watcher ─────────────────────────────────────────────────────────

ChangeType = Literal["add", "change", "unlink"]


class FileChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ChangeType
    filePath: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: Literal["watcher", "reconciler", "api"] = "watcher"


class WatcherConfig(BaseModel):
    targetDirectory: str = Field(..., min_length=1)
    pattern: str = "**/*.jsonl"
    ignoreInitial: bool = False
    persistent: bool = True
    stabilityThreshold: int = Field(1000, ge=0)
    pollInterval: int = Field(100, gt=0)
    forcePolling: bool = False


# ── Tracking ────────────────────────────────────────────────────────


class FileStat(BaseModel):
    size: int
    mtime: float


class TrackingRecord(BaseModel):
    fileKey: str
    filePath: str
    cursor: int = 0
    fileSize: int = 0
    fileMtime: float = 0.0
    projectName: str = ""
    sessionId: str = ""
    firstSeenAt: str
    lastUpdatedAt: str
    tombstoned: bool = False
    headDigest: str = ""


# ── Domain records ──────────────────────────────────────────────────


class Project(BaseModel):
    id: str
    name: str
    path: str
    createdAt: str
    updatedAt: str


class Session(BaseModel):
    id: str
    projectId: str
    name: Optional[str] = None
    cwd: str = ""
    status: str = "active"
    sourceFile: str = ""
    createdAt: str
    updatedAt: str
    lastMessageAt: Optional[str] = None


class Message(BaseModel):
    id: str
    sessionId: str
    sourceKey: str
    lineIndex: int = 0
    uuid: str = ""
    parentUuid: Optional[str] = None
    role: Literal["user", "assistant"]
    content: Optional[str] = None
    cwd: str = ""
    timestamp: str
    rawPayload: str


# ── Processing outcomes ─────────────────────────────────────────────

FileOutcomeStatus = Literal["processed", "up_to_date", "conflict", "failed", "removed", "missing"]


class FileProcessResult(BaseModel):
    filePath: str
    status: FileOutcomeStatus
    entriesApplied: int = 0
    messagesInserted: int = 0
    skippedLines: int = 0
    cursor: int = 0
    error: str = ""


class ReconcileResult(BaseModel):
    scannedFiles: int = 0
    changeEvents: int = 0
    unlinkEvents: int = 0
    startedAt: str = ""
    durationMs: int = 0
