"""Data models for jobs, offline actions and resilience configuration."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})


class RemoteStatus(str, Enum):
    """Task states reported by the external AI service."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Artifact(BaseModel):
    """One output file of a finished job."""
    file_url: str
    file_type: Optional[str] = None
    node_id: Optional[str] = None


class NodeInfo(BaseModel):
    node_id: str
    field_name: str
    field_value: Any = None


class JobSpec(BaseModel):
    """What the caller asks the external service to run."""
    webapp_id: str
    node_info_list: List[NodeInfo] = Field(default_factory=list)
    region: str = "hongkong"
    client_ref: str = Field(default_factory=lambda: uuid.uuid4().hex)


class Job(BaseModel):
    """A submitted job, as tracked by the orchestrator."""
    id: str
    status: JobStatus = JobStatus.PENDING
    submitted_at: datetime = Field(default_factory=utcnow)
    last_polled_at: Optional[datetime] = None
    attempts: int = 0
    results: List[Artifact] = Field(default_factory=list)
    region: str = "hongkong"
    client_ref: Optional[str] = None
    error: Optional[str] = None
    fetch_error: Optional[str] = None


class BackoffStrategy(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    JITTER = "jitter"


class RetryConfig(BaseModel):
    """Retry behaviour for one operation type. Delays are in seconds."""
    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    retryable_patterns: List[str] = Field(
        default_factory=lambda: ["NetworkError", "TimeoutError"]
    )
    retryable_statuses: List[int] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504]
    )
    timeout: Optional[float] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryConfig":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        return self


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class FallbackKind(str, Enum):
    """What a breaker does with calls it does not admit."""
    REJECT = "reject"
    CACHE = "cache"
    QUEUE = "queue"
    CUSTOM = "custom"


class CircuitBreakerConfig(BaseModel):
    """Breaker thresholds. Durations are in seconds."""
    model_config = ConfigDict(frozen=True)

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    monitoring_window: float = 60.0
    half_open_max_calls: int = 1
    fallback_strategy: FallbackKind = FallbackKind.REJECT


class CircuitBreakerState(BaseModel):
    """Point-in-time view of a breaker."""
    name: str
    state: CircuitState
    failure_count_in_window: int = 0
    success_count: int = 0
    total_calls: int = 0
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None
    half_open_probes_used: int = 0


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key, most urgent first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class OfflineAction(BaseModel):
    """A deferred action waiting for connectivity."""
    id: str = Field(default_factory=lambda: f"action_{uuid.uuid4().hex[:12]}")
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    created_at: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: datetime = Field(default_factory=utcnow)
    depends_on: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class SyncError(BaseModel):
    action_id: str
    action_type: str
    error: str
    dropped: bool = False


class SyncResult(BaseModel):
    """Outcome of one pass over the offline queue."""
    success: bool = True
    processed: int = 0
    failed: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    expired: List[str] = Field(default_factory=list)


class QueuedResult(BaseModel):
    """Returned in place of a response when a call was queued for later."""
    action_id: str
    message: str = "Request queued - will retry when service is available"
    retry_at: Optional[datetime] = None


class SubmitOutcome(BaseModel):
    """What a caller learns from JobOrchestrator.submit."""
    job: Optional[Job] = None
    queued: bool = False
    action_id: Optional[str] = None
    message: str = ""


class Config(BaseModel):
    """Runtime tuning persisted in config.json."""
    max_retries: int = 3
    sync_backoff_base: float = 30.0
    sync_backoff_max: float = 300.0  # 5 minutes
    sync_interval: float = 30.0
    max_queue_size: int = 1000
    poll_initial_interval: float = 2.0
    poll_backoff_multiplier: float = 1.5
    poll_max_interval: float = 10.0
    poll_timeout: float = 300.0
