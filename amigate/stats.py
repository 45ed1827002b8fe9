"""Plain records describing the gateway for a metrics or logging collaborator."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from amigate.models import SessionState


@dataclass
class SessionStatus:
    server: str
    state: SessionState
    last_error: Optional[str] = None
    connects: int = 0
    events_received: int = 0
    backoff_delay: float = 0.0


@dataclass
class SinkStats:
    """Counters of one destination worker."""

    destination: str
    kind: str
    project: Optional[str] = None
    queue_depth: int = 0
    enqueued: int = 0
    delivered: int = 0
    dropped: int = 0
    failed: int = 0
    retries: int = 0
    last_error: Optional[str] = None


@dataclass
class RuleStats:
    version: int = 0
    clauses: int = 0
    evaluated: int = 0
    matched: int = 0
    unmatched: int = 0
    errors: int = 0


@dataclass
class GatewayStats:
    sessions: Dict[str, SessionStatus] = field(default_factory=dict)
    destinations: Dict[str, SinkStats] = field(default_factory=dict)
    rules: RuleStats = field(default_factory=RuleStats)
    backlog: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for status in data['sessions'].values():
            status['state'] = status['state'].value
        return data
