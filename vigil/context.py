"""
Per-invocation run context.

One ``RunContext`` is created per trigger invocation and passed from the
scheduler or worker pool down to executors. Anything memoized during a run
(seller id lookups, topic resolution) lives in ``cache`` and dies with the
run, so workers never share state through process memory.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from vigil.clock import utcnow
from vigil.config import Settings, get_settings


@dataclass
class RunContext:
    run_id: str
    trigger: str
    worker_id: str
    started_at: datetime
    settings: Settings
    cache: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        trigger: str,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ) -> "RunContext":
        run_id = f"{trigger}-{uuid4().hex[:12]}"
        return cls(
            run_id=run_id,
            trigger=trigger,
            worker_id=worker_id or run_id,
            started_at=utcnow(),
            settings=settings or get_settings(),
        )

    def log_fields(self) -> dict[str, str]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "worker_id": self.worker_id,
        }
