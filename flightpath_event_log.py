"""
Append-only pipeline event log.

One JSON object per line (NDJSON), written in emission order:

    {"ts": "...", "type": "requirement_started", "data": {...}, "pipelineId": "..."}

The log lives beside the feature artifacts so a pipeline run can be
replayed or inspected after the process exits.

Usage:
    log = EventLog(paths.event_log_path)
    log.append(event, pipeline_id)
    log.backfill(pipeline_events, pipeline_id)   # no-op if log has content
    events = log.read_events()
"""

import json
import logging
from pathlib import Path
from typing import List, Iterable

from flightpath_models import PipelineEvent

logger = logging.getLogger(__name__)


class EventLog:

    def __init__(self, path: Path):
        self.path = Path(path)

    def has_content(self) -> bool:
        return self.path.exists() and self.path.stat().st_size > 0

    def append(self, event: PipelineEvent, pipeline_id: str):
        record = {**event.to_dict(), "pipelineId": pipeline_id}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def backfill(self, events: Iterable[PipelineEvent], pipeline_id: str) -> int:
        """Write events into an empty log. Returns how many were written."""
        if self.has_content():
            logger.debug(f"Event log already populated, skipping backfill: {self.path}")
            return 0
        count = 0
        for event in events:
            self.append(event, pipeline_id)
            count += 1
        if count:
            logger.info(f"📜 Backfilled {count} events into {self.path}")
        return count

    def read_events(self) -> List[PipelineEvent]:
        if not self.path.exists():
            return []
        events = []
        for line_no, line in enumerate(self.path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                events.append(PipelineEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError) as e:
                logger.warning(f"Skipping malformed event log line {line_no}: {e}")
        return events
