"""Append-only pipeline event feed helper.

Callers own the transaction: ``log_event`` only adds the row to the session.
"""

import logging

from floorflow.models import db
from floorflow.models.pipeline import PipelineEvent

logger = logging.getLogger(__name__)


def log_event(pipeline, event_type: str, message: str, *, step_number: int | None = None,
              progress_int: int = 0) -> PipelineEvent:
    event = PipelineEvent(
        pipeline_id=pipeline.id,
        owner_id=pipeline.owner_id,
        step_number=pipeline.current_step if step_number is None else step_number,
        event_type=event_type,
        message=message,
        progress_int=progress_int,
    )
    db.session.add(event)
    logger.info("pipeline=%s %s: %s", pipeline.id, event_type, message,
                extra={"pipeline_id": pipeline.id, "event_type": event_type})
    return event


def list_events(pipeline_id: int, limit: int = 100) -> list[dict]:
    rows = (
        db.session.query(PipelineEvent)
        .filter(PipelineEvent.pipeline_id == pipeline_id)
        .order_by(PipelineEvent.id.desc())
        .limit(limit)
        .all()
    )
    return [r.to_dict() for r in rows]
