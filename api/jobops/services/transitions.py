from __future__ import annotations

import logging

from opentelemetry import trace

from jobops.services.errors import ConcurrentModificationError, IllegalTransitionError
from jobops.services.records import PostingRecord, Stage
from jobops.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FORWARD_TRANSITIONS: dict[str, set[str]] = {
    "discovered": {"ready"},
    "ready": {"applied"},
    "applied": set(),
}
# Demotions are only ever applied on explicit caller request.
DEMOTION_TRANSITIONS: dict[str, set[str]] = {
    "discovered": set(),
    "ready": {"discovered"},
    "applied": {"ready"},
}


def validate_stage_transition(*, from_stage: str, to_stage: str, manual: bool = False) -> None:
    if to_stage in FORWARD_TRANSITIONS.get(from_stage, set()):
        return
    if manual and to_stage in DEMOTION_TRANSITIONS.get(from_stage, set()):
        return
    raise IllegalTransitionError(from_stage, to_stage)


class StageTransitionEngine:
    def __init__(self, store: PipelineStore) -> None:
        self.store = store

    async def transition(self, posting_id: str, to_stage: Stage, *, manual: bool = False) -> PostingRecord:
        """Move a posting to ``to_stage`` using compare-and-set.

        A lost race reloads the posting and retries once when the edge from the
        new stage is still legal; a second loss raises ConcurrentModificationError.
        """
        with tracer.start_as_current_span("stage.transition") as span:
            span.set_attribute("posting.id", posting_id)
            span.set_attribute("stage.to", to_stage)

            posting = await self.store.get(posting_id)
            for attempt in (1, 2):
                from_stage = posting.stage
                validate_stage_transition(from_stage=from_stage, to_stage=to_stage, manual=manual)
                if await self.store.compare_and_set_stage(posting_id, from_stage, to_stage):
                    logger.info(
                        "stage transition applied posting_id=%s from=%s to=%s manual=%s attempt=%s",
                        posting_id,
                        from_stage,
                        to_stage,
                        manual,
                        attempt,
                    )
                    span.set_attribute("stage.from", from_stage)
                    return await self.store.get(posting_id)

                logger.info(
                    "stage transition lost race posting_id=%s expected=%s to=%s attempt=%s",
                    posting_id,
                    from_stage,
                    to_stage,
                    attempt,
                )
                if attempt == 1:
                    posting = await self.store.get(posting_id)

            raise ConcurrentModificationError(posting_id, to_stage)
