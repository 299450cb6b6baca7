from __future__ import annotations

import logging
from typing import Any

from jobops.schemas.imports import ManualDraft
from jobops.services.llm import ChatMessage, GenerationCapability
from jobops.services.normalizer import IngestResult, PostingNormalizer

logger = logging.getLogger(__name__)

INFER_INSTRUCTIONS = (
    "Extract the job posting below into a JSON object with the keys "
    '"title", "employer", "location", "jobUrl" and "jobDescription". '
    "Use null for anything the text does not state. Do not invent details."
)
REQUIRED_DRAFT_FIELDS = ("title", "company")


def _text(raw: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class ManualImportService:
    """Paste, infer, review, confirm.

    Drafts are returned to the caller and never stored; only ``confirm`` with
    ``confirmed=True`` creates a posting.
    """

    def __init__(self, capability: GenerationCapability, normalizer: PostingNormalizer) -> None:
        self.capability = capability
        self.normalizer = normalizer

    async def infer_draft(self, text: str, *, model: str | None = None) -> ManualDraft:
        messages: list[ChatMessage] = [
            {"role": "system", "content": INFER_INSTRUCTIONS},
            {"role": "user", "content": text},
        ]
        raw = await self.capability.complete_json(messages, model=model)
        draft = ManualDraft(
            title=_text(raw, "title"),
            company=_text(raw, "employer", "company"),
            location=_text(raw, "location"),
            url=_text(raw, "jobUrl", "url"),
            description=_text(raw, "jobDescription", "description") or text.strip(),
        )
        logger.info("inferred manual draft missing=%s", ",".join(missing_draft_fields(draft)) or "-")
        return draft

    async def confirm(self, draft: ManualDraft, *, confirmed: bool) -> IngestResult | None:
        if not confirmed:
            logger.info("manual draft discarded without confirmation")
            return None
        return await self.normalizer.normalize("manual", draft.model_dump(exclude_none=True))


def missing_draft_fields(draft: ManualDraft) -> list[str]:
    return [name for name in REQUIRED_DRAFT_FIELDS if not getattr(draft, name)]
