class PipelineError(Exception):
    """Base error for ingestion, stage and generation operations."""


class MalformedPayloadError(PipelineError):
    """Raised when required posting fields cannot be extracted from a source payload."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class SourceDisabledError(PipelineError):
    """Raised when a payload arrives for a source whose credentials are not configured."""

    def __init__(self, source: str) -> None:
        super().__init__(f"source is not enabled: {source}")
        self.source = source


class IllegalTransitionError(PipelineError):
    """Raised when a requested stage edge is not allowed."""

    def __init__(self, from_stage: str, to_stage: str) -> None:
        super().__init__(f"illegal stage transition: {from_stage} -> {to_stage}")
        self.from_stage = from_stage
        self.to_stage = to_stage


class ConcurrentModificationError(PipelineError):
    """Raised when a stage transition loses the compare-and-set race twice."""

    def __init__(self, posting_id: str, to_stage: str) -> None:
        super().__init__(f"posting {posting_id} was modified concurrently; transition to {to_stage} not applied")
        self.posting_id = posting_id
        self.to_stage = to_stage


class AlreadyStreamingError(PipelineError):
    """Raised when a run is started while another run for the posting is streaming."""

    def __init__(self, posting_id: str, run_id: str) -> None:
        super().__init__(f"posting {posting_id} already has a streaming run: {run_id}")
        self.posting_id = posting_id
        self.run_id = run_id


class GenerationFailedError(PipelineError):
    """Raised when the generation capability errors; keeps the partial transcript."""

    def __init__(self, run_id: str, transcript: str, message: str) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.transcript = transcript
