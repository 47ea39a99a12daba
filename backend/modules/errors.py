from __future__ import annotations


RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})


def is_retryable_status(status: int | None) -> bool:
    # No status means the request never got an answer (network, timeout).
    if status is None:
        return True
    return status in RETRYABLE_HTTP_STATUSES or status >= 500


class SynthesisError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.status = status

    @classmethod
    def from_status(cls, status: int, message: str) -> "SynthesisError":
        return cls(message, retryable=is_retryable_status(status), status=status)


class UploadError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status)


class PlaybackError(RuntimeError):
    pass


class SegmentNotReadyError(PlaybackError):
    def __init__(self, segment_id: str) -> None:
        super().__init__(f"Segment {segment_id} has no generated audio yet.")
        self.segment_id = segment_id


class SegmentNotFoundError(KeyError):
    def __init__(self, segment_id: str) -> None:
        super().__init__(segment_id)
        self.segment_id = segment_id

    def __str__(self) -> str:
        return f"Unknown segment: {self.segment_id}"


class ArticleNotFoundError(KeyError):
    def __init__(self, article_id: str) -> None:
        super().__init__(article_id)
        self.article_id = article_id

    def __str__(self) -> str:
        return f"Unknown article: {self.article_id}"
