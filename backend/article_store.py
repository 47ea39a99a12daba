from __future__ import annotations

import os
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_title(text: str, limit: int = 40) -> str:
    first = next((ln.strip() for ln in (text or "").splitlines() if ln.strip()), "")
    if not first:
        return "Untitled"
    return first if len(first) <= limit else first[: limit - 1].rstrip() + "…"


@dataclass
class ArticleRecord:
    article_id: str
    title: str
    text: str
    created_at: datetime
    updated_at: datetime
    audio_urls: list[str] = field(default_factory=list)
    segment_word_timings: dict[str, list[dict[str, float]]] = field(default_factory=dict)


def _segment_url_pattern(segment_id: str) -> re.Pattern[str]:
    return re.compile(rf"/{re.escape(segment_id)}\.[A-Za-z0-9]+(?:$|[?#])")


def _record_from_doc(article_id: str, data: dict[str, Any]) -> ArticleRecord:
    created_at = data.get("created_at") or utc_now()
    return ArticleRecord(
        article_id=article_id,
        title=data.get("title", ""),
        text=data.get("text", ""),
        created_at=created_at,
        updated_at=data.get("updated_at") or created_at,
        audio_urls=list(data.get("audio_urls") or []),
        segment_word_timings=dict(data.get("segment_word_timings") or {}),
    )

class InMemoryArticleStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._articles: dict[str, ArticleRecord] = {}

    def create(self, article_id: str, text: str, title: str | None = None) -> ArticleRecord:
        now = utc_now()
        record = ArticleRecord(
            article_id=article_id,
            title=(title or "").strip() or default_title(text),
            text=text,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._articles[article_id] = record
        return record

    def get(self, article_id: str) -> ArticleRecord | None:
        with self._lock:
            return self._articles.get(article_id)

    def update(
        self,
        article_id: str,
        *,
        title: str | None = None,
        text: str | None = None,
    ) -> ArticleRecord:
        with self._lock:
            record = self._articles[article_id]
            if title is not None:
                record.title = title.strip() or record.title
            if text is not None and text != record.text:
                record.text = text
                # Stored audio belongs to the old paragraphs.
                record.audio_urls = []
                record.segment_word_timings = {}
            record.updated_at = utc_now()
            return record

    def record_segment_audio(
        self,
        article_id: str,
        segment_id: str,
        url: str,
        word_timings: list[dict[str, float]] | None = None,
    ) -> ArticleRecord:
        pattern = _segment_url_pattern(segment_id)
        with self._lock:
            record = self._articles[article_id]
            urls = [u for u in record.audio_urls if not pattern.search(u)]
            urls.append(url)
            record.audio_urls = urls
            if word_timings:
                record.segment_word_timings[segment_id] = list(word_timings)
            record.updated_at = utc_now()
            return record

    def delete(self, article_id: str) -> bool:
        with self._lock:
            return self._articles.pop(article_id, None) is not None

    def set(self, record: ArticleRecord) -> None:
        with self._lock:
            self._articles[record.article_id] = record

    def list_recent(self, limit: int = 100) -> list[ArticleRecord]:
        with self._lock:
            # Ties keep the newest insert first.
            records = list(reversed(self._articles.values()))
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records[:limit]


def _env_true(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name, str(default))).strip().lower()
    return raw in {"1", "true", "yes", "on"}


class Storage:
    """
    Article persistence.
    - Always writes in-memory for local runtime reads.
    - Optionally mirrors to Firestore when configured.
    """

    def __init__(self, *, use_firestore: bool | None = None) -> None:
        self.articles = InMemoryArticleStore()
        self._firestore_client: Any | None = None
        self._firestore_enabled = False
        if use_firestore is None:
            use_firestore = _env_true("USE_FIRESTORE", default=False)
        if use_firestore:
            self._init_firestore()

    def _init_firestore(self) -> None:
        try:
            from google.cloud import firestore  # type: ignore

            project_id = os.environ.get("FIRESTORE_PROJECT_ID")
            self._firestore_client = firestore.Client(project=project_id or None)
            self._firestore_enabled = True
            print("[storage] Firestore enabled.")
        except Exception as exc:
            self._firestore_enabled = False
            self._firestore_client = None
            print(f"[storage] Firestore disabled, fallback to in-memory: {exc}")

    @property
    def backend(self) -> str:
        return "firestore" if self._firestore_enabled else "in-memory"

    def _mirror(self, record: ArticleRecord) -> None:
        if not self._firestore_enabled:
            return
        assert self._firestore_client is not None
        self._firestore_client.collection("articles").document(record.article_id).set(
            asdict(record), merge=True
        )

    def create_article(
        self,
        text: str,
        title: str | None = None,
        article_id: str | None = None,
    ) -> ArticleRecord:
        record = self.articles.create(article_id or str(uuid4()), text, title)
        self._mirror(record)
        return record

    def update_article(
        self,
        article_id: str,
        *,
        title: str | None = None,
        text: str | None = None,
    ) -> ArticleRecord:
        if self.get_article(article_id) is None:
            raise KeyError(article_id)
        record = self.articles.update(article_id, title=title, text=text)
        self._mirror(record)
        return record

    def get_article(self, article_id: str) -> ArticleRecord | None:
        record = self.articles.get(article_id)
        if record is not None:
            return record
        if not self._firestore_enabled:
            return None
        assert self._firestore_client is not None
        snap = self._firestore_client.collection("articles").document(article_id).get()
        if not snap.exists:
            return None
        record = _record_from_doc(article_id, snap.to_dict() or {})
        self.articles.set(record)
        return record

    def record_segment_audio(
        self,
        article_id: str,
        segment_id: str,
        url: str,
        word_timings: list[dict[str, float]] | None = None,
    ) -> ArticleRecord:
        if self.get_article(article_id) is None:
            raise KeyError(article_id)
        record = self.articles.record_segment_audio(article_id, segment_id, url, word_timings)
        self._mirror(record)
        return record

    def has_article(self, article_id: str) -> bool:
        """In-process check only; never reaches Firestore."""
        return self.articles.get(article_id) is not None

    def delete_article(self, article_id: str) -> bool:
        removed = self.articles.delete(article_id)
        if self._firestore_enabled:
            assert self._firestore_client is not None
            self._firestore_client.collection("articles").document(article_id).delete()
        return removed

    def list_recent_articles(self, limit: int = 100) -> list[ArticleRecord]:
        if self._firestore_enabled:
            assert self._firestore_client is not None
            docs = (
                self._firestore_client.collection("articles")
                .order_by("updated_at", direction="DESCENDING")
                .limit(limit)
                .stream()
            )
            records: list[ArticleRecord] = []
            for doc in docs:
                data = doc.to_dict() or {}
                record = _record_from_doc(data.get("article_id") or doc.id, data)
                records.append(record)
                self.articles.set(record)
            if records:
                return records
        return self.articles.list_recent(limit)
