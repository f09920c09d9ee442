"""Chroma-based persistence for fleet history."""

from __future__ import annotations

import json
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import CommitEventRecord, SessionStatusRecord

COMMIT_EVENT = "new_commit"
SESSION_STATUS_EVENT = "session_status"

_AGENT_AUTHOR = re.compile(r"agent-(\d+)")


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by Forge."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by Forge."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    # Chroma requires an explicit $and once more than one field is filtered
    if not filters or len(filters) == 1:
        return filters or None
    return {"$and": [{key: value} for key, value in filters.items()]}


class ChromaStore:
    """Manage persistence of fleet events via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "forge_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install forge-mcp with persistence extras"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[session_id] = self._counters[session_id] + 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # Chroma metadata values must be scalars
            record_metadata.update({key: value for key, value in metadata.items() if value is not None})

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"session_id": session_id}, limit=limit)
        return self._convert_result(result)

    def record_commit(
        self,
        *,
        session_id: str,
        hash: str,
        author: str,
        message: str,
    ) -> CommitEventRecord:
        """Persist a new-commit notification observed for ``session_id``."""

        match = _AGENT_AUTHOR.search(author)
        worker_id = match.group(1) if match else None
        event = self.record_event(
            session_id=session_id,
            event_type=COMMIT_EVENT,
            body={"hash": hash, "author": author, "message": message},
            metadata={"hash": hash, "author": author, "worker_id": worker_id},
        )
        return CommitEventRecord(
            session_id=session_id,
            hash=hash,
            author=author,
            message=message,
            worker_id=worker_id,
            observed_at=event.timestamp,
        )

    def list_commits(self, session_id: str | None = None) -> list[CommitEventRecord]:
        filters: dict[str, Any] = {"event_type": COMMIT_EVENT}
        if session_id:
            filters["session_id"] = session_id
        records: list[CommitEventRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            records.append(
                CommitEventRecord(
                    session_id=event.session_id,
                    hash=doc["hash"],
                    author=doc.get("author", ""),
                    message=doc.get("message", ""),
                    worker_id=event.metadata.get("worker_id"),
                    observed_at=event.timestamp,
                )
            )
        return records

    def record_session_status(
        self,
        *,
        session_id: str,
        name: str,
        status: str,
        previous_status: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionStatusRecord:
        payload = {
            "session_id": session_id,
            "name": name,
            "status": status,
            "previous_status": previous_status,
        }
        if metadata:
            payload.update(metadata)

        event = self.record_event(
            session_id=session_id,
            event_type=SESSION_STATUS_EVENT,
            body=payload,
            metadata={"name": name, "status": status, "previous_status": previous_status},
        )

        return SessionStatusRecord(
            session_id=session_id,
            name=name,
            status=status,
            previous_status=previous_status,
            recorded_at=event.timestamp,
            metadata=metadata or {},
        )

    def list_session_history(self, session_id: str | None = None) -> list[SessionStatusRecord]:
        filters: dict[str, Any] = {"event_type": SESSION_STATUS_EVENT}
        if session_id:
            filters["session_id"] = session_id
        records: list[SessionStatusRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            records.append(
                SessionStatusRecord(
                    session_id=doc["session_id"],
                    name=doc.get("name", ""),
                    status=doc.get("status", "unknown"),
                    previous_status=doc.get("previous_status"),
                    recorded_at=event.timestamp,
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"session_id", "name", "status", "previous_status"}
                    },
                )
            )
        return records

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            filtered: list[ChromaEvent] = []
            for event in events:
                haystacks = [event.document.lower()]
                haystacks.extend(str(value).lower() for value in event.metadata.values())
                if any(needle in hay for hay in haystacks):
                    filtered.append(event)
            events = filtered
        return events[:limit] if limit else events


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
