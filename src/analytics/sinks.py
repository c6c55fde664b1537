"""
Result Sinks.

The persistence collaborator: after each user's pass the engine hands the
result to a sink. Sink failures are raised as PersistenceError, logged by the
engine, and never touch the in-memory read model.

    NullResultSink      log only
    DatabaseResultSink  one row per pass via SQLAlchemy
    DocumentStoreSink   PUT to a REST document store via httpx
"""

from __future__ import annotations

from typing import Protocol
from uuid import uuid4

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from src.analytics.errors import PersistenceError
from src.analytics.models import UserProcessingResult
from src.db.database import get_session_factory, session_scope
from src.db.models import ProcessedResultRecord


class ResultSink(Protocol):
    """Anything that can durably store one user's processing result."""

    def store(self, user_id: str, result: UserProcessingResult) -> None: ...


class NullResultSink:
    """Keeps nothing; logs what would have been stored."""

    def store(self, user_id: str, result: UserProcessingResult) -> None:
        logger.debug(
            "Storing processed results for user {} (patterns={}, insights={}, anomalies={})",
            user_id,
            len(result.patterns),
            len(result.insights),
            len(result.anomalies),
        )


class DatabaseResultSink:
    """Writes a ProcessedResultRecord per pass."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._session_factory = session_factory

    def _factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def store(self, user_id: str, result: UserProcessingResult) -> None:
        record = ProcessedResultRecord(
            id=uuid4().hex,
            user_id=user_id,
            processed_at=result.processed_at,
            event_count=result.event_count,
            pattern_count=len(result.patterns),
            insight_count=len(result.insights),
            anomaly_count=len(result.anomalies),
            payload=result.to_dict(),
        )
        try:
            with session_scope(self._factory()) as session:
                session.add(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Database write failed for user {user_id}: {exc}") from exc


class DocumentStoreSink:
    """
    Stores results in a REST document store.

    Each pass becomes one document at
    ``{base_url}/users/{user_id}/analytics/{result_id}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = headers

    def store(self, user_id: str, result: UserProcessingResult) -> None:
        url = f"{self.base_url}/users/{user_id}/analytics/{uuid4().hex}"
        try:
            response = self._client.put(url, json=result.to_dict(), headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PersistenceError(f"Document store write failed for user {user_id}: {exc}") from exc

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()


def build_result_sink(settings: Settings) -> ResultSink:
    """Create the sink selected by ``analytics_result_sink``."""
    if settings.analytics_result_sink == "database":
        return DatabaseResultSink()
    if settings.analytics_result_sink == "http":
        if not settings.has_document_store_configured():
            logger.warning(
                "Document store API key not set - writes to {} are unauthenticated",
                settings.document_store_url,
            )
        return DocumentStoreSink(
            base_url=settings.document_store_url,
            api_key=settings.document_store_api_key,
            timeout=settings.document_store_timeout_seconds,
        )
    return NullResultSink()
