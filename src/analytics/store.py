"""
Results Store.

In-memory read model behind the query API. Only the pipeline writes to it.
Items are deep-copied on write and on read, so stored state never aliases
the pipeline's result objects or a caller's query results.
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone

from src.analytics.events import as_utc
from src.analytics.models import Anomaly, Insight, Pattern
from src.analytics.predictions import PredictionRegistry


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResultsStore:
    """
    Per-user insights, patterns and anomalies plus a view onto predictions.

    - Insights accumulate and are filtered (never deleted) once expired.
    - Patterns and anomalies hold the user's most recent pass only.
    """

    def __init__(
        self,
        registry: PredictionRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._lock = threading.Lock()
        self._clock = clock
        self.registry = registry or PredictionRegistry()
        self._insights: dict[str, list[Insight]] = defaultdict(list)
        self._patterns: dict[str, list[Pattern]] = {}
        self._anomalies: dict[str, list[Anomaly]] = {}

    # =========================================================================
    # WRITES (pipeline only)
    # =========================================================================

    def add_insights(self, user_id: str, insights: list[Insight]) -> None:
        """Append insights in the order they were generated."""
        if not insights:
            return
        with self._lock:
            self._insights[user_id].extend(copy.deepcopy(insights))

    def replace_patterns(self, user_id: str, patterns: list[Pattern]) -> None:
        """Patterns are recomputed each pass; the latest pass wins."""
        with self._lock:
            self._patterns[user_id] = copy.deepcopy(list(patterns))

    def replace_anomalies(self, user_id: str, anomalies: list[Anomaly]) -> None:
        """Anomalies are per pass; the latest pass wins."""
        with self._lock:
            self._anomalies[user_id] = copy.deepcopy(list(anomalies))

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_user_insights(self, user_id: str) -> list[Insight]:
        """Unexpired insights, highest impact first, insertion order within an impact."""
        now = as_utc(self._clock())
        with self._lock:
            live = [copy.deepcopy(i) for i in self._insights.get(user_id, []) if not i.is_expired(now)]
        # sorted() is stable, so equal impacts keep insertion order
        return sorted(live, key=lambda i: i.impact.weight, reverse=True)

    def get_user_patterns(self, user_id: str) -> list[Pattern]:
        """Latest patterns, highest confidence first."""
        with self._lock:
            patterns = copy.deepcopy(self._patterns.get(user_id, []))
        return sorted(patterns, key=lambda p: p.confidence, reverse=True)

    def get_user_predictions(self, user_id: str) -> dict[str, float]:
        """Every model entry keyed by this user."""
        return self.registry.predictions_for(user_id)

    def get_user_anomalies(self, user_id: str) -> list[Anomaly]:
        """Anomalies from the user's most recent pass."""
        with self._lock:
            return copy.deepcopy(self._anomalies.get(user_id, []))

    def known_users(self) -> list[str]:
        """Users with any stored result."""
        with self._lock:
            users = set(self._insights) | set(self._patterns) | set(self._anomalies)
        return sorted(users)
