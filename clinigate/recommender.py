"""
Permission Recommender Client.

The recommender is an external HTTP service that suggests permission
changes for new staff, job transfers and rightsizing.  Its output is
untrusted: ``parse_recommendations()`` keeps only well-formed entries and
the workflow decides what, if anything, becomes a Pending suggestion.

Endpoints:

* ``POST /recommend/new-user``      -- body: the new principal's profile
* ``POST /recommend/job-transfer``  -- body: ``{old_profile, new_profile}``
* ``POST /recommend/rightsizing``   -- body: ``{lookback_days}``
* ``POST /recommend/anomaly``       -- body: ``{risk_threshold}``
* ``GET  /docs``                    -- health check
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from clinigate.errors import RecommenderError
from clinigate.models import ChangeType, PermissionSuggestion


logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.6


def parse_recommendations(
    payload: Mapping[str, Any],
    key: str = "recommendations",
    change_type: ChangeType = ChangeType.ADD,
) -> list[PermissionSuggestion]:
    """Turn one list in a recommender response into suggestions.

    Entries without a string ``permission`` label are dropped.  A missing
    or non-numeric ``confidence`` becomes 0.6; a numeric one is clamped to
    ``[0, 1]``.

    Args:
        payload: Decoded JSON response.
        key: Name of the list to read (``recommendations``,
            ``added_permissions``, ``removed_permissions``).
        change_type: Change type to stamp on every suggestion.

    Returns:
        The parsed suggestions; empty when ``key`` is absent or not a list.
    """
    entries = payload.get(key)
    if not isinstance(entries, list):
        return []

    suggestions = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        label = entry.get("permission")
        if not isinstance(label, str) or not label:
            continue
        confidence = entry.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = DEFAULT_CONFIDENCE
        suggestions.append(PermissionSuggestion(
            permission=label,
            confidence=min(max(float(confidence), 0.0), 1.0),
            change_type=change_type,
        ))
    return suggestions


class RecommenderClient:
    """Synchronous httpx client for the permission recommender.

    Args:
        base_url: Service root, e.g. ``http://recommender:8000``.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.Client``; when given,
            ``base_url`` and ``timeout`` are ignored.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def recommend_new_principal(self, profile: Mapping[str, str]) -> dict[str, Any]:
        return self._post("/recommend/new-user", dict(profile))

    def recommend_job_transfer(
        self,
        old_profile: Mapping[str, str],
        new_profile: Mapping[str, str],
    ) -> dict[str, Any]:
        return self._post(
            "/recommend/job-transfer",
            {"old_profile": dict(old_profile), "new_profile": dict(new_profile)},
        )

    def rightsizing(self, lookback_days: int = 90) -> dict[str, Any]:
        return self._post("/recommend/rightsizing", {"lookback_days": lookback_days})

    def detect_anomaly(self, risk_threshold: int = 3) -> dict[str, Any]:
        return self._post("/recommend/anomaly", {"risk_threshold": risk_threshold})

    def health_check(self) -> bool:
        """True when the service answers ``GET /docs`` without an error status."""
        try:
            response = self._client.get("/docs")
        except httpx.HTTPError as exc:
            logger.warning("recommender_health_check_failed error=%s", exc)
            return False
        return response.status_code < 400

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.warning("recommender_request_failed path=%s error=%s", path, exc)
            raise RecommenderError(f"Recommender request to {path} failed.") from exc

        if response.status_code >= 400:
            logger.warning(
                "recommender_http_error path=%s status=%s",
                path,
                response.status_code,
            )
            raise RecommenderError(
                f"Recommender returned HTTP {response.status_code} for {path}."
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise RecommenderError(f"Recommender returned invalid JSON for {path}.") from exc
        if not isinstance(data, dict):
            raise RecommenderError(f"Recommender returned a non-object body for {path}.")
        return data
