"""
Work-tracking system clients.

BacklogClient talks to the tracker's REST API through a requests session;
InMemoryBacklog offers the same interface in-process for dry runs, file-based
backlogs and tests. Every write is keyed by item id so repeating it after a
retry is harmless.

Features:
    - Client-side rate budget (RateLimiter)
    - Bounded retry with exponential backoff (call_with_retry)
    - Cursor pagination for list endpoints
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import urljoin

import requests

from artplan.lib.config import TrackerConfig
from artplan.lib.errors import ExternalServiceError, ValidationError
from artplan.tracker.ratelimit import RateLimiter
from artplan.tracker.retry import RetryPolicy, TransientError, call_with_retry

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
STATUS_CONFLICT = 409


class BacklogSource(Protocol):
    """What the planning coordinator needs from a tracker."""

    def get_program_increment(self, pi_id: str) -> dict: ...

    def get_team(self, team_id: str) -> dict: ...

    def list_items(self, pi_id: str, team_id: str) -> list[dict]: ...

    def list_relationships(self, item_ids: list[str]) -> list[dict]: ...

    def create_item(self, payload: dict) -> dict: ...

    def assign_iteration(self, item_id: str, pi_id: str, iteration: int,
                         start_date: str, end_date: str) -> None: ...

    def create_relationship(self, source_id: str, target_id: str, kind: str) -> dict: ...


class BacklogClient:
    """HTTP client for the work-tracking API."""

    def __init__(self, config: TrackerConfig, session: Optional[requests.Session] = None,
                 limiter: Optional[RateLimiter] = None, policy: Optional[RetryPolicy] = None,
                 sleep=None):
        if not config.base_url:
            raise ValidationError("config", "Tracker base URL is not configured", "BASE_URL")
        self.config = config
        self.base_url = config.base_url.rstrip("/") + "/"
        self.limiter = limiter or RateLimiter(config.rate_limit_requests, config.rate_limit_window)
        self.policy = policy or RetryPolicy.from_config(config)
        self._sleep = sleep
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "artplan",
        })
        if self.config.api_token:
            session.headers["Authorization"] = f"Bearer {self.config.api_token}"
        return session

    # =========================================================================
    # READS
    # =========================================================================

    def get_program_increment(self, pi_id: str) -> dict:
        return self._request("GET", f"program-increments/{pi_id}")

    def get_team(self, team_id: str) -> dict:
        return self._request("GET", f"teams/{team_id}")

    def list_items(self, pi_id: str, team_id: str) -> list[dict]:
        return self._paginate(f"program-increments/{pi_id}/items", {"team": team_id})

    def list_relationships(self, item_ids: list[str]) -> list[dict]:
        if not item_ids:
            return []
        return self._paginate("relationships", {"item_ids": ",".join(item_ids)})

    # =========================================================================
    # WRITES (idempotent by id)
    # =========================================================================

    def create_item(self, payload: dict) -> dict:
        return self._request("PUT", f"items/{payload['id']}", data=payload)

    def assign_iteration(self, item_id: str, pi_id: str, iteration: int,
                         start_date: str, end_date: str) -> None:
        self._request("PUT", f"items/{item_id}/iteration", data={
            "pi_id": pi_id,
            "iteration": iteration,
            "start_date": start_date,
            "end_date": end_date,
        })

    def create_relationship(self, source_id: str, target_id: str, kind: str) -> dict:
        return self._request("POST", "relationships", data={
            "source_id": source_id,
            "target_id": target_id,
            "kind": kind,
        })

    # =========================================================================
    # HTTP
    # =========================================================================

    def _paginate(self, endpoint: str, params: dict) -> list[dict]:
        results: list[dict] = []
        cursor = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            page = self._request("GET", endpoint, params=page_params)
            results.extend(page.get("items", []))
            cursor = page.get("next_cursor")
            if not cursor:
                return results

    def _request(self, method: str, endpoint: str, data: dict = None, params: dict = None) -> Any:
        operation = f"{method} {endpoint}"
        kwargs = {"sleep": self._sleep} if self._sleep else {}
        return call_with_retry(operation, lambda: self._send(method, endpoint, data, params), self.policy, **kwargs)

    def _send(self, method: str, endpoint: str, data: Optional[dict], params: Optional[dict]) -> Any:
        self.limiter.acquire()
        url = urljoin(self.base_url, endpoint)
        logger.debug(f"[TRACKER] {method} {endpoint}")

        try:
            response = self._session.request(
                method=method,
                url=url,
                json=data,
                params=params,
                timeout=self.config.timeout,
            )
        except requests.exceptions.Timeout:
            raise TransientError(f"Request timed out: {method} {endpoint}") from None
        except requests.exceptions.ConnectionError as e:
            raise TransientError(f"Connection error: {e}") from None
        except requests.exceptions.RequestException as e:
            raise ExternalServiceError(f"{method} {endpoint}", f"Request failed: {e}", last_error=e) from e

        self.limiter.update_from_headers(response.headers)

        if response.status_code in RETRYABLE_STATUS:
            retry_after = response.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after is not None else None
            except ValueError:
                delay = None
            raise TransientError(
                f"HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
                retry_after=delay,
            )

        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(f"[TRACKER] {method} {endpoint} -> {response.status_code}: {message}")
            raise ExternalServiceError(f"{method} {endpoint}", message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self._session:
            self._session.close()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or ""
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class InMemoryBacklog:
    """Tracker stand-in backed by plain dicts.

    Layout mirrors the JSON backlog file used by the CLI::

        {"program_increments": [...], "teams": [...],
         "items": [...], "relationships": [...]}

    Items may carry a ``pi_id``; items without one belong to every PI.
    """

    def __init__(self, program_increments: Optional[list[dict]] = None, teams: Optional[list[dict]] = None,
                 items: Optional[list[dict]] = None, relationships: Optional[list[dict]] = None):
        self.program_increments = {p["id"]: dict(p) for p in program_increments or []}
        self.teams = {t["id"]: dict(t) for t in teams or []}
        self.items: dict[str, dict] = {i["id"]: dict(i) for i in items or []}
        self.relationships: list[dict] = [dict(r) for r in relationships or []]
        self.assignments: dict[str, dict] = {}

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryBacklog":
        if not path.exists():
            raise ValidationError("backlog", f"Backlog file not found: {path}")
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError("backlog", f"Invalid JSON in {path}: {e}") from None
        backlog = cls(
            program_increments=data.get("program_increments", []),
            teams=data.get("teams", []),
            items=data.get("items", []),
            relationships=data.get("relationships", []),
        )
        backlog.assignments = dict(data.get("assignments", {}))
        return backlog

    def to_dict(self) -> dict:
        return {
            "program_increments": list(self.program_increments.values()),
            "teams": list(self.teams.values()),
            "items": list(self.items.values()),
            "relationships": list(self.relationships),
            "assignments": dict(self.assignments),
        }

    def save(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")

    def get_program_increment(self, pi_id: str) -> dict:
        if pi_id not in self.program_increments:
            raise ExternalServiceError(f"GET program-increments/{pi_id}", "not found", status_code=404)
        return dict(self.program_increments[pi_id])

    def get_team(self, team_id: str) -> dict:
        if team_id not in self.teams:
            raise ExternalServiceError(f"GET teams/{team_id}", "not found", status_code=404)
        return dict(self.teams[team_id])

    def list_items(self, pi_id: str, team_id: str) -> list[dict]:
        result = []
        for item in self.items.values():
            if item.get("pi_id", pi_id) != pi_id:
                continue
            owner = item.get("team_id", item.get("teamId"))
            if owner not in (None, team_id):
                continue
            result.append({k: v for k, v in item.items() if k != "pi_id"})
        return result

    def list_relationships(self, item_ids: list[str]) -> list[dict]:
        wanted = set(item_ids)
        return [dict(r) for r in self.relationships
                if r.get("source_id") in wanted or r.get("target_id") in wanted]

    def create_item(self, payload: dict) -> dict:
        self.items[payload["id"]] = dict(payload)
        return dict(payload)

    def assign_iteration(self, item_id: str, pi_id: str, iteration: int,
                         start_date: str, end_date: str) -> None:
        if item_id not in self.items:
            raise ExternalServiceError(f"PUT items/{item_id}/iteration", "not found", status_code=404)
        self.assignments[item_id] = {
            "pi_id": pi_id,
            "iteration": iteration,
            "start_date": start_date,
            "end_date": end_date,
        }

    def create_relationship(self, source_id: str, target_id: str, kind: str) -> dict:
        for rel in self.relationships:
            if (rel["source_id"], rel["target_id"], rel["kind"]) == (source_id, target_id, kind):
                raise ExternalServiceError("POST relationships", "relationship already exists",
                                           status_code=STATUS_CONFLICT)
        rel = {"source_id": source_id, "target_id": target_id, "kind": kind}
        self.relationships.append(rel)
        return dict(rel)
