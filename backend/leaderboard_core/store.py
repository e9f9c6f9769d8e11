from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, NoReturn

import httpx

from .score import ScoreRecord, coerce_score


logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000


class ScoreNotFoundError(ValueError):
    """The requested top score does not exist."""


class ScoreValidationError(ValueError):
    """A top score payload was rejected."""


class StoreUnavailableError(RuntimeError):
    """The backing store could not be reached or failed."""


class ScoreStore:
    """Persists top scores in Supabase, or in a local JSON file when Supabase is not configured."""

    def __init__(self, data_dir: Path | None = None) -> None:
        """Initialize the ScoreStore.

        Args:
            data_dir: Directory holding the local JSON fallback. Defaults to
                ``LEADERBOARD_DATA_DIR`` or ``backend/data``.
        """
        env_data_dir = os.getenv("LEADERBOARD_DATA_DIR", "")
        default_dir = Path(env_data_dir) if env_data_dir else Path(__file__).parent.parent / "data"
        self.data_dir = data_dir or default_dir

        # Supabase configuration
        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.supabase_scores_table = os.getenv("SUPABASE_TOP_SCORES_TABLE", "top_scores")
        self.local_scores_path = self.data_dir / "top_scores_local.json"
        self._local_lock = threading.Lock()

        if self.uses_supabase:
            logger.info("Storing top scores in Supabase table '%s'", self.supabase_scores_table)
        else:
            logger.info("Supabase not configured; storing top scores in %s", self.local_scores_path)

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key and self.supabase_scores_table)

    # ------------------------------------------------------------------
    # Public operations

    def list_scores(self) -> List[ScoreRecord]:
        """Return every score in creation order."""
        if not self.uses_supabase:
            return self._records_from_rows(self._load_local_scores())

        endpoint = self._supabase_endpoint(self.supabase_scores_table)
        headers = self._supabase_headers(include_content_profile=False)
        rows: List[Any] = []

        # PostgREST caps each response at its max-rows setting, so keep
        # paging until a page comes back empty.
        try:
            with httpx.Client(timeout=10.0) as client:
                while True:
                    params = {
                        "select": self._select_fields(),
                        "order": "created_at.asc,id.asc",
                        "limit": LIST_PAGE_SIZE,
                        "offset": len(rows),
                    }
                    response = client.get(endpoint, params=params, headers=headers)
                    response.raise_for_status()
                    page = response.json()
                    if not isinstance(page, list):
                        raise StoreUnavailableError("Unexpected response when listing top scores")
                    if not page:
                        break
                    rows.extend(page)
        except httpx.HTTPStatusError as exc:
            self._raise_unavailable("list top scores", exc)
        except httpx.RequestError as exc:
            self._raise_unavailable("list top scores", exc)

        return self._records_from_rows(rows)

    def get_score(self, score_id: str) -> ScoreRecord:
        if not self.uses_supabase:
            for row in self._load_local_scores():
                if isinstance(row, dict) and row.get("id") == score_id:
                    return self._record_from_row(row)
            raise ScoreNotFoundError("Top score not found")

        endpoint = self._supabase_endpoint(self.supabase_scores_table)
        headers = self._supabase_headers(include_content_profile=False)
        params = {"select": self._select_fields(), "id": f"eq.{score_id}", "limit": 1}

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            if self._is_client_error(exc):
                # PostgREST rejects malformed ids with a 400; treat them as unknown.
                raise ScoreNotFoundError("Top score not found") from exc
            self._raise_unavailable("fetch top score", exc)
        except httpx.RequestError as exc:
            self._raise_unavailable("fetch top score", exc)

        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return self._record_from_row(rows[0])
        raise ScoreNotFoundError("Top score not found")

    def create_score(self, payload: Dict[str, Any]) -> ScoreRecord:
        record = self._score_record_for_create(payload)

        if not self.uses_supabase:
            return self._create_score_local(record)

        endpoint = self._supabase_endpoint(self.supabase_scores_table)
        headers = self._supabase_headers("return=representation")
        headers["Content-Type"] = "application/json"
        params = {"select": self._select_fields()}

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(endpoint, params=params, json=record, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            if self._is_client_error(exc):
                detail = self._extract_supabase_detail(exc.response)
                status_code = exc.response.status_code
                raise ScoreValidationError(detail or f"Supabase rejected create_score ({status_code})") from exc
            self._raise_unavailable("create top score", exc)
        except httpx.RequestError as exc:
            self._raise_unavailable("create top score", exc)

        if isinstance(rows, list) and rows:
            return self._record_from_row(rows[0])
        if isinstance(rows, dict):
            return self._record_from_row(rows)
        raise StoreUnavailableError("Unexpected response when creating top score")

    def update_score(self, score_id: str, changes: Dict[str, Any]) -> ScoreRecord:
        """Apply ``changes`` (already validated ``name``/``score`` values) to a score."""
        record = self._score_record_for_update(changes)

        if not self.uses_supabase:
            return self._update_score_local(score_id, record)

        if not record:
            return self.get_score(score_id)

        endpoint = self._supabase_endpoint(self.supabase_scores_table)
        headers = self._supabase_headers("return=representation")
        headers["Content-Type"] = "application/json"
        params = {"id": f"eq.{score_id}", "select": self._select_fields()}
        record["updated_at"] = self._utc_now_iso()

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.patch(endpoint, params=params, json=record, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            if self._is_client_error(exc):
                detail = self._extract_supabase_detail(exc.response)
                status_code = exc.response.status_code
                raise ScoreValidationError(detail or f"Supabase rejected update_score ({status_code})") from exc
            self._raise_unavailable("update top score", exc)
        except httpx.RequestError as exc:
            self._raise_unavailable("update top score", exc)

        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return self._record_from_row(rows[0])
        raise ScoreNotFoundError("Top score not found")

    def delete_score(self, score_id: str) -> None:
        if not self.uses_supabase:
            self._delete_score_local(score_id)
            return

        endpoint = self._supabase_endpoint(self.supabase_scores_table)
        headers = self._supabase_headers("return=representation")
        params = {"id": f"eq.{score_id}", "select": "id"}

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.delete(endpoint, params=params, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            if self._is_client_error(exc):
                raise ScoreNotFoundError("Top score not found") from exc
            self._raise_unavailable("delete top score", exc)
        except httpx.RequestError as exc:
            self._raise_unavailable("delete top score", exc)

        if not (isinstance(rows, list) and rows):
            raise ScoreNotFoundError("Top score not found")

    def delete_all_scores(self) -> int:
        """Delete every score one by one and return how many were removed.

        Not transactional: a failure midway leaves the remaining scores in place.
        """
        if not self.uses_supabase:
            with self._local_lock:
                removed = sum(1 for row in self._load_local_scores() if isinstance(row, dict))
                self._write_json_file(self.local_scores_path, [])
            return removed

        removed = 0
        for record in self.list_scores():
            try:
                self.delete_score(record.id)
            except ScoreNotFoundError:
                logger.debug("Top score %s vanished before it could be deleted", record.id)
                continue
            removed += 1
        logger.info("Deleted %d top scores", removed)
        return removed

    # ------------------------------------------------------------------
    # Payload helpers

    def _score_record_for_create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ScoreValidationError("Top score payload must be an object")

        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ScoreValidationError("Top score name is required")

        if payload.get("score") is None:
            raise ScoreValidationError("Top score value is required")
        try:
            score = coerce_score(payload.get("score"))
        except ValueError as exc:
            raise ScoreValidationError(str(exc)) from exc

        return {"name": name.strip(), "score": score}

    def _score_record_for_update(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        if "name" in changes:
            name = changes["name"]
            if not isinstance(name, str) or not name.strip():
                raise ScoreValidationError("Top score name cannot be empty")
            record["name"] = name.strip()
        if "score" in changes:
            try:
                record["score"] = coerce_score(changes["score"])
            except ValueError as exc:
                raise ScoreValidationError(str(exc)) from exc
        return record

    def _records_from_rows(self, rows: Iterable[Any]) -> List[ScoreRecord]:
        records: List[ScoreRecord] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                records.append(ScoreRecord.from_row(row))
            except ValueError as exc:
                logger.warning("Skipping malformed top score row %r (%s)", row.get("id"), exc)
        return records

    def _record_from_row(self, row: Dict[str, Any]) -> ScoreRecord:
        try:
            return ScoreRecord.from_row(row)
        except ValueError as exc:
            logger.warning("Malformed top score row %r (%s)", row.get("id"), exc)
            raise StoreUnavailableError(f"Stored top score {row.get('id')!r} is malformed: {exc}") from exc

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _select_fields() -> str:
        return "id,name,score,created_at,updated_at"

    @staticmethod
    def _is_client_error(exc: httpx.HTTPStatusError) -> bool:
        status_code = exc.response.status_code if exc.response is not None else None
        return status_code is not None and 400 <= status_code < 500

    def _raise_unavailable(self, action: str, exc: httpx.HTTPError) -> NoReturn:
        detail = None
        if isinstance(exc, httpx.HTTPStatusError):
            detail = self._extract_supabase_detail(exc.response)
        logger.warning("Supabase %s failed (%s)", action, detail or exc)
        raise StoreUnavailableError(f"Failed to {action}: {detail or exc}") from exc

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        candidates = [payload]
        if isinstance(payload, list) and payload:
            candidates = [payload[0]]
        for candidate in candidates:
            if not isinstance(candidate, dict):
                continue
            for key in ("message", "detail", "error", "hint", "code"):
                value = candidate.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    # ---- local JSON store -----------------------------------------------------------

    def _load_local_scores(self) -> List[Any]:
        data = self._read_json_file(self.local_scores_path, [])
        if not isinstance(data, list):
            raise StoreUnavailableError(f"Local data store {self.local_scores_path} does not hold a list")
        return data

    def _create_score_local(self, record: Dict[str, Any]) -> ScoreRecord:
        now = self._utc_now_iso()
        row = {
            "id": str(uuid.uuid4()),
            "name": record["name"],
            "score": record["score"],
            "createdAt": now,
            "updatedAt": now,
        }
        with self._local_lock:
            data = self._load_local_scores()
            data.append(row)
            self._write_json_file(self.local_scores_path, data)
        return self._record_from_row(row)

    def _update_score_local(self, score_id: str, record: Dict[str, Any]) -> ScoreRecord:
        with self._local_lock:
            data = self._load_local_scores()
            for row in data:
                if not isinstance(row, dict) or row.get("id") != score_id:
                    continue
                if record:
                    row.update(record)
                    row["updatedAt"] = self._utc_now_iso()
                    self._write_json_file(self.local_scores_path, data)
                return self._record_from_row(row)
        raise ScoreNotFoundError("Top score not found")

    def _delete_score_local(self, score_id: str) -> None:
        with self._local_lock:
            data = self._load_local_scores()
            remaining = [row for row in data if not (isinstance(row, dict) and row.get("id") == score_id)]
            if len(remaining) == len(data):
                raise ScoreNotFoundError("Top score not found")
            self._write_json_file(self.local_scores_path, remaining)

    def _read_json_file(self, path: Path, default: Any) -> Any:
        """Read ``path``, or return ``default`` when it does not exist.

        An unreadable file raises instead, so a later write cannot replace
        records it failed to load.
        """
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read local data store %s: %s", path, exc)
            raise StoreUnavailableError(f"Failed to read local data store {path}") from exc

    def _write_json_file(self, path: Path, data: Any) -> None:
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
            ) as handle:
                tmp_name = handle.name
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name:
                self._remove_local_file(Path(tmp_name))
            raise StoreUnavailableError(f"Failed to write local data store {path}") from exc

    def _remove_local_file(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Failed to remove local data file %s: %s", path, exc)

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")

    # ------------------------------------------------------------------
    # Local backlog synchronisation

    def sync_local_backlog(self) -> Dict[str, Any]:
        """Push locally stored top scores to Supabase."""

        if not (self.supabase_url and self.supabase_key):
            raise RuntimeError("Supabase configuration is required to sync local backlog")

        summary = {"scores": {"synced": 0, "remaining": 0, "errors": []}}

        if self.supabase_scores_table:
            summary["scores"] = self._sync_scores_backlog()
        elif self.local_scores_path.exists():
            remaining = sum(1 for row in self._load_local_scores() if isinstance(row, dict))
            summary["scores"]["remaining"] = remaining
            summary["scores"]["errors"].append("Supabase top scores table is not configured")

        return summary

    def _sync_scores_backlog(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"synced": 0, "remaining": 0, "errors": []}

        with self._local_lock:
            data = self._load_local_scores()
            if not data:
                self._remove_local_file(self.local_scores_path)
                return result

            remaining: List[Any] = []
            endpoint = self._supabase_endpoint(self.supabase_scores_table)
            headers = self._supabase_headers("resolution=merge-duplicates,return=minimal")
            headers["Content-Type"] = "application/json"
            params = {"on_conflict": "id"}

            with httpx.Client(timeout=10.0) as client:
                for row in data:
                    if not isinstance(row, dict):
                        remaining.append(row)
                        result["errors"].append("Skipping non-dict entry in top scores backlog")
                        continue

                    try:
                        record = self._score_record_from_local(row)
                    except ValueError as exc:
                        remaining.append(row)
                        result["errors"].append(str(exc))
                        continue

                    try:
                        response = client.post(endpoint, params=params, json=record, headers=headers)
                        response.raise_for_status()
                    except httpx.HTTPStatusError as exc:
                        detail = self._extract_supabase_detail(exc.response)
                        remaining.append(row)
                        result["errors"].append(detail or f"Supabase rejected top score sync: {exc}")
                    except httpx.HTTPError as exc:
                        remaining.append(row)
                        result["errors"].append(f"Top score sync request failed: {exc}")
                    else:
                        result["synced"] += 1

            if remaining:
                self._write_json_file(self.local_scores_path, remaining)
                result["remaining"] = len(remaining)
            else:
                self._remove_local_file(self.local_scores_path)

        logger.info("Synced %d local top scores (%d remaining)", result["synced"], result["remaining"])
        return result

    def _score_record_from_local(self, row: Dict[str, Any]) -> Dict[str, Any]:
        record_id = str(row.get("id") or "").strip()
        if not record_id:
            raise ValueError("Top score sync skipped: missing id")

        try:
            record = self._score_record_for_create(row)
        except ScoreValidationError as exc:
            raise ValueError(f"Top score sync skipped for {record_id}: {exc}") from exc

        record["id"] = record_id
        created_at = row.get("createdAt") or row.get("created_at")
        updated_at = row.get("updatedAt") or row.get("updated_at")
        if created_at:
            record["created_at"] = created_at
        if updated_at:
            record["updated_at"] = updated_at
        return record
