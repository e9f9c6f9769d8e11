from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from leaderboard_core import ScoreNotFoundError, ScoreStore, ScoreValidationError, StoreUnavailableError, rank_top_scores
from leaderboard_core import store as store_module


class _FakeSupabase:
    """Minimal PostgREST stand-in keyed on ``id=eq.<id>`` filters."""

    def __init__(self) -> None:
        self.rows: List[Dict[str, Any]] = []
        self.requests: List[Dict[str, Any]] = []
        self.fail_status: int | None = None
        self.fail_connect = False
        self.max_rows = 1000
        self.list_payload: Any = None
        self._next_id = 1

    def client_class(self):
        backend = self

        class _Client:
            def __init__(self, *args: Any, **kwargs: Any) -> None:
                pass

            def __enter__(self) -> "_Client":
                return self

            def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean up
                return None

            def get(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]):
                return backend.handle("GET", endpoint, params, headers)

            def post(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]):
                return backend.handle("POST", endpoint, params, headers, json)

            def patch(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]):
                return backend.handle("PATCH", endpoint, params, headers, json)

            def delete(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]):
                return backend.handle("DELETE", endpoint, params, headers)

        return _Client

    def handle(self, method: str, endpoint: str, params: Dict[str, Any], headers: Dict[str, str], body: Any = None):
        self.requests.append({"method": method, "endpoint": endpoint, "params": params, "headers": headers, "json": body})
        request = store_module.httpx.Request(method, endpoint)
        if self.fail_connect:
            raise store_module.httpx.ConnectError("connection refused", request=request)
        if self.fail_status is not None:
            return store_module.httpx.Response(self.fail_status, request=request, json={"message": "database said no"})

        id_filter = str(params.get("id") or "")
        target_id = id_filter[3:] if id_filter.startswith("eq.") else None
        matched = [row for row in self.rows if target_id is None or row["id"] == target_id]

        if method == "GET":
            if self.list_payload is not None and target_id is None:
                return store_module.httpx.Response(200, request=request, json=self.list_payload)
            offset = int(params.get("offset") or 0)
            limit = min(int(params.get("limit") or self.max_rows), self.max_rows)
            return store_module.httpx.Response(200, request=request, json=matched[offset : offset + limit])
        if method == "POST":
            row = dict(body)
            row.setdefault("id", f"row-{self._next_id}")
            row.setdefault("created_at", "2025-05-01T10:00:00+00:00")
            row.setdefault("updated_at", "2025-05-01T10:00:00+00:00")
            self._next_id += 1
            self.rows = [existing for existing in self.rows if existing["id"] != row["id"]]
            self.rows.append(row)
            return store_module.httpx.Response(201, request=request, json=[row])
        if method == "PATCH":
            for row in matched:
                row.update(body)
            return store_module.httpx.Response(200, request=request, json=matched)
        if method == "DELETE":
            self.rows = [row for row in self.rows if row not in matched]
            return store_module.httpx.Response(200, request=request, json=[{"id": row["id"]} for row in matched])
        raise AssertionError(f"unexpected method {method}")


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "SUPABASE_URL",
        "SUPABASE_SERVICE_ROLE_KEY",
        "SUPABASE_SERVICE_KEY",
        "SUPABASE_ANON_KEY",
        "SUPABASE_SCHEMA",
        "SUPABASE_TOP_SCORES_TABLE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co/")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")
    yield


@pytest.fixture
def supabase(monkeypatch: pytest.MonkeyPatch) -> _FakeSupabase:
    fake = _FakeSupabase()
    monkeypatch.setattr(store_module.httpx, "Client", fake.client_class())
    return fake


@pytest.fixture
def store(tmp_path, supabase: _FakeSupabase) -> ScoreStore:
    return ScoreStore(data_dir=tmp_path)


def test_create_score_posts_to_supabase(store: ScoreStore, supabase: _FakeSupabase) -> None:
    created = store.create_score({"name": "Alice", "score": "88"})

    assert created.id == "row-1"
    assert created.score == 88.0
    assert created.created_at == "2025-05-01T10:00:00+00:00"

    call = supabase.requests[-1]
    assert call["endpoint"] == "https://example.supabase.co/rest/v1/top_scores"
    assert call["json"] == {"name": "Alice", "score": 88.0}
    assert call["headers"]["Authorization"] == "Bearer test-key"
    assert call["headers"]["Prefer"] == "return=representation"
    assert "Accept-Profile" not in call["headers"]


def test_schema_and_table_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path, supabase: _FakeSupabase) -> None:
    monkeypatch.setenv("SUPABASE_SCHEMA", "games")
    monkeypatch.setenv("SUPABASE_TOP_SCORES_TABLE", "arcade_scores")

    ScoreStore(data_dir=tmp_path).list_scores()

    call = supabase.requests[-1]
    assert call["endpoint"].endswith("/rest/v1/arcade_scores")
    assert call["headers"]["Accept-Profile"] == "games"
    assert "Content-Profile" not in call["headers"]
    assert call["params"]["order"] == "created_at.asc,id.asc"


def test_list_and_get_scores_normalise_rows(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.rows = [
        {"id": "a", "name": "Alice", "score": "15", "created_at": "2025-01-01T00:00:00Z", "updated_at": "2025-01-02T00:00:00Z"},
        {"id": "b", "name": "Bob", "score": 30, "created_at": "2025-01-03T00:00:00Z", "updated_at": None},
    ]

    records = store.list_scores()

    assert [record.to_dict() for record in records] == [
        {"id": "a", "name": "Alice", "score": 15.0, "createdAt": "2025-01-01T00:00:00Z", "updatedAt": "2025-01-02T00:00:00Z"},
        {"id": "b", "name": "Bob", "score": 30.0, "createdAt": "2025-01-03T00:00:00Z", "updatedAt": ""},
    ]
    assert store.get_score("b").name == "Bob"
    assert supabase.requests[-1]["params"]["id"] == "eq.b"

    with pytest.raises(ScoreNotFoundError):
        store.get_score("missing")


def test_get_score_with_malformed_id_is_not_found(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.fail_status = 400

    with pytest.raises(ScoreNotFoundError):
        store.get_score("not-a-uuid")


def test_update_score_patches_row(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.rows = [{"id": "a", "name": "Alice", "score": 15, "created_at": "2025-01-01T00:00:00Z", "updated_at": "2025-01-01T00:00:00Z"}]

    updated = store.update_score("a", {"name": "Alicia"})

    assert updated.name == "Alicia"
    assert updated.score == 15.0
    call = supabase.requests[-1]
    assert call["method"] == "PATCH"
    assert call["json"]["name"] == "Alicia"
    assert "updated_at" in call["json"]

    with pytest.raises(ScoreNotFoundError):
        store.update_score("missing", {"score": 1})


def test_update_score_without_changes_skips_patch(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.rows = [{"id": "a", "name": "Alice", "score": 15}]

    record = store.update_score("a", {})

    assert record.name == "Alice"
    assert [call["method"] for call in supabase.requests] == ["GET"]


def test_delete_score_supabase(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.rows = [{"id": "a", "name": "Alice", "score": 15}, {"id": "b", "name": "Bob", "score": 9}]

    store.delete_score("a")

    assert [row["id"] for row in supabase.rows] == ["b"]

    with pytest.raises(ScoreNotFoundError):
        store.delete_score("a")
    assert [row["id"] for row in supabase.rows] == ["b"]


def test_delete_all_scores_deletes_each_row(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.rows = [{"id": str(index), "name": f"P{index}", "score": index} for index in range(4)]

    removed = store.delete_all_scores()

    assert removed == 4
    assert supabase.rows == []
    deletes = [call for call in supabase.requests if call["method"] == "DELETE"]
    assert [call["params"]["id"] for call in deletes] == ["eq.0", "eq.1", "eq.2", "eq.3"]


def test_create_score_rejected_by_supabase(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.fail_status = 400

    with pytest.raises(ScoreValidationError, match="database said no"):
        store.create_score({"name": "Alice", "score": 1})


def test_supabase_server_error_is_unavailable(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.fail_status = 503

    with pytest.raises(StoreUnavailableError, match="database said no"):
        store.list_scores()


def test_supabase_connection_error_is_unavailable(store: ScoreStore, supabase: _FakeSupabase, tmp_path) -> None:
    supabase.fail_connect = True

    with pytest.raises(StoreUnavailableError):
        store.create_score({"name": "Alice", "score": 1})

    # Unreachable Supabase never silently writes to the local file.
    assert not (tmp_path / "top_scores_local.json").exists()


def test_sync_local_backlog_pushes_local_scores(store: ScoreStore, supabase: _FakeSupabase, tmp_path) -> None:
    backlog = tmp_path / "top_scores_local.json"
    backlog.write_text(json.dumps([
        {"id": "local-1", "name": "Alice", "score": 40, "createdAt": "2025-01-01T00:00:00Z", "updatedAt": "2025-01-01T00:00:00Z"},
        {"id": "local-2", "name": "", "score": 12},
    ]))

    summary = store.sync_local_backlog()

    assert summary["scores"]["synced"] == 1
    assert summary["scores"]["remaining"] == 1
    assert "local-2" in summary["scores"]["errors"][0]

    call = supabase.requests[-1]
    assert call["params"] == {"on_conflict": "id"}
    assert call["headers"]["Prefer"].startswith("resolution=merge-duplicates")
    assert call["json"] == {
        "id": "local-1",
        "name": "Alice",
        "score": 40.0,
        "created_at": "2025-01-01T00:00:00Z",
        "updated_at": "2025-01-01T00:00:00Z",
    }
    remaining = json.loads(backlog.read_text())
    assert [row["id"] for row in remaining] == ["local-2"]


def test_sync_local_backlog_removes_file_when_done(store: ScoreStore, supabase: _FakeSupabase, tmp_path) -> None:
    backlog = tmp_path / "top_scores_local.json"
    backlog.write_text(json.dumps([{"id": "local-1", "name": "Alice", "score": 40}]))

    summary = store.sync_local_backlog()

    assert summary["scores"] == {"synced": 1, "remaining": 0, "errors": []}
    assert not backlog.exists()
    assert [row["id"] for row in supabase.rows] == ["local-1"]


def test_sync_local_backlog_requires_supabase(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv("SUPABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="Supabase configuration is required"):
        ScoreStore(data_dir=tmp_path).sync_local_backlog()


def test_list_scores_pages_past_max_rows(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.max_rows = 400
    supabase.rows = [{"id": f"r{index:04d}", "name": f"P{index}", "score": index} for index in range(1500)]

    records = store.list_scores()

    assert len(records) == 1500
    assert records[-1].id == "r1499"
    offsets = [call["params"]["offset"] for call in supabase.requests if call["method"] == "GET"]
    assert offsets == [0, 400, 800, 1200, 1500]

    ranked = rank_top_scores(records)
    assert [entry.record.score for entry in ranked] == [1499, 1498, 1497, 1496, 1495]


def test_list_scores_unexpected_payload_is_unavailable(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.list_payload = {"message": "not a list"}

    with pytest.raises(StoreUnavailableError, match="Unexpected response when listing top scores"):
        store.list_scores()


def test_get_score_with_malformed_stored_score_is_unavailable(store: ScoreStore, supabase: _FakeSupabase) -> None:
    supabase.rows = [{"id": "a", "name": "Alice", "score": "lots"}]

    with pytest.raises(StoreUnavailableError, match="malformed"):
        store.get_score("a")
