"""
Unit tests for core.history module.

Tests:
- Snapshot naming and time parsing
- is_immutable() for past and open-ended ranges
- write() / refresh_cache() / load(), stray files skipped
- select() / query(): range, interval, filters and the result limit
"""

from datetime import UTC, datetime
from pathlib import Path

import pytest

from uptimebrotr.core.history import (
    HistoryQuery,
    HistorySnapshotter,
    format_snapshot_name,
    is_immutable,
    is_snapshot_name,
    parse_time,
)
from uptimebrotr.exceptions import HistoryQueryError, PersistenceError


BASE = datetime(2024, 1, 1, tzinfo=UTC)
BASE_TS = BASE.timestamp()


def _view(n: int) -> dict:
    return {
        "gateway": {"https://a": {"n": n}, "https://b": {"n": -n}},
        "application_node": {"plebtoken.eth": {"n": n}},
        "relay": {},
    }


def _populate(tmp_path: Path, count: int, spacing: float = 60, **kwargs) -> HistorySnapshotter:
    history = HistorySnapshotter(tmp_path / "history", **kwargs)
    for i in range(count):
        history.write(_view(i), datetime.fromtimestamp(BASE_TS + i * spacing, UTC))
    return history


# ============================================================================
# Time Helper Tests
# ============================================================================


class TestTimeHelpers:
    def test_snapshot_name(self) -> None:
        moment = datetime(2024, 1, 1, 0, 0, 5, 123456, tzinfo=UTC)
        assert format_snapshot_name(moment) == "2024-01-01T00:00:05.123Z"

    def test_names_sort_chronologically(self) -> None:
        early = format_snapshot_name(datetime(2024, 1, 1, 9, tzinfo=UTC))
        late = format_snapshot_name(datetime(2024, 1, 1, 10, tzinfo=UTC))
        assert early < late

    @pytest.mark.parametrize(
        "value",
        [BASE_TS, int(BASE_TS), str(int(BASE_TS)), "2024-01-01T00:00:00Z", "2024-01-01"],
    )
    def test_parse_time(self, value) -> None:
        assert parse_time(value) == BASE_TS

    @pytest.mark.parametrize("value", ["yesterday", "nan", True])
    def test_parse_time_invalid(self, value) -> None:
        with pytest.raises(HistoryQueryError):
            parse_time(value)

    def test_is_snapshot_name(self) -> None:
        assert is_snapshot_name(format_snapshot_name(BASE) + ".json")
        assert not is_snapshot_name("notes.json")
        assert not is_snapshot_name(format_snapshot_name(BASE))

    def test_is_immutable(self) -> None:
        assert is_immutable(BASE_TS, now=BASE_TS + 1)
        assert not is_immutable(BASE_TS + 2, now=BASE_TS + 1)
        assert not is_immutable(None, now=BASE_TS)
        assert not is_immutable("", now=BASE_TS)


# ============================================================================
# Write / Cache Tests
# ============================================================================


class TestWriteAndCache:
    """Tests for write(), refresh_cache() and load()."""

    def test_write_creates_named_file(self, tmp_path: Path) -> None:
        history = HistorySnapshotter(tmp_path / "history")
        path = history.write({"gateway": {}}, BASE)
        assert path.name == "2024-01-01T00:00:00.000Z.json"
        assert history.files == [path.name]
        assert history.load(path.name) == {"gateway": {}}

    def test_refresh_cache_keeps_most_recent(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 4, cache_size=2)
        assert history.refresh_cache() == 2
        assert history.generation == 1
        assert set(history._cache) == set(history.files[-2:])

    def test_refresh_picks_up_external_files(self, tmp_path: Path) -> None:
        _populate(tmp_path, 3)
        fresh = HistorySnapshotter(tmp_path / "history")
        assert fresh.files == []
        fresh.refresh_cache()
        assert len(fresh.files) == 3

    def test_stray_files_skipped(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 3)
        (tmp_path / "history" / "notes.json").write_text("{}")
        (tmp_path / "history" / "README.txt").write_text("x")
        assert history.refresh_cache() == 3
        assert "notes.json" not in history.files
        assert len(history.since(0)) == 3
        assert len(history.query(HistoryQuery())) == 3

    def test_uncached_read_from_disk(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 3, cache_size=1)
        history.refresh_cache()
        assert history.load(history.files[0]) == _view(0)

    def test_corrupt_snapshot(self, tmp_path: Path) -> None:
        history = HistorySnapshotter(tmp_path)
        (tmp_path / "2024-01-01T00:00:00.000Z.json").write_text("[]")
        with pytest.raises(PersistenceError, match="not an object"):
            history.refresh_cache()

    def test_since(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 4)
        points = history.since(BASE_TS + 120)
        assert [ts for ts, _ in points] == [BASE_TS + 120, BASE_TS + 180]
        assert points[0][1] == _view(2)


# ============================================================================
# Query Tests
# ============================================================================


class TestQuery:
    """Tests for select() and query()."""

    def test_full_range(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 3)
        points = history.query(HistoryQuery())
        assert [p[0] for p in points] == [BASE_TS, BASE_TS + 60, BASE_TS + 120]
        assert points[1][1] == _view(1)

    def test_range_bounds_inclusive(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 5)
        points = history.query(HistoryQuery(from_=BASE_TS + 60, to=BASE_TS + 180))
        assert [p[0] for p in points] == [BASE_TS + 60, BASE_TS + 120, BASE_TS + 180]

    def test_interval(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 6)
        points = history.query(HistoryQuery(interval=120))
        assert [p[0] for p in points] == [BASE_TS, BASE_TS + 120, BASE_TS + 240]

    def test_too_many_results(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 6, max_results=5)
        with pytest.raises(HistoryQueryError) as exc_info:
            history.query(HistoryQuery())
        assert str(exc_info.value) == (
            "too many results (more than 5), add from=timestamp-seconds, "
            "to=timestamp-seconds and/or interval=seconds to your query"
        )

    def test_narrowed_query_within_limit(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 6, max_results=5)
        assert len(history.query(HistoryQuery(interval=120))) == 3

    def test_gateway_filter(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 2)
        points = history.query(HistoryQuery(gateway="https://a"))
        assert points[1][1] == {"gateway": {"https://a": {"n": 1}}}

    def test_gateway_and_node_filter(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 2)
        points = history.query(HistoryQuery(gateway="https://b", node="plebtoken.eth"))
        assert points[1][1] == {
            "gateway": {"https://b": {"n": -1}},
            "application_node": {"plebtoken.eth": {"n": 1}},
        }

    def test_include(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 1)
        points = history.query(HistoryQuery(include=("relay",)))
        assert points[0][1] == {"relay": {}}

    def test_invalid_time(self, tmp_path: Path) -> None:
        history = _populate(tmp_path, 1)
        with pytest.raises(HistoryQueryError):
            history.query(HistoryQuery(from_="soon"))
