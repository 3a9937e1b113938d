"""Tests for template persistence."""

import json
import logging

import pytest

from winlab.models import (
    CorruptRecord,
    DatabaseServerTemplate,
    NotFound,
    ValidationError,
    WebServerTemplate,
)
from winlab.template_store import FileTemplateStore, MemoryTemplateStore, _ID_PATTERN


@pytest.fixture
def store(tmp_path, ticking_clock):
    """File store in a temporary directory."""
    return FileTemplateStore(tmp_path / "templates", engine_version="test-1.0", clock=ticking_clock)


class TestFileTemplateStore:
    """Test cases for FileTemplateStore."""

    def test_save_and_load(self, store):
        """Test a saved template loads back unchanged."""
        spec = DatabaseServerTemplate(cpu_count=16, data_storage_gb=1000)

        template_id = store.save(spec, "sql-large")
        record = store.load(template_id)

        assert record.template_id == template_id
        assert record.name == "sql-large"
        assert record.engine_version == "test-1.0"
        assert record.created_at.year == 2026
        assert record.spec == spec

    def test_id_format(self, store):
        """Test ids start with the creation timestamp."""
        template_id = store.save(WebServerTemplate(), "web")

        assert _ID_PATTERN.match(template_id)
        assert template_id.startswith("20261019T120000")

    def test_file_layout(self, store, tmp_path):
        """Test one JSON file is written per template."""
        template_id = store.save(WebServerTemplate(), "web")

        path = tmp_path / "templates" / f"{template_id}.json"
        data = json.loads(path.read_text())

        assert data["id"] == template_id
        assert data["spec"]["workload_type"] == "WebServer"

    def test_duplicate_names_get_distinct_ids(self, store):
        """Test saving the same name twice keeps both records."""
        first = store.save(WebServerTemplate(), "web")
        second = store.save(WebServerTemplate(memory_mb=8192), "web")

        assert first != second
        assert [r.template_id for r in store.list()] == [first, second]

    def test_list_is_in_creation_order(self, store):
        """Test list returns records oldest first."""
        ids = [store.save(WebServerTemplate(), name) for name in ("c", "a", "b")]

        assert [r.template_id for r in store.list()] == ids
        assert [r.name for r in store.list()] == ["c", "a", "b"]

    def test_list_missing_directory(self, tmp_path):
        """Test listing before anything is saved returns nothing."""
        store = FileTemplateStore(tmp_path / "nowhere", engine_version="1")

        assert store.list() == []

    def test_load_unknown_id(self, store):
        """Test NotFound for an id that was never saved."""
        with pytest.raises(NotFound):
            store.load("20261019T120000000000Z-00000000")

    @pytest.mark.parametrize("template_id", ["../etc/passwd", "", "web"])
    def test_load_malformed_id(self, store, template_id):
        """Test malformed ids never touch the filesystem."""
        with pytest.raises(NotFound):
            store.load(template_id)

    def test_blank_name_rejected(self, store):
        """Test a template needs a name."""
        with pytest.raises(ValidationError) as exc_info:
            store.save(WebServerTemplate(), "  ")

        assert exc_info.value.field == "name"

    def test_corrupt_record(self, store, tmp_path, caplog):
        """Test corrupt files raise on load and are skipped by list."""
        good = store.save(WebServerTemplate(), "web")
        bad = "20261019T130000000000Z-deadbeef"
        (tmp_path / "templates" / f"{bad}.json").write_text("{not json")

        with pytest.raises(CorruptRecord):
            store.load(bad)

        with caplog.at_level(logging.WARNING):
            records = store.list()

        assert [r.template_id for r in records] == [good]
        assert "Skipping unreadable template" in caplog.text

    def test_invalid_spec_is_corrupt(self, store, tmp_path):
        """Test a stored spec violating invariants is reported as corrupt."""
        template_id = store.save(WebServerTemplate(), "web")
        path = tmp_path / "templates" / f"{template_id}.json"
        data = json.loads(path.read_text())
        data["spec"]["cpu_count"] = 0
        path.write_text(json.dumps(data))

        with pytest.raises(CorruptRecord) as exc_info:
            store.load(template_id)

        assert exc_info.value.key == template_id

    def test_mismatched_id_is_corrupt(self, store, tmp_path):
        """Test a record copied under another file name is rejected."""
        template_id = store.save(WebServerTemplate(), "web")
        other = "20261019T130000000000Z-0badf00d"
        source = tmp_path / "templates" / f"{template_id}.json"
        (tmp_path / "templates" / f"{other}.json").write_text(source.read_text())

        with pytest.raises(CorruptRecord):
            store.load(other)

    def test_delete(self, store):
        """Test delete removes the record."""
        template_id = store.save(WebServerTemplate(), "web")

        store.delete(template_id)

        with pytest.raises(NotFound):
            store.load(template_id)
        assert store.list() == []

    def test_delete_unknown(self, store):
        """Test deleting a missing id raises NotFound."""
        with pytest.raises(NotFound):
            store.delete("20261019T120000000000Z-00000000")

    def test_find_by_name_returns_newest(self, store):
        """Test name lookup picks the most recent save."""
        store.save(WebServerTemplate(), "web")
        newest = store.save(WebServerTemplate(cpu_count=4), "web")

        assert store.find_by_name("web").template_id == newest

    def test_find_by_name_missing(self, store):
        """Test name lookup raises NotFound for unknown names."""
        with pytest.raises(NotFound):
            store.find_by_name("nothing")

    def test_from_settings(self, settings):
        """Test the store uses the configured directory and version."""
        store = FileTemplateStore.from_settings(settings)

        assert store.directory == settings.template_dir
        assert store.engine_version == "test-1.0"


class TestMemoryTemplateStore:
    """Test cases for MemoryTemplateStore."""

    def test_round_trip(self, ticking_clock):
        """Test save, list, load and delete in memory."""
        store = MemoryTemplateStore("1.0", clock=ticking_clock)
        first = store.save(WebServerTemplate(), "web")
        second = store.save(DatabaseServerTemplate(), "sql")

        assert [r.name for r in store.list()] == ["web", "sql"]
        assert isinstance(store.load(second).spec, DatabaseServerTemplate)

        store.delete(first)

        assert [r.template_id for r in store.list()] == [second]
        with pytest.raises(NotFound):
            store.delete(first)

    def test_unreadable_record_skipped_by_list(self, ticking_clock, caplog):
        """Test a damaged in-memory record raises on load and is skipped by list."""
        store = MemoryTemplateStore("1.0", clock=ticking_clock)
        good = store.save(WebServerTemplate(), "web")
        bad = store.save(WebServerTemplate(), "broken")
        store._records[bad]["spec"]["cpu_count"] = 0

        with pytest.raises(CorruptRecord):
            store.load(bad)

        with caplog.at_level(logging.WARNING):
            records = store.list()

        assert [r.template_id for r in records] == [good]
        assert "Skipping unreadable template" in caplog.text
