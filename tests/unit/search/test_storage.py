"""Unit tests for segment persistence."""

from pathlib import Path

import orjson
import pytest

from spimi_index.config import load_settings
from spimi_index.search.storage import JsonSegmentSerializer, PersistenceError, SegmentStore, StorageError


@pytest.mark.unit
class TestJsonSegmentSerializer:
    def test_round_trip_preserves_terms_postings_and_metadata(self, tmp_path, segment_factory, postings_of):
        serializer = JsonSegmentSerializer()
        segment = segment_factory(3, {"red": [1, 2, 3], "blue": [2, 3, 7], "Ünïcode": [9]})

        path = serializer.write_to_file(tmp_path / "segment_3.json", segment)
        restored = serializer.read_from_file(path)

        assert restored == segment
        assert list(restored.terms()) == list(segment.terms())
        assert postings_of(restored) == postings_of(segment)

    def test_output_is_minified_json(self, tmp_path, segment_factory):
        serializer = JsonSegmentSerializer()
        path = serializer.write_to_file(tmp_path / "s.json", segment_factory(1, {"red": [1]}))

        raw = path.read_bytes()
        assert b"\n" not in raw
        assert orjson.loads(raw)["p"] == {"red": [1]}

    def test_write_leaves_no_temporary_file(self, tmp_path, segment_factory):
        JsonSegmentSerializer().write_to_file(tmp_path / "s.json", segment_factory(1, {"red": [1]}))

        assert sorted(path.name for path in tmp_path.iterdir()) == ["s.json"]

    def test_write_into_missing_directory_raises_persistence_error(self, tmp_path, segment_factory):
        target = tmp_path / "missing" / "s.json"

        with pytest.raises(PersistenceError) as excinfo:
            JsonSegmentSerializer().write_to_file(target, segment_factory(1, {"red": [1]}))

        assert excinfo.value.path == target

    def test_read_missing_file_raises_persistence_error(self, tmp_path):
        with pytest.raises(PersistenceError, match="Failed to read"):
            JsonSegmentSerializer().read_from_file(tmp_path / "nope.json")

    def test_read_corrupt_file_raises_persistence_error(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_bytes(b'{"i": 1, "p": {"red": [1')

        with pytest.raises(PersistenceError):
            JsonSegmentSerializer().read_from_file(path)

    def test_persistence_error_is_storage_error(self):
        assert issubclass(PersistenceError, StorageError)


@pytest.mark.unit
class TestSegmentStore:
    def test_layout_uses_prefixes(self, store, segment_factory):
        path = store.write_segment(segment_factory(4, {"red": [1]}))

        assert path == store.directory / "segment_4.json"
        assert store.merged_path(2) == store.directory / "merged_2.json"

    def test_lists_files_in_numeric_order(self, store, segment_factory):
        for segment_id in (10, 2, 1):
            store.write_segment(segment_factory(segment_id, {"red": [segment_id]}))
        (store.directory / "notes.txt").write_text("ignored")
        (store.directory / "segment_x.json").write_text("{}")

        assert [path.name for path in store.list_segment_paths()] == [
            "segment_1.json",
            "segment_2.json",
            "segment_10.json",
        ]
        assert store.segment_ids() == [1, 2, 10]
        assert store.next_segment_id() == 11

    def test_merge_ids(self, store, segment_factory):
        assert store.next_merge_id() == 1
        assert store.latest_merged_path() is None

        store.write_merged(segment_factory(1, {"red": [1]}, kind="merged"))
        store.write_merged(segment_factory(2, {"red": [2]}, kind="merged"))

        assert store.merge_ids() == [1, 2]
        assert store.next_merge_id() == 3
        assert store.latest_merged_path() == store.merged_path(2)

    def test_next_document_id_empty_store(self, store):
        assert store.next_document_id() == 0

    def test_next_document_id_spans_segments_and_merged_outputs(self, store, segment_factory):
        store.write_segment(segment_factory(1, {"red": [0, 4]}))
        store.write_merged(segment_factory(1, {"blue": [2, 9], "red": [3]}, kind="merged"))

        assert store.next_document_id() == 10

    def test_write_segment_rejects_merged_output(self, store, segment_factory):
        with pytest.raises(StorageError):
            store.write_segment(segment_factory(1, {"red": [1]}, kind="merged"))

    def test_write_merged_rejects_flushed_segment(self, store, segment_factory):
        with pytest.raises(StorageError, match="not a merged output"):
            store.write_merged(segment_factory(1, {"red": [1]}))

    def test_write_merged_refuses_to_overwrite(self, store, segment_factory):
        store.write_merged(segment_factory(1, {"red": [1]}, kind="merged"))

        with pytest.raises(StorageError, match="already exists"):
            store.write_merged(segment_factory(1, {"blue": [1]}, kind="merged"))

    def test_delete(self, store, segment_factory):
        path = store.write_segment(segment_factory(1, {"red": [1]}))

        assert store.delete(path) is True
        assert not path.exists()
        assert store.delete(path) is True

    def test_custom_prefixes(self, tmp_path, segment_factory):
        store = SegmentStore(tmp_path, segment_prefix="run-", merged_prefix="final-")
        store.write_segment(segment_factory(1, {"red": [1]}))

        assert [path.name for path in store.list_segment_paths()] == ["run-1.json"]
        assert store.list_merged_paths() == []

    @pytest.mark.parametrize(
        ("segment_prefix", "merged_prefix"),
        [("seg", "seg"), ("segment_", "segment_merged_"), ("", "merged_")],
    )
    def test_rejects_overlapping_prefixes(self, tmp_path, segment_prefix, merged_prefix):
        with pytest.raises(StorageError):
            SegmentStore(tmp_path, segment_prefix=segment_prefix, merged_prefix=merged_prefix)

    def test_from_settings(self, tmp_path):
        settings = load_settings(segment_directory=tmp_path / "idx", segment_prefix="part_")

        store = SegmentStore.from_settings(settings)

        assert store.directory == Path(tmp_path / "idx")
        assert store.directory.is_dir()
        assert store.segment_path(1).name == "part_1.json"
