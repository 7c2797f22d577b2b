"""Unit tests for document sources."""

import zipfile

import pytest

from spimi_index.search.documents import SourceDocument, iter_directory, iter_lines, iter_sources, iter_zip_archive


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "corpus.zip"
    with zipfile.ZipFile(path, "w") as handle:
        handle.writestr("b.txt", "second entry")
        handle.writestr("nested/", "")
        handle.writestr("a.txt", "first entry")
    return path


@pytest.mark.unit
class TestSources:
    def test_zip_entries_in_archive_order(self, archive):
        documents = list(iter_zip_archive(archive))

        assert documents == [
            SourceDocument(name="corpus.zip:b.txt", text="second entry"),
            SourceDocument(name="corpus.zip:a.txt", text="first entry"),
        ]

    def test_directory_sorted_and_filtered(self, tmp_path):
        root = tmp_path / "docs"
        (root / "sub").mkdir(parents=True)
        (root / "z.txt").write_text("zed")
        (root / "sub" / "a.txt").write_text("nested")
        (root / "skip.md").write_text("markdown")

        documents = list(iter_directory(root))

        assert [document.name for document in documents] == ["sub/a.txt", "z.txt"]
        assert [document.text for document in documents] == ["nested", "zed"]

    def test_directory_must_exist(self, tmp_path):
        with pytest.raises(NotADirectoryError):
            list(iter_directory(tmp_path / "missing"))

    def test_lines_skip_blank(self, tmp_path):
        path = tmp_path / "docs.txt"
        path.write_text("red fox\n\n   \nblue hen\n", encoding="utf-8")

        documents = list(iter_lines(path))

        assert documents == [
            SourceDocument(name="docs.txt:1", text="red fox"),
            SourceDocument(name="docs.txt:4", text="blue hen"),
        ]

    def test_iter_sources_chains_in_argument_order(self, tmp_path):
        first = tmp_path / "one.txt"
        second = tmp_path / "two.txt"
        first.write_text("a\nb\n")
        second.write_text("c\n")

        texts = [document.text for document in iter_sources([first, second], "lines")]

        assert texts == ["a", "b", "c"]

    def test_iter_sources_rejects_unknown_format(self):
        with pytest.raises(ValueError, match="Unknown source format"):
            list(iter_sources(["x"], "tar"))
