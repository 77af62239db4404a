"""Sync-folder scanner tests."""

import pytest

from pis_worker.errors import TransientStorageError
from pis_worker.scanner import AlbumScanner

ALBUM = "a1"


@pytest.fixture
def scanner(storage, records, queue) -> AlbumScanner:
    return AlbumScanner(storage, records, queue)


def raw_keys(storage) -> list[str]:
    return [k for k in storage.objects if k.startswith(f"raw/{ALBUM}/")]


class TestAlbumScanner:

    def test_imports_new_images(self, storage, records, queue, scanner):
        storage.objects[f"sync/{ALBUM}/IMG_1.jpg"] = b"one"
        storage.objects[f"sync/{ALBUM}/IMG_2.HEIC"] = b"two"
        storage.objects[f"sync/{ALBUM}/notes.txt"] = b"ignore me"

        result = scanner.scan(ALBUM)

        assert (result.found, result.added, result.skipped, result.failed) == (2, 2, 0, 0)
        assert len(raw_keys(storage)) == 2
        assert f"sync/{ALBUM}/IMG_1.jpg" not in storage.objects
        assert f"sync/{ALBUM}/notes.txt" in storage.objects

        photos = records.list_photos(album_id=ALBUM)
        assert sorted(p.filename for p in photos) == ["IMG_1.jpg", "IMG_2.HEIC"]
        assert all(p.status == "pending" for p in photos)
        assert all(p.original_key.startswith(f"raw/{ALBUM}/") for p in photos)
        heic = next(p for p in photos if p.filename == "IMG_2.HEIC")
        assert heic.original_key.endswith(".heic")
        assert heic.file_size == 3

        assert queue.live_job_ids() == {p.id for p in photos}

    def test_existing_filenames_are_skipped(self, storage, records, scanner):
        records.add_photo(id="old", album_id=ALBUM, original_key="raw/a1/old.jpg", filename="IMG_1.jpg")
        storage.objects[f"sync/{ALBUM}/IMG_1.jpg"] = b"dupe"

        result = scanner.scan(ALBUM)

        assert (result.found, result.added, result.skipped) == (1, 0, 1)
        assert f"sync/{ALBUM}/IMG_1.jpg" in storage.objects
        assert raw_keys(storage) == []

    def test_empty_folder(self, scanner):
        result = scanner.scan(ALBUM)
        assert (result.found, result.added, result.skipped, result.failed) == (0, 0, 0, 0)

    def test_record_failure_removes_copy(self, storage, records, queue, scanner):
        storage.objects[f"sync/{ALBUM}/IMG_1.jpg"] = b"one"
        records.fail_create = True

        result = scanner.scan(ALBUM)

        assert result.failed == 1
        assert raw_keys(storage) == []
        assert f"sync/{ALBUM}/IMG_1.jpg" in storage.objects
        assert queue.counts()["waiting"] == 0

    def test_copy_failure_is_counted(self, storage, records, scanner):
        storage.objects[f"sync/{ALBUM}/IMG_1.jpg"] = b"one"
        storage.objects[f"sync/{ALBUM}/IMG_2.jpg"] = b"two"
        storage.failing_keys.add(f"sync/{ALBUM}/IMG_1.jpg")

        result = scanner.scan(ALBUM)

        assert (result.added, result.failed) == (1, 1)
        assert [p.filename for p in records.list_photos(album_id=ALBUM)] == ["IMG_2.jpg"]

    def test_source_delete_failure_keeps_import(self, storage, records, scanner, monkeypatch):
        storage.objects[f"sync/{ALBUM}/IMG_1.jpg"] = b"one"

        def fail_delete(key):
            raise TransientStorageError(f"cannot delete {key}")

        monkeypatch.setattr(storage, "delete", fail_delete)

        result = scanner.scan(ALBUM)

        assert result.added == 1
        assert len(records.list_photos(album_id=ALBUM)) == 1
