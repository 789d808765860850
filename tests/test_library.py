import sqlite3

from convertd.library import MediaLibrary


def test_add_and_get_item(library, media_dir):
    item_id = library.add_item(str(media_dir / "Movie.mkv"), duration_seconds=90, video_codec="HEVC", audio_codec="EAC3")
    item = library.get_item(item_id)
    assert item.file_name == "Movie.mkv"
    assert item.duration_seconds == 90
    assert item.video_codec == "hevc"
    assert item.audio_codec == "eac3"
    assert item.converted_path is None
    assert item.needs_conversion
    assert library.get_item(9999) is None


def test_list_incompatible_without_converted_output(library, media_dir, tmp_path):
    existing = tmp_path / "done.mp4"
    existing.write_bytes(b"x")
    a = library.add_item(str(media_dir / "a.mkv"), video_codec="hevc", audio_codec="aac")
    library.add_item(str(media_dir / "b.mp4"), video_codec="h264", audio_codec="aac")
    library.add_item(str(media_dir / "c.mkv"), video_codec="h264", audio_codec="dts", converted_path=str(existing))
    d = library.add_item(str(media_dir / "d.mkv"), video_codec="h264", audio_codec="dts",
                         converted_path=str(tmp_path / "gone.mp4"))
    library.add_item(str(media_dir / "e.mkv"), video_codec="unknown", audio_codec="unknown")

    assert [i.id for i in library.list_incompatible()] == [a, 3, d]
    assert [i.id for i in library.list_incompatible_without_converted_output()] == [a, d]


def test_converted_path_bookkeeping(library, media_dir):
    item_id = library.add_item(str(media_dir / "a.mkv"))
    assert library.count_converted() == 0
    library.set_converted_path(item_id, "/cache/1.mp4")
    assert library.get_item(item_id).converted_path == "/cache/1.mp4"
    assert library.count_converted() == 1
    library.clear_converted_path_for("/cache/1.mp4")
    assert library.get_item(item_id).converted_path is None


def test_ensure_schema_adds_missing_converted_path_column(tmp_path):
    db_file = tmp_path / "old.db"
    conn = sqlite3.connect(db_file)
    conn.execute(
        "CREATE TABLE media (id INTEGER PRIMARY KEY AUTOINCREMENT, file_path TEXT UNIQUE NOT NULL, "
        "file_name TEXT NOT NULL, duration_seconds REAL DEFAULT 0, video_codec TEXT, audio_codec TEXT)"
    )
    conn.execute("INSERT INTO media (file_path, file_name) VALUES ('/m/a.mkv', 'a.mkv')")
    conn.commit()
    conn.close()

    library = MediaLibrary(db_file)
    library.ensure_schema()
    assert library.get_item(1).converted_path is None
    library.set_converted_path(1, "/cache/1.mp4")
    assert library.get_item(1).converted_path == "/cache/1.mp4"
