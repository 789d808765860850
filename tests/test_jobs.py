import pytest

from convertd.jobs import ConversionJob, JobRegistry, JobStatus


def _enqueue(registry, item_id):
    return registry.enqueue(item_id, f"/media/{item_id}.mkv", f"{item_id}.mkv", f"/cache/{item_id}.mp4")


def test_enqueue_and_exists():
    registry = JobRegistry()
    job = _enqueue(registry, 1)
    assert job.status == JobStatus.QUEUED
    assert registry.exists(1)
    assert not registry.exists(2)
    assert registry.pending_ids() == [1]


def test_enqueue_twice_is_rejected():
    registry = JobRegistry()
    _enqueue(registry, 1)
    with pytest.raises(ValueError):
        _enqueue(registry, 1)
    assert registry.pending_ids() == [1]


def test_pending_is_fifo_and_activate_moves_to_active():
    registry = JobRegistry()
    for item_id in (3, 1, 2):
        _enqueue(registry, item_id)

    first = registry.pop_pending()
    assert first == 3
    job = registry.activate(first)
    assert job.status == JobStatus.CONVERTING
    assert job.started_at is not None
    assert registry.pending_ids() == [1, 2]
    assert registry.active_jobs() == [job]
    assert registry.exists(3)


def test_activate_unknown_or_active_returns_none():
    registry = JobRegistry()
    assert registry.activate(9) is None
    _enqueue(registry, 9)
    registry.activate(9)
    assert registry.activate(9) is None


def test_update_and_remove():
    registry = JobRegistry()
    _enqueue(registry, 5)
    registry.update(5, progress=42)
    assert registry.get(5).progress == 42
    with pytest.raises(AttributeError):
        registry.update(5, bogus=True)
    assert registry.update(6, progress=1) is None

    removed = registry.remove(5)
    assert removed.item_id == 5
    assert not registry.exists(5)
    assert registry.pending_ids() == []


def test_terminal_job_does_not_block_a_new_one():
    registry = JobRegistry()
    _enqueue(registry, 7)
    registry.activate(7)
    registry.update(7, status=JobStatus.FAILED, error="boom")
    assert not registry.exists(7)
    assert [j.item_id for j in registry.visible_jobs()] == [7]

    job = _enqueue(registry, 7)
    assert job.error is None
    assert registry.get(7) is job
    assert registry.pending_ids() == [7]


def test_discard_pending_only_touches_queued_jobs():
    registry = JobRegistry()
    _enqueue(registry, 1)
    _enqueue(registry, 2)
    registry.activate(registry.pop_pending())
    assert not registry.discard_pending(1)
    assert registry.discard_pending(2)
    assert registry.pending_ids() == []
    assert registry.get(2) is None


def test_to_dict_strips_runtime_handles():
    job = ConversionJob(item_id=1, file_name="a.mkv", source_path="/a.mkv", output_path="/c/1.mp4")
    job.process = object()
    job.temp_path = "/c/1.abc.partial.mp4"
    data = job.to_dict()
    assert data["status"] == "queued"
    assert "process" not in data
    assert "temp_path" not in data
    assert data["started_at"] is None
