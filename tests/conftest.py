import pytest
import pytest_asyncio

from convertd.config import EngineConfig
from convertd.engine import ConversionEngine
from convertd.library import MediaLibrary
from helpers import FAKE_FFMPEG, EventRecorder

_FAKE_VARS = (
    "FAKE_FFMPEG_DURATION",
    "FAKE_FFMPEG_TIMES",
    "FAKE_FFMPEG_DELAY",
    "FAKE_FFMPEG_HANG",
    "FAKE_FFMPEG_EXIT",
    "FAKE_FFMPEG_NO_OUTPUT",
    "FAKE_FFMPEG_ARGS_LOG",
)


@pytest.fixture(autouse=True)
def fake_ffmpeg_env(monkeypatch):
    for name in _FAKE_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FAKE_FFMPEG_DELAY", "0.02")


@pytest.fixture()
def library(tmp_path):
    lib = MediaLibrary(tmp_path / "library.db")
    lib.ensure_schema()
    return lib


@pytest.fixture()
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture()
def add_media(library, media_dir):
    """Create a source file on disk and register it in the library."""
    def _add(name: str, *, video_codec="hevc", audio_codec="eac3", duration=120.0, converted_path=None,
             create_file=True) -> int:
        source = media_dir / name
        if create_file:
            source.write_bytes(b"source video " + name.encode())
        return library.add_item(
            str(source),
            duration_seconds=duration,
            video_codec=video_codec,
            audio_codec=audio_codec,
            converted_path=converted_path,
        )
    return _add


@pytest.fixture()
def engine_config(tmp_path):
    return EngineConfig(cache_dir=tmp_path / "cache", ffmpeg=list(FAKE_FFMPEG), finished_job_ttl=30)


@pytest_asyncio.fixture
async def engine(library, engine_config):
    eng = ConversionEngine(library, engine_config)
    eng.startup()
    yield eng
    await eng.shutdown()


@pytest.fixture()
def recorder(engine):
    return EventRecorder(engine.events)
