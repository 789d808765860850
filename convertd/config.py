"""
Settings persistence and the engine configuration derived from it.
"""

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("convertd.config")

DEFAULT_SETTINGS = {
    "max_concurrent": 1,
    "ffmpeg_path": "ffmpeg",
    "audio_codec": "aac",
    "audio_bitrate": "192k",
    "audio_channels": 2,
    "finished_job_ttl": 30,
    "watchdog_multiplier": 0,  # 0 disables the per-job timeout
    "watchdog_min_seconds": 600,
    "cache_max_size_gb": 0,  # 0 disables size-based eviction
    "cache_max_age_days": 0,  # 0 disables age-based eviction
}


def cache_path(config_path: str) -> Path:
    return Path(os.environ.get("CACHE_PATH") or Path(config_path) / "converted_cache")


def db_path(config_path: str) -> Path:
    return Path(os.environ.get("DB_PATH") or Path(config_path) / "library.db")


def load_settings(config_path: str) -> dict:
    settings = dict(DEFAULT_SETTINGS)
    settings_file = Path(config_path) / "settings.json"
    if settings_file.exists():
        try:
            with open(settings_file) as f:
                settings.update(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {settings_file}, using defaults: {e}")
    return settings


def save_settings(config_path: str, settings: dict) -> None:
    settings_file = Path(config_path) / "settings.json"
    settings_file.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_file, "w") as f:
        json.dump(settings, f, indent=2)


@dataclass
class EngineConfig:
    cache_dir: Path
    ffmpeg: list[str] = field(default_factory=lambda: ["ffmpeg"])
    max_concurrent: int = 1
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"
    audio_channels: int = 2
    output_extension: str = "mp4"
    finished_job_ttl: float = 30.0
    watchdog_multiplier: float = 0.0
    watchdog_min_seconds: float = 600.0
    cache_max_bytes: int = 0
    cache_max_age_days: float = 0.0

    @classmethod
    def from_settings(cls, settings: dict, cache_dir: Path) -> "EngineConfig":
        return cls(
            cache_dir=Path(cache_dir),
            ffmpeg=shlex.split(settings.get("ffmpeg_path") or "ffmpeg"),
            max_concurrent=max(1, int(settings.get("max_concurrent", 1))),
            audio_codec=settings.get("audio_codec", "aac"),
            audio_bitrate=str(settings.get("audio_bitrate", "192k")),
            audio_channels=int(settings.get("audio_channels", 2)),
            finished_job_ttl=float(settings.get("finished_job_ttl", 30)),
            watchdog_multiplier=float(settings.get("watchdog_multiplier", 0)),
            watchdog_min_seconds=float(settings.get("watchdog_min_seconds", 600)),
            cache_max_bytes=int(float(settings.get("cache_max_size_gb", 0)) * 1024**3),
            cache_max_age_days=float(settings.get("cache_max_age_days", 0)),
        )
