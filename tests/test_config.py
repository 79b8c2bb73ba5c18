from pathlib import Path

import lms.config as config_module
from lms.config import DEFAULT_QUALITY_TIERS, AppConfig, get_max_chunk_bytes, load_config


def test_scratch_root_falls_back_when_preferred_is_unusable(tmp_path: Path) -> None:
    storage = tmp_path / "storage"
    storage.mkdir()

    preferred_scratch = tmp_path / "scratch"
    preferred_scratch.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lms.db",
            "scratch_root": "scratch",
        },
        base_path=tmp_path,
    )

    expected_fallback = (storage / "_scratch").resolve()
    assert config.scratch_root == expected_fallback
    assert config.assembly_root == (expected_fallback / "assembly").resolve()
    assert expected_fallback.is_dir()


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    preferred_storage = tmp_path / "storage"
    preferred_storage.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lms.db",
            "scratch_root": "storage/_scratch",
        },
        base_path=tmp_path,
    )

    expected_storage = (home_dir / ".lms" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert config.database_file == (expected_storage / "lms.db").resolve()
    assert config.upload_root == (expected_storage / "temp" / "uploads").resolve()
    assert expected_storage.exists()


def test_pipeline_settings_are_parsed_and_unknown_keys_kept(tmp_path: Path) -> None:
    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lms.db",
            "quality_tiers": ["360p", "720p"],
            "transcode_tries": 0,
            "worker_count": "4",
            "upload_session_ttl_hours": 2,
            "cdn_host": "media.example.org",
        },
        base_path=tmp_path,
    )

    assert config.quality_tiers == ("360p", "720p")
    assert config.transcode_tries == 1
    assert config.worker_count == 4
    assert config.upload_session_ttl_hours == 2.0
    assert config.extra == {"cdn_host": "media.example.org"}


def test_load_config_reads_default_file() -> None:
    config = load_config()

    assert config.quality_tiers == DEFAULT_QUALITY_TIERS
    assert config.transcode_tries == 3
    assert config.database_file.name == "lms.db"


def test_max_chunk_bytes_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("LMS_MAX_CHUNK_BYTES", "2048")
    assert get_max_chunk_bytes() == 2048

    monkeypatch.setenv("LMS_MAX_CHUNK_BYTES", "lots")
    assert get_max_chunk_bytes() == 64 * 1024 * 1024
