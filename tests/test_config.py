import pytest

from delivery_queue.config import Settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "DATABASE_URL", "APP_POOL_MIN", "APP_POOL_MAX", "QUEUE_MAX_ATTEMPTS",
        "QUEUE_LOCK_TIMEOUT_MS", "QUEUE_STATEMENT_TIMEOUT_MS", "QUEUE_LOCK_KEY",
        "EVENT_WORKERS", "LOG_LEVEL", "LOG_JSON",
    ):
        monkeypatch.delenv(name, raising=False)
    # keep a developer's .env out of the test
    monkeypatch.setattr("delivery_queue.config.load_dotenv", lambda *a, **k: False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.from_env()
    assert settings.database_url is None
    assert settings.max_attempts == 3
    assert settings.pool_min == 1 and settings.pool_max == 10
    assert settings.log_level == "INFO"
    assert settings.log_json is False


def test_reads_environment(clean_env):
    clean_env.setenv("DATABASE_URL", "postgresql://localhost/queue")
    clean_env.setenv("QUEUE_MAX_ATTEMPTS", "2")
    clean_env.setenv("LOG_JSON", "true")
    clean_env.setenv("LOG_LEVEL", "debug")
    settings = Settings.from_env()
    assert settings.database_url == "postgresql://localhost/queue"
    assert settings.max_attempts == 2
    assert settings.log_json is True
    assert settings.log_level == "DEBUG"


def test_rejects_non_integer(clean_env):
    clean_env.setenv("QUEUE_LOCK_TIMEOUT_MS", "soon")
    with pytest.raises(ValueError, match="QUEUE_LOCK_TIMEOUT_MS"):
        Settings.from_env()


def test_rejects_zero_attempts(clean_env):
    clean_env.setenv("QUEUE_MAX_ATTEMPTS", "0")
    with pytest.raises(ValueError, match="QUEUE_MAX_ATTEMPTS"):
        Settings.from_env()


def test_rejects_inverted_pool_sizes():
    with pytest.raises(ValueError, match="APP_POOL_MIN"):
        Settings(pool_min=5, pool_max=2)
