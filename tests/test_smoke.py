def test_import_app(monkeypatch):
    # Minimal env for Settings() to load during import.
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("MINIO_ENDPOINT", "localhost:9000")
    monkeypatch.setenv("ENSURE_EXTERNAL_DEPS_ON_STARTUP", "0")

    import narrator.main  # noqa: F401
    import narrator.tasks.offline_tasks  # noqa: F401
