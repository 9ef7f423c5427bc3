from __future__ import annotations

import os

# Settings() is built at import time; give it a throwaway database before any narrator import.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENSURE_EXTERNAL_DEPS_ON_STARTUP", "0")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "1")
