"""Block until redis and minio accept connections (docker-compose entrypoint helper)."""

import json
import os
import socket
import time
import urllib.request

TIMEOUT_S = int(os.getenv("TIMEOUT_S", "120"))
REDIS_ADDR = (os.getenv("REDIS_HOST", "redis"), int(os.getenv("REDIS_PORT", "6379")))
MINIO_HEALTH_URL = os.getenv("MINIO_URL", "http://minio:9000").rstrip("/") + "/minio/health/live"


def redis_up() -> bool:
    try:
        with socket.create_connection(REDIS_ADDR, timeout=2):
            return True
    except OSError:
        return False


def minio_up() -> bool:
    try:
        with urllib.request.urlopen(MINIO_HEALTH_URL, timeout=2) as resp:
            return resp.status == 200
    except Exception:
        return False


CHECKS = {"redis": redis_up, "minio": minio_up}


def main() -> int:
    deadline = time.monotonic() + TIMEOUT_S
    status = {name: False for name in CHECKS}
    while time.monotonic() < deadline:
        status = {name: check() for name, check in CHECKS.items()}
        if all(status.values()):
            break
        time.sleep(2)
    ready = all(status.values())
    print(json.dumps({"ready": ready, **status}))
    return 0 if ready else 1


if __name__ == "__main__":
    raise SystemExit(main())
