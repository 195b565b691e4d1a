# hostforge/core/logging.py
import os
import logging
import threading
from datetime import datetime

LOG_DIR = os.environ.get("HOSTFORGE_LOG_DIR", "logs")

logger = logging.getLogger("hostforge")

_lock = threading.Lock()


def log(scope: str, msg: str, level: str = "info"):
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    line = f"[{ts}] [{scope}] [{level.upper()}] {msg}"
    print(line, flush=True)
    logger.log(getattr(logging, level.upper(), logging.INFO), msg, extra={"scope": scope})

    # Try to write to logs/{scope}.log
    try:
        with _lock:
            os.makedirs(LOG_DIR, exist_ok=True)
            with open(os.path.join(LOG_DIR, f"{scope}.log"), "a", encoding="utf-8") as f:
                f.write(line + "\n")
    except OSError:
        pass


def read_log(scope: str, lines: int = 200):
    p = os.path.join(LOG_DIR, f"{scope}.log")
    if not os.path.exists(p):
        return []
    with open(p, "r", encoding="utf-8") as f:
        all_lines = f.readlines()
    lines = max(1, min(int(lines or 200), 2000))
    return all_lines[-lines:]
