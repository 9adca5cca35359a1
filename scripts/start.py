#!/usr/bin/env python3
"""
Container entrypoint: run the release phase, then exec gunicorn.

Usage:
    python scripts/start.py

Environment:
    PORT              bind port (default 8080)
    WEB_CONCURRENCY   gunicorn workers (default 2)
    SKIP_RELEASE=1    skip migrations + seed (e.g. when a separate release job runs them)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = -1
    if value < lo or value > hi:
        print(f"ERROR: Invalid {name} value '{raw}'. Must be integer {lo}-{hi}.", flush=True)
        sys.exit(1)
    return value


def main() -> None:
    port = _int_env("PORT", 8080, lo=1, hi=65535)
    workers = _int_env("WEB_CONCURRENCY", 2, lo=1, hi=64)

    if (os.environ.get("SKIP_RELEASE") or "").strip() != "1":
        print("=== Running release phase ===", flush=True)
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"=== Starting gunicorn on 0.0.0.0:{port} ({workers} workers) ===", flush=True)
    # exec so gunicorn becomes PID 1 and receives signals directly
    os.execvp(
        "gunicorn",
        [
            "gunicorn",
            "app.wsgi:app",
            "--bind", f"0.0.0.0:{port}",
            "--workers", str(workers),
            "--timeout", "60",
            "--preload",
            "--access-logfile", "-",
            "--error-logfile", "-",
        ],
    )


if __name__ == "__main__":
    main()
