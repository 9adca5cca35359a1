from __future__ import annotations

import os
import sys
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.claimdesk.db import build_engine, build_sessionmaker  # noqa: E402


def database_url(explicit: str | None = None) -> str:
    return (explicit or os.environ.get("DATABASE_URL") or "sqlite:///claimdesk.db").strip()


@contextmanager
def script_session(db_url: str) -> Generator[Session, None, None]:
    engine = build_engine(db_url)
    s: Session = build_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
