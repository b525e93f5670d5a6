from __future__ import annotations

from pathlib import Path

from sqlmodel import SQLModel, create_engine

from pagerops.config import DB_PATH


def make_engine(path: Path | str = DB_PATH):
    return create_engine(
        f"sqlite:///{path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def init_db(engine) -> None:
    # Import registers the tables on SQLModel.metadata
    from pagerops import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
