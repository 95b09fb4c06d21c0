from __future__ import annotations

from alembic import command
from alembic.config import Config

ALEMBIC_INI = "alembic.ini"


def run_upgrade_head(ini_path: str = ALEMBIC_INI) -> None:
    command.upgrade(Config(ini_path), "head")


if __name__ == "__main__":
    run_upgrade_head()
