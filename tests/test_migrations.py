import argparse
from pathlib import Path
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect
from erp_sync.infrastructure.db import Base
from erp_sync.models import tables  # noqa: F401

ROOT = Path(__file__).resolve().parents[1]


def _alembic_config(url):
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    cfg.cmd_opts = argparse.Namespace(x=[f"url={url}"])
    return cfg


def test_upgrade_creates_every_model_table_and_downgrade_drops_them(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrate.db'}"
    cfg = _alembic_config(url)
    command.upgrade(cfg, "head")

    engine = create_engine(url)
    tables_after_upgrade = set(inspect(engine).get_table_names())
    assert set(Base.metadata.tables) <= tables_after_upgrade
    indexes = {ix["name"] for ix in inspect(engine).get_indexes("sync_jobs")}
    assert "ix_sync_job_source_status" in indexes

    command.downgrade(cfg, "base")
    assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    engine.dispose()
