from contextlib import contextmanager

import pond.migrations.cli as cli


class EngineDatabase:
    def __init__(self, engine):
        self.engine = engine

    @contextmanager
    def connection(self):
        with self.engine.connect() as conn:
            yield conn


def _write_migrations(directory):
    (directory / "001_create_log.sql").write_text(
        "-- up\nCREATE TABLE log (step INTEGER)\n-- down\nDROP TABLE log\n"
    )
    (directory / "002_seed_log.sql").write_text(
        "-- up\nINSERT INTO log (step) VALUES (2)\n-- down\nDELETE FROM log\n"
    )


def _patch_db(monkeypatch, engine):
    monkeypatch.setattr(cli, "init_db", lambda: EngineDatabase(engine))
    monkeypatch.setattr(cli, "close_db", lambda: None)


def test_up_status_and_down(monkeypatch, engine, tmp_path, capsys):
    migrations_dir = tmp_path / "sql"
    migrations_dir.mkdir()
    _write_migrations(migrations_dir)
    _patch_db(monkeypatch, engine)

    assert cli.main(["--dir", str(migrations_dir), "up"]) == 0
    assert "Applied 2 migration(s): [1, 2]" in capsys.readouterr().out

    assert cli.main(["--dir", str(migrations_dir), "status"]) == 0
    status = capsys.readouterr().out
    assert "Current version: 2" in status
    assert "0002 seed log [applied]" in status

    assert cli.main(["--dir", str(migrations_dir), "down", "--target", "1"]) == 0
    assert "Rolled back 1 migration(s): [2]" in capsys.readouterr().out


def test_configuration_errors_exit_non_zero(monkeypatch, engine, tmp_path):
    migrations_dir = tmp_path / "sql"
    migrations_dir.mkdir()
    (migrations_dir / "001_only_down.down.sql").write_text("DROP TABLE log")
    _patch_db(monkeypatch, engine)

    assert cli.main(["--dir", str(migrations_dir), "up"]) == 2
