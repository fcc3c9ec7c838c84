import csv
import datetime as dt

import pytest

import tickr


@pytest.fixture(autouse=True)
def restore_logger():
    handlers = list(tickr.logger.handlers)
    level = tickr.logger.level
    yield
    for h in list(tickr.logger.handlers):
        tickr.logger.removeHandler(h)
        if h not in handlers:
            h.close()
    for h in handlers:
        tickr.logger.addHandler(h)
    tickr.logger.setLevel(level)


@pytest.fixture
def run_cli(tmp_path, temp_db_path):
    config = tmp_path / "missing.yaml"

    def _run(*args):
        tickr.main(["--config", str(config), "--db", str(temp_db_path), *args])

    return _run


@pytest.fixture
def open_db(temp_db_path):
    stores = []

    def _open():
        store = tickr.TickrDB(str(temp_db_path))
        stores.append(store)
        return store

    yield _open
    for store in stores:
        store.close()


def test_project_add_and_duplicate(run_cli, open_db, capsys):
    run_cli("project", "add", "Acme")
    run_cli("project", "add", "Acme")
    out = capsys.readouterr().out
    assert "Created project 'Acme'." in out
    assert "Project 'Acme' already exists." in out
    assert [p.name for p in open_db().list_projects()] == ["Acme"]


def test_task_add_with_interval_and_new_category(run_cli, open_db, capsys):
    run_cli("project", "add", "Acme")
    run_cli("task", "add", "Acme", "Design review",
            "-s", "2024-01-01T09:00:00+00:00", "-e", "2024-01-01T10:30:00+00:00", "-c", "Meetings")
    out = capsys.readouterr().out
    assert "Category 'Meetings' not found, creating it with a random color." in out

    store = open_db()
    (task,) = store.list_tasks()
    assert task.description == "Design review"
    category = store.get_category(task.category_id)
    assert category.name == "Meetings"
    assert category.color in tickr.CATEGORY_PALETTE
    (interval,) = task.intervals
    assert interval.end - interval.start == dt.timedelta(minutes=90)


def test_task_add_validation(run_cli, open_db, capsys):
    run_cli("task", "add", "Nope", "x")
    assert "Project 'Nope' not found" in capsys.readouterr().out
    run_cli("project", "add", "Acme")
    run_cli("task", "add", "Acme", "x", "-e", "2024-01-01T10:00:00+00:00")
    assert "End time requires a start time." in capsys.readouterr().out
    assert open_db().list_tasks() == []


def test_invalid_datetime_is_an_argument_error(run_cli):
    with pytest.raises(SystemExit) as exc:
        run_cli("task", "add", "Acme", "x", "-s", "yesterday")
    assert exc.value.code == 2


def test_task_switch_stops_running_task(run_cli, open_db, capsys):
    run_cli("project", "add", "Acme")
    run_cli("task", "add", "Acme", "one")
    run_cli("task", "add", "Acme", "two")
    run_cli("task", "start", "Acme", "one")
    run_cli("task", "switch", "Acme", "two")
    out = capsys.readouterr().out
    assert "Switching to task 'two'" in out
    assert "Stopping currently running task 'one'" in out

    store = open_db()
    one, two = store.list_tasks()
    assert store.running_task_ids() == [two.id]
    assert one.intervals[-1].end is not None


def test_task_switch_unknown_task(run_cli, capsys):
    run_cli("project", "add", "Acme")
    run_cli("task", "switch", "Acme", "ghost")
    assert "Task 'ghost' not found in project 'Acme'" in capsys.readouterr().out


def test_category_command(run_cli, open_db, capsys):
    run_cli("category", "Writing", "00aaff")
    run_cli("category", "Broken", "zzzzzz")
    run_cli("category", "Random")
    out = capsys.readouterr().out
    assert "Invalid color format" in out
    store = open_db()
    assert store.get_category_by_name("Writing").color == "#00AAFF"
    assert store.get_category_by_name("Broken") is None
    assert store.get_category_by_name("Random").color in tickr.CATEGORY_PALETTE


def test_export_writes_csv(run_cli, open_db, tmp_path, capsys):
    run_cli("project", "add", "Acme")
    run_cli("task", "add", "Acme", "early", "-s", "2024-01-01T09:00:00+00:00", "-e", "2024-01-01T10:00:00+00:00")
    run_cli("task", "add", "Acme", "late, with comma", "-s", "2024-02-01T09:00:00+00:00", "-e", "2024-02-01T09:00:30+00:00")
    run_cli("task", "add", "Acme", "open", "-s", "2024-03-01T09:00:00+00:00")
    out_path = tmp_path / "export.csv"

    run_cli("export", "-o", str(out_path), "-s", "2024-01-15T00:00:00+00:00")
    assert f"Exported 2 intervals to {out_path}" in capsys.readouterr().out

    with open(out_path, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == tickr.EXPORT_HEADER
    assert rows[1][:3] == ["Acme", "late, with comma", ""]
    assert rows[1][5] == "30"
    assert rows[2][1] == "open"
    assert rows[2][4] == "Running"


def test_export_rows_filters_by_end(db, clock):
    project = db.create_project("Acme")
    task = db.create_task(project.id, "t")
    start = clock() - dt.timedelta(days=2)
    db.add_interval(task.id, start, start + dt.timedelta(minutes=5))
    db.add_interval(task.id, clock() - dt.timedelta(minutes=1), None)
    rows = tickr.export_rows(db, end=clock() - dt.timedelta(days=1), now=clock())
    assert len(rows) == 1
    assert rows[0][5] == "300"


def test_invalid_config_exits_with_code_2(tmp_path, temp_db_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text("tick_seconds: -1\n", encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        tickr.main(["--config", str(config), "--db", str(temp_db_path), "project", "add", "x"])
    assert exc.value.code == 2
    assert "tick_seconds must be positive" in capsys.readouterr().err


def test_log_file_written_next_to_db(run_cli, temp_db_path):
    run_cli("--log-level", "INFO", "project", "add", "Acme")
    assert (temp_db_path.parent / "tickr.log").exists()


@pytest.fixture
def blocked_db_path(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    return blocker / "tickr.db"


def test_unopenable_db_falls_back_to_memory_for_ui(tmp_path, blocked_db_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text(f"state_path: {tmp_path / 'ui.json'}\n", encoding="utf-8")
    seen = {}

    def fake_run_ui(state, cfg):
        seen['status'] = state.status
        seen['project'] = state.store.create_project("Scratch")
        seen['projects'] = [p.name for p in state.store.list_projects()]

    monkeypatch.setattr(tickr, 'run_ui', fake_run_ui)
    tickr.main(["--config", str(config), "--db", str(blocked_db_path)])
    assert seen['status'].startswith("Could not open database, using a temporary in-memory store.")
    assert seen['projects'] == ["Scratch"]
    assert not blocked_db_path.exists()


def test_unopenable_db_fails_commands(tmp_path, blocked_db_path, capsys):
    with pytest.raises(SystemExit) as exc:
        tickr.main(["--config", str(tmp_path / "missing.yaml"), "--db", str(blocked_db_path),
                    "project", "add", "Acme"])
    assert exc.value.code == 1
    assert "Could not open database" in capsys.readouterr().err
