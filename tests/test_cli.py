from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from jobtasks.main import jobtasks

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("CLI"),
]


def _invoke(runner: CliRunner, db_path: Path, *args: str):
    return runner.invoke(jobtasks, [*args[:2], "--db-path", str(db_path), *args[2:]])


def _json(runner: CliRunner, db_path: Path, *args: str) -> dict:
    result = _invoke(runner, db_path, *args, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_cli_create_add_list_and_move(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    job = _json(runner, db_path, "jobs", "create", "Move house")
    first = _json(runner, db_path, "tasks", "add", job["job_id"], "Pack boxes")
    second = _json(runner, db_path, "tasks", "add", job["job_id"], "Book van")
    child = _json(
        runner,
        db_path,
        "tasks",
        "add",
        job["job_id"],
        "Buy tape",
        "--parent-id",
        first["id"],
    )

    assert [first["position"], second["position"], child["position"]] == [10_000, 20_000, 10_000]

    moved = _json(runner, db_path, "tasks", "move", second["id"], "--top")
    assert moved["ok"] is True
    assert moved["position"] == 5_000
    assert moved["version"] == 1

    listing = _invoke(runner, db_path, "tasks", "list", job["job_id"])
    assert listing.exit_code == 0, listing.output
    lines = listing.output.splitlines()
    assert "version=0 tasks=3" in lines[0]
    assert lines[1].startswith("  - ") and "Book van" in lines[1]
    assert lines[2].startswith("  - ") and "Pack boxes" in lines[2]
    assert lines[3].startswith("    - ") and "Buy tape" in lines[3]


def test_cli_stale_version_prints_conflict_payload(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job = _json(runner, db_path, "jobs", "create", "Move house")
    task = _json(runner, db_path, "tasks", "add", job["job_id"], "Pack boxes")
    _json(runner, db_path, "tasks", "update", task["id"], "--title", "Pack all boxes")

    result = _invoke(
        runner,
        db_path,
        "tasks",
        "move",
        task["id"],
        "--position",
        "5",
        "--expected-version",
        "0",
    )

    assert result.exit_code == 1
    assert '"conflict": true' in result.output
    assert '"current_version": 1' in result.output


def test_cli_batch_from_file_and_rebalance(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job = _json(runner, db_path, "jobs", "create", "Move house")
    a = _json(runner, db_path, "tasks", "add", job["job_id"], "A", "--position", "3")
    b = _json(runner, db_path, "tasks", "add", job["job_id"], "B", "--position", "5")
    c = _json(runner, db_path, "tasks", "add", job["job_id"], "C", "--position", "3000000")

    batch_path = tmp_path / "batch.json"
    batch_path.write_text(
        json.dumps(
            {
                "mode": "relative",
                "job_version": 0,
                "items": [
                    {"id": c["id"], "position": "first"},
                    {"id": a["id"], "after_task_id": b["id"], "version": 0},
                ],
            },
        ),
        encoding="utf-8",
    )
    batch = _json(runner, db_path, "tasks", "batch", job["job_id"], str(batch_path))

    assert batch["job_version"] == 1
    assert [task["id"] for task in batch["tasks"]] == [c["id"], b["id"], a["id"]]

    rebalance = _json(
        runner,
        db_path,
        "tasks",
        "rebalance",
        job["job_id"],
        "--spacing",
        "10",
        "--force",
    )
    assert rebalance["results"][0]["rebalanced"] is True

    snapshot = _json(runner, db_path, "tasks", "list", job["job_id"])
    assert [task["position"] for task in snapshot["tasks"]] == [10, 20, 30]
    assert snapshot["job_version"] == 2


def test_cli_stale_batch_job_version_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job = _json(runner, db_path, "jobs", "create", "Move house")
    task = _json(runner, db_path, "tasks", "add", job["job_id"], "A")
    batch_path = tmp_path / "batch.json"
    batch_path.write_text(
        json.dumps({"job_version": 7, "items": [{"id": task["id"], "position": 1}]}),
        encoding="utf-8",
    )

    result = _invoke(runner, db_path, "tasks", "batch", job["job_id"], str(batch_path))

    assert result.exit_code == 1
    assert '"entity_type": "job"' in result.output
    listing = _json(runner, db_path, "tasks", "list", job["job_id"])
    assert listing["tasks"][0]["position"] == 10_000


def test_cli_delete_parent_with_children_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job = _json(runner, db_path, "jobs", "create", "Move house")
    parent = _json(runner, db_path, "tasks", "add", job["job_id"], "Parent")
    _json(runner, db_path, "tasks", "add", job["job_id"], "Child", "--parent-id", parent["id"])

    result = _invoke(runner, db_path, "tasks", "delete", parent["id"])

    assert result.exit_code == 1
    assert "has_live_children" in result.output


def test_cli_history_and_job_show(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("JOBTASKS_ACTOR_ID", "robot")
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job = _json(runner, db_path, "jobs", "create", "Move house")
    task = _json(runner, db_path, "tasks", "add", job["job_id"], "Pack")
    _json(runner, db_path, "tasks", "move", task["id"], "--position", "42", "--actor", "alice")

    history = _json(runner, db_path, "tasks", "history", task["id"])
    shown = _invoke(runner, db_path, "jobs", "show", job["job_id"])

    assert [(event["event_type"], event["actor_id"]) for event in history["events"]] == [
        ("created", "robot"),
        ("reordered", "alice"),
    ]
    assert shown.exit_code == 0, shown.output
    assert "Title: Move house" in shown.output
    assert "Tasks: 1" in shown.output


def test_cli_rejects_conflicting_placement_flags(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    job = _json(runner, db_path, "jobs", "create", "Move house")
    task = _json(runner, db_path, "tasks", "add", job["job_id"], "Pack")

    result = _invoke(runner, db_path, "tasks", "move", task["id"], "--top", "--bottom")

    assert result.exit_code == 1
    assert "Choose one of" in result.output
