from __future__ import annotations

import json
from pathlib import Path

import pytest

from script_conveyor.cli.main import main


@pytest.fixture
def workdir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    for name in ("OPENAI_API_KEY", "DEEPSEEK_API_KEY", "SCRIPT_CONVEYOR_CONFIG", "SCRIPT_CONVEYOR_AGENT_BACKEND"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_run_once_prints_generated_scripts(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    items = workdir / "items.json"
    items.write_text(
        json.dumps(
            {
                "items": [
                    {"id": "a", "title": "Bridge reopens after repairs", "score": 90},
                    {"id": "b", "title": "Unscored rumour"},
                ]
            }
        )
    )

    main(["--agents", "dummy", "run-once", "--items", str(items), "--user", "u1"])

    output = json.loads(capsys.readouterr().out)
    assert output["trigger"]["code"] == "started"
    (entry,) = output["scripts"]
    assert entry["script"]["content_item_id"] == "a"
    assert entry["script"]["status"] == "approved"
    assert len(entry["iterations"]) == 2


def test_run_once_exits_nonzero_without_eligible_items(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    items = workdir / "items.json"
    items.write_text(json.dumps([{"id": "a", "title": "Too weak", "score": 10}]))

    with pytest.raises(SystemExit) as excinfo:
        main(["--agents", "dummy", "run-once", "--items", str(items)])

    assert excinfo.value.code == 1
    assert json.loads(capsys.readouterr().out)["trigger"]["code"] == "no_items"


def test_missing_items_file(workdir: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--agents", "dummy", "run-once", "--items", str(workdir / "missing.json")])
