from typer.testing import CliRunner

from refinery import __version__
from refinery.cli import app
from refinery.config_loader import load_config
from refinery.storage import Database

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"REFINERY v{__version__}" in result.stdout


def test_refine_then_status(tmp_path, monkeypatch):
    monkeypatch.setenv("REFINERY_DATA_PATH", str(tmp_path))

    result = runner.invoke(app, ["refine", "svc-a", "--intent", "improve error handling"])
    assert result.exit_code == 0, result.output
    assert "waiting_agent" in result.output

    pipelines = Database(load_config().data_path)["pipelines"].list()
    assert len(pipelines) == 1
    pipeline_id = pipelines[0]["pipeline_id"]

    status = runner.invoke(app, ["status", pipeline_id])
    assert status.exit_code == 0, status.output
    assert "research_findings" in status.output


def test_next_unknown_pipeline_fails(tmp_path, monkeypatch):
    monkeypatch.setenv("REFINERY_DATA_PATH", str(tmp_path))
    result = runner.invoke(app, ["next", "pipe-missing"])
    assert result.exit_code == 1
    assert "refinery status" in result.output


def test_approval_requires_acknowledgements(tmp_path, monkeypatch):
    monkeypatch.setenv("REFINERY_DATA_PATH", str(tmp_path))
    result = runner.invoke(app, ["approve", "pipeline", "pipe-1", "--by", "alice", "--no-rollback-ack"])
    assert result.exit_code == 1

    ok = runner.invoke(app, ["approve", "pipeline", "pipe-1", "--by", "alice"])
    assert ok.exit_code == 0, ok.output


def test_audit_verify(tmp_path, monkeypatch):
    monkeypatch.setenv("REFINERY_DATA_PATH", str(tmp_path))
    runner.invoke(app, ["register", "svc-a", "--autonomy", "auto_merge"])
    result = runner.invoke(app, ["audit", "--verify"])
    assert result.exit_code == 0, result.output
    assert "intact" in result.output


def test_ingest_rejects_bad_findings(tmp_path, monkeypatch):
    monkeypatch.setenv("REFINERY_DATA_PATH", str(tmp_path / "data"))
    bad = tmp_path / "bad.json"
    bad.write_text('{"findings": [{"claim": ""}]}')
    result = runner.invoke(app, ["ingest", "svc-a", "--perspective", "security", "--findings", str(bad)])
    assert result.exit_code == 1
    assert "missing claim" in result.output
