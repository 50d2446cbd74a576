from typer.testing import CliRunner
from helmsman.cli import app
from helmsman import __version__

runner = CliRunner()

def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"HELMSMAN v{__version__}" in result.stdout


def test_init_then_read_views(tmp_path):
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0, result.stdout

    gov = tmp_path / ".helmsman"
    for name in ("config.json", "state.json", "tasks.json"):
        assert (gov / name).exists()
    assert ".helmsman/logs/" in (tmp_path / ".gitignore").read_text()

    result = runner.invoke(app, ["tasks", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "Initial System Setup" in result.stdout

    result = runner.invoke(app, ["status", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "Governance" in result.stdout

    result = runner.invoke(app, ["anchors", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "No anchors yet." in result.stdout

    result = runner.invoke(app, ["delegations", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "No delegations recorded." in result.stdout


def test_init_keeps_existing_gitignore_entries(tmp_path):
    (tmp_path / ".gitignore").write_text("node_modules/\n")
    runner.invoke(app, ["init", str(tmp_path)])
    runner.invoke(app, ["init", str(tmp_path)])

    content = (tmp_path / ".gitignore").read_text()
    assert content.startswith("node_modules/")
    assert content.count(".helmsman/logs/") == 1


def test_status_requires_init(tmp_path):
    result = runner.invoke(app, ["status", "--repo", str(tmp_path)])
    assert result.exit_code == 1
    assert "No .helmsman/" in result.stdout
    assert not (tmp_path / ".helmsman").exists()
