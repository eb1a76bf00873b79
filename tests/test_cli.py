import json

from typer.testing import CliRunner

from devrig.cli.main import app

runner = CliRunner()


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("start", "build", "clean"):
        assert command in result.output


def test_clean_keeps_git_metadata(project):
    output = project / "build"
    (output / ".git").mkdir(parents=True)
    (output / "stale.js").write_text("old")

    result = runner.invoke(app, ["clean", "--root", str(project)])

    assert result.exit_code == 0
    assert [path.name for path in output.iterdir()] == [".git"]
    assert "Removed 1 entries" in result.output


def test_clean_without_output_dir_succeeds(project):
    result = runner.invoke(app, ["clean", f"--root={project}"])
    assert result.exit_code == 0


def test_clean_fails_when_output_is_a_file(project):
    (project / "build").write_text("not a directory")

    result = runner.invoke(app, ["clean", "--root", str(project)])

    assert result.exit_code == 1
    assert "Clean failed" in result.output


def test_build_writes_client_and_server_output(project):
    result = runner.invoke(app, ["build", "--root", str(project)])

    assert result.exit_code == 0
    assert (project / "build" / "public" / "assets" / "client.js").exists()
    assert (project / "build" / "server" / "server.py").exists()
    manifest = json.loads((project / "build" / "assets.json").read_text())
    assert manifest["client"]["js"] == "/assets/client.js"
    assert "Compiling 'client'" in result.output
    assert "Finished 'server' compilation" in result.output


def test_release_build_hashes_bundle_names(project):
    result = runner.invoke(app, ["build", "--root", str(project), "--release"])

    assert result.exit_code == 0
    manifest = json.loads((project / "build" / "assets.json").read_text())
    bundle = manifest["client"]["js"]
    assert bundle != "/assets/client.js"
    assert (project / "build" / "public" / bundle.lstrip("/")).exists()
    assert "map" not in manifest["client"]


def test_build_reports_compile_errors(project):
    (project / "src" / "views.py").write_text("def render(path:\n")

    result = runner.invoke(app, ["build", "--root", str(project)])

    assert result.exit_code == 1
    assert "Build failed: Failed to compile 'server'" in result.output


def test_unknown_option_is_rejected(project):
    result = runner.invoke(app, ["build", "--root", str(project), "--fast"])
    assert result.exit_code != 0


def test_start_rejects_invalid_port(project):
    result = runner.invoke(app, ["start", "--root", str(project), "--port", "http"])
    assert result.exit_code != 0


def test_start_exits_with_failure_on_startup_error(project):
    (project / "devrig.yaml").write_text("build:\n  output_dir: src/out\n")

    result = runner.invoke(app, ["start", "--root", str(project), "--silent"])

    assert result.exit_code == 1
    assert "Dev server failed" in result.output
