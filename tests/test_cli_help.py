from typer.testing import CliRunner

from nxdeploy.main import app


def test_nxdeploy_help():
    """nxdeploy --help should display every command and exit cleanly."""

    runner = CliRunner()
    result = runner.invoke(app, ["--help"])

    assert result.exit_code == 0
    output = result.stdout
    assert "Usage:" in output
    for command in ("build", "switch-remote", "switch-local", "check", "checks", "status", "generate-config"):
        assert command in output


def test_switch_remote_help_lists_options():
    result = CliRunner().invoke(app, ["switch-remote", "--help"])
    assert result.exit_code == 0
    for option in ("--ignore-checks", "--ignore", "--ignore-file", "--reboot"):
        assert option in result.stdout
