"""Tests for the command-line interface."""

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

import macpackager
from macpackager import CommandError, main, write_default_template

REPO_ROOT = Path(__file__).parent.parent

ENV_VARS = ["APP_NAME", "EXECUTABLE", "BUNDLE_ID", "VERSION", "ICON", "CODESIGN_ID"]


class FakePlatformTools:
    """Stand-in for PlatformTools as constructed by Packager."""

    fail = None
    returncode = 2
    instances: list = []

    def __init__(self, dry_run=False):
        self.dry_run = dry_run
        self.calls = []
        FakePlatformTools.instances.append(self)

    def compile(self, settings, output, cwd):
        self.calls.append("compile")
        if self.fail == "compile":
            raise CommandError("clang", self.returncode, "main.c:1: error")
        output.write_text("#!/bin/sh\n")
        output.chmod(0o755)

    def sign(self, identity, bundle):
        self.calls.append("sign")

    def make_image(self, volume_name, source, output):
        self.calls.append("make_image")
        if self.fail == "make_image":
            raise CommandError("hdiutil", self.returncode, "hdiutil: failed")
        output.write_text("dmg")


@pytest.fixture
def clean_env(monkeypatch):
    """Remove packaging variables, restoring them afterwards."""
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


@pytest.fixture
def workdir(tmp_path, clean_env):
    """Change into a project directory with a template and executable."""
    write_default_template(tmp_path / "bundle" / "Info.plist.template")
    exe = tmp_path / "src" / "main"
    exe.parent.mkdir()
    exe.write_text("#!/bin/sh\n")
    exe.chmod(0o755)
    clean_env.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def fake_tools(monkeypatch):
    """Replace PlatformTools with a recording fake."""
    FakePlatformTools.fail = None
    FakePlatformTools.returncode = 2
    FakePlatformTools.instances = []
    monkeypatch.setattr(macpackager, "PlatformTools", FakePlatformTools)
    return FakePlatformTools


class TestCLIHelp:
    """Tests for --help and --version."""

    def test_help(self):
        """Test that --help documents the environment variables."""
        result = subprocess.run(
            [sys.executable, "-m", "macpackager", "--help"],
            capture_output=True,
            text=True,
            cwd=REPO_ROOT,
        )
        assert result.returncode == 0
        assert "APP_NAME" in result.stdout
        assert "--dry-run" in result.stdout
        assert "--init-template" in result.stdout

    def test_version(self, capsys):
        """Test that --version prints the tool version."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert macpackager.__version__ in capsys.readouterr().out

    def test_unknown_flag(self):
        """Test that an unknown flag is a usage error."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--bogus"])
        assert excinfo.value.code == 2


class TestCLIRun:
    """Tests for running the pipeline from the command line."""

    def test_no_arguments_packages_defaults(self, workdir, fake_tools):
        """Test that a bare invocation produces the default artifacts."""
        main([])
        assert (workdir / "raylib-game.app" / "Contents" / "Info.plist").exists()
        assert (workdir / "raylib-game-1.0.dmg").exists()
        assert fake_tools.instances[0].calls == ["make_image"]

    def test_environment_overrides(self, workdir, fake_tools, monkeypatch):
        """Test that APP_NAME and VERSION name the outputs."""
        monkeypatch.setenv("APP_NAME", "Foo")
        monkeypatch.setenv("VERSION", "2.3")
        main([])
        assert (workdir / "Foo.app").is_dir()
        assert (workdir / "Foo-2.3.dmg").exists()

    def test_codesign_identity(self, workdir, fake_tools, monkeypatch):
        """Test that CODESIGN_ID enables signing."""
        monkeypatch.setenv("CODESIGN_ID", "-")
        main([])
        assert fake_tools.instances[0].calls == ["sign", "make_image"]

    def test_missing_template_exits_1(self, workdir, fake_tools):
        """Test that a missing template exits 1 with nothing created."""
        (workdir / "bundle" / "Info.plist.template").unlink()
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1
        assert not (workdir / "raylib-game.app").exists()
        assert not (workdir / "raylib-game-1.0.dmg").exists()

    def test_build_failure_exit_code(self, workdir, fake_tools, caplog):
        """Test that the compiler's exit status is propagated."""
        (workdir / "src" / "main").unlink()
        fake_tools.fail = "compile"
        fake_tools.returncode = 3
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 3
        assert "main.c:1: error" in caplog.text

    def test_packaging_failure_exit_code(self, workdir, fake_tools):
        """Test that the disk image tool's exit status is propagated."""
        fake_tools.fail = "make_image"
        fake_tools.returncode = 4
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 4

    def test_invalid_config_exits_1(self, workdir, fake_tools, monkeypatch):
        """Test that a configuration error exits 1."""
        monkeypatch.setenv("APP_NAME", "__APP_NAME__")
        with pytest.raises(SystemExit) as excinfo:
            main([])
        assert excinfo.value.code == 1

    def test_dry_run(self, workdir, fake_tools):
        """Test that --dry-run creates no artifacts."""
        main(["--dry-run"])
        assert fake_tools.instances[0].dry_run is True
        assert not (workdir / "raylib-game.app").exists()


class TestCLIConfig:
    """Tests for config file and .env handling."""

    def test_config_file(self, workdir, fake_tools):
        """Test that macpackager.toml is picked up from the directory."""
        (workdir / "macpackager.toml").write_text(
            '[package]\napp_name = "TomlGame"\nversion = "4.0"\n'
        )
        main([])
        assert (workdir / "TomlGame-4.0.dmg").exists()

    def test_explicit_config_missing(self, workdir, fake_tools):
        """Test that a missing --config file exits 1."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--config", "nope.toml"])
        assert excinfo.value.code == 1

    def test_dotenv_file(self, workdir, fake_tools):
        """Test that a .env file in the directory sets variables."""
        (workdir / ".env").write_text("APP_NAME=DotenvGame\n")
        main([])
        assert (workdir / "DotenvGame.app").is_dir()

    def test_dotenv_does_not_override(self, workdir, fake_tools, monkeypatch):
        """Test that real environment variables win over .env."""
        (workdir / ".env").write_text("APP_NAME=DotenvGame\n")
        monkeypatch.setenv("APP_NAME", "RealGame")
        main([])
        assert (workdir / "RealGame.app").is_dir()
        assert not (workdir / "DotenvGame.app").exists()


class TestCLIInitTemplate:
    """Tests for --init-template."""

    def test_writes_template(self, tmp_path, clean_env):
        """Test that the default template is written."""
        clean_env.chdir(tmp_path)
        main(["--init-template"])
        template = tmp_path / "bundle" / "Info.plist.template"
        assert "__APP_NAME__" in template.read_text()

    def test_existing_template_exits_1(self, workdir):
        """Test that an existing template is not overwritten."""
        with pytest.raises(SystemExit) as excinfo:
            main(["--init-template"])
        assert excinfo.value.code == 1

    def test_unwritable_location_exits_1(self, tmp_path, clean_env):
        """Test that a file in place of bundle/ exits 1."""
        (tmp_path / "bundle").write_text("not a directory")
        clean_env.chdir(tmp_path)
        with pytest.raises(SystemExit) as excinfo:
            main(["--init-template"])
        assert excinfo.value.code == 1
