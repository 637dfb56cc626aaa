#!/usr/bin/env python3
"""macpackager - package a native executable as a macOS .app and .dmg.

This module turns a compiled executable (by default a raylib game built
from ``src/main.c``) into a distributable application:

1. Resolve configuration from the environment, a TOML file and defaults
2. Build the executable with clang if it is missing
3. Recreate the ``<app_name>.app`` bundle tree
4. Copy the executable and optional icon into the bundle
5. Render ``Contents/Info.plist`` from a placeholder template
6. Optionally codesign the bundle
7. Create ``<app_name>-<version>.dmg`` with hdiutil
8. Print the (manual) notarization steps

Every external tool is reached through ``PlatformTools`` so the pipeline
itself can run anywhere and be tested with fakes.

Usage (CLI):
    # Package with defaults (raylib-game.app, raylib-game-1.0.dmg)
    macpackager

    # Override through the environment
    APP_NAME=MyGame VERSION=2.0 macpackager
    CODESIGN_ID="Developer ID Application: Jane Doe (ABCDE12345)" macpackager

Usage (API):
    from macpackager import PackagerConfig, Packager, package_app

    dmg = package_app()

    config = PackagerConfig.from_env({"APP_NAME": "MyGame"})
    Packager(config).process()
"""

import argparse
import datetime
import logging
import os
import plistlib
import re
import shutil
import stat
import struct
import subprocess
import sys
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from xml.parsers.expat import ExpatError
from xml.sax.saxutils import escape

from dotenv import load_dotenv
from macholib.mach_o import CPU_TYPE_NAMES
from macholib.MachO import MachO

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_APP_NAME = "APP_NAME"
ENV_EXECUTABLE = "EXECUTABLE"
ENV_BUNDLE_ID = "BUNDLE_ID"
ENV_VERSION = "VERSION"
ENV_ICON = "ICON"
ENV_CODESIGN_ID = "CODESIGN_ID"

# Defaults used when neither the environment nor a config file sets a value
DEFAULT_APP_NAME = "raylib-game"
DEFAULT_EXECUTABLE = "src/main"
DEFAULT_BUNDLE_ID = "com.example.raylibgame"
DEFAULT_VERSION = "1.0"
DEFAULT_TEMPLATE = "bundle/Info.plist.template"

# Bundle extension and disk image format
BUNDLE_EXT = ".app"
DMG_FORMAT = "UDZO"

# Ad-hoc signing identity accepted by codesign
ADHOC_IDENTITY = "-"

# Placeholder tokens recognised in the Info.plist template
PLACEHOLDER_APP_NAME = "__APP_NAME__"
PLACEHOLDER_BUNDLE_ID = "__BUNDLE_IDENTIFIER__"
PLACEHOLDER_VERSION = "__VERSION__"
PLACEHOLDER_ICON_FILE = "__ICON_FILE__"
PLACEHOLDERS = (
    PLACEHOLDER_APP_NAME,
    PLACEHOLDER_BUNDLE_ID,
    PLACEHOLDER_VERSION,
    PLACEHOLDER_ICON_FILE,
)

# Native build defaults (raylib + Cocoa frameworks)
DEFAULT_COMPILER = "clang"
DEFAULT_SOURCE = "src/main.c"
DEFAULT_OPTIMIZATION = "-O2"
DEFAULT_INCLUDE_DIRS = ("./include",)
DEFAULT_LIBRARY_DIRS = ("./lib",)
DEFAULT_LIBRARIES = ("raylib",)
DEFAULT_FRAMEWORKS = (
    "CoreVideo",
    "IOKit",
    "Cocoa",
    "CoreFoundation",
    "AppKit",
)

# Config file names searched in the packaging root
CONFIG_FILE_NAMES = (".macpackager.toml", "macpackager.toml")

INFO_PLIST_TMPL = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleDevelopmentRegion</key>
    <string>en</string>
    <key>CFBundleExecutable</key>
    <string>__APP_NAME__</string>
    <key>CFBundleIconFile</key>
    <string>__ICON_FILE__</string>
    <key>CFBundleIdentifier</key>
    <string>__BUNDLE_IDENTIFIER__</string>
    <key>CFBundleInfoDictionaryVersion</key>
    <string>6.0</string>
    <key>CFBundleName</key>
    <string>__APP_NAME__</string>
    <key>CFBundlePackageType</key>
    <string>APPL</string>
    <key>CFBundleShortVersionString</key>
    <string>__VERSION__</string>
    <key>CFBundleVersion</key>
    <string>__VERSION__</string>
    <key>LSMinimumSystemVersion</key>
    <string>10.13</string>
    <key>NSHighResolutionCapable</key>
    <true/>
    <key>NSPrincipalClass</key>
    <string>NSApplication</string>
</dict>
</plist>
"""

NOTARIZATION_NOTES = """\
Next steps (optional):
- To distribute outside the Mac App Store, codesign with a Developer ID
  and notarize with Apple. Example flow with notarytool (Xcode 13+):

  # Upload for notarization
  xcrun notarytool submit "{dmg}" --apple-id "YOUR_APPLE_ID" --team-id "TEAMID" --password "APP_SPECIFIC_PASSWORD"
  # or use an API key:
  xcrun notarytool submit "{dmg}" --key /path/AuthKey.p8 --key-id KEYID --issuer ISSUERID

  # Wait for notarization to finish, then staple the ticket
  xcrun stapler staple "{bundle}"
"""

# ----------------------------------------------------------------------------
# Configuration file support


def find_config_file(root: Path) -> Path | None:
    """Return the first config file found in root, if any."""
    for name in CONFIG_FILE_NAMES:
        path = root / name
        if path.is_file():
            return path
    return None


def load_config(
    config_path: Path | None = None, root: Path | None = None
) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided (must exist)
    2. .macpackager.toml in root
    3. macpackager.toml in root

    Args:
        config_path: Optional explicit path to config file
        root: Directory searched when no explicit path is given
            (default: current directory)

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If an explicit file is missing or any file
            found is not valid TOML

    Example .macpackager.toml:
        [package]
        app_name = "MyGame"
        bundle_id = "com.example.mygame"
        version = "2.0"
        icon = "assets/MyGame.icns"

        [build]
        source = "src/game.c"
        frameworks = ["Cocoa", "IOKit"]
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path is not None:
        path: Path | None = Path(config_path)
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
    else:
        path = find_config_file(root or Path.cwd())
        if path is None:
            return {}

    try:
        with open(path, "rb") as f:
            data: dict[str, object] = tomllib.load(f)
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}") from e
    return data


def get_config_value(
    config: Mapping[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    raise ConfigurationError(
        f"Config value {section}.{key} must be a string, got {value!r}"
    )


def get_config_list(
    config: Mapping[str, object],
    section: str,
    key: str,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    """Get a list-of-strings value from config with section.key lookup."""
    section_config = config.get(section, {})
    if not isinstance(section_config, dict) or key not in section_config:
        return default
    value = section_config[key]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ConfigurationError(
        f"Config value {section}.{key} must be a list of strings, got {value!r}"
    )


# ----------------------------------------------------------------------------
# Error handling


class PackagerError(Exception):
    """Base exception class for macpackager errors."""


class CommandError(PackagerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(PackagerError):
    """Exception raised when configuration is invalid."""


class ValidationError(PackagerError):
    """Exception raised when validation fails."""


class TemplateMissingError(PackagerError):
    """Exception raised when the Info.plist template does not exist."""


class FileError(PackagerError):
    """Exception raised when a file operation fails."""


class StageError(PackagerError):
    """A pipeline stage failed because its external tool failed.

    Carries the tool's return code (used as the process exit status) and
    its captured output.
    """

    def __init__(
        self, message: str, returncode: int = 1, output: str | None = None
    ):
        self.returncode = returncode
        self.output = output
        super().__init__(message)

    @classmethod
    def from_command(cls, message: str, error: CommandError) -> "StageError":
        return cls(f"{message}: {error}", error.returncode, error.output)


class BuildError(StageError):
    """Exception raised when compiling the executable fails."""


class CodesignError(StageError):
    """Exception raised when codesigning fails."""


class PackagingError(StageError):
    """Exception raised when DMG creation fails."""


# ----------------------------------------------------------------------------
# Validation

# Mach-O magic numbers for binary detection
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}

MAX_IDENTITY_LENGTH = 200


def is_executable_file(path: Pathlike) -> bool:
    """Return True if path is a regular file with execute permission."""
    path = Path(path)
    return path.is_file() and os.access(path, os.X_OK)


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file starts with a Mach-O magic number.

    Args:
        path: Path to the file to check

    Returns:
        True if the file is a valid Mach-O binary, False otherwise
    """
    path = Path(path)
    if not path.is_file():
        return False
    try:
        with open(path, "rb") as f:
            magic = f.read(4)
        return magic in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


def validate_signing_identity(identity: str) -> None:
    """Validate a codesign identity string.

    Raises:
        ValidationError: If the identity is blank, too long or contains
            control characters
    """
    if identity == ADHOC_IDENTITY:
        return
    if not identity.strip():
        raise ValidationError("Signing identity cannot be blank")
    if len(identity) > MAX_IDENTITY_LENGTH:
        raise ValidationError(
            f"Signing identity is too long (max {MAX_IDENTITY_LENGTH} "
            f"characters): '{identity}'"
        )
    if any(unicodedata.category(c) == "Cc" for c in identity):
        raise ValidationError(
            f"Signing identity contains control characters: {identity!r}"
        )


def validate_name(label: str, value: str) -> None:
    """Validate a value that becomes part of an output file name."""
    if not value.strip():
        raise ValidationError(f"{label} cannot be blank")
    if "/" in value or "\0" in value or value in (".", ".."):
        raise ValidationError(f"{label} is not a valid file name: '{value}'")


def check_placeholders(label: str, value: str) -> None:
    """Reject values that would inject a template placeholder."""
    for token in PLACEHOLDERS:
        if token in value:
            raise ValidationError(
                f"{label} must not contain the placeholder {token}: '{value}'"
            )


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Logging formatter with elapsed time and optional color."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    plain_fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"

    level_colors = {
        logging.DEBUG: color.grey,
        logging.INFO: color.green,
        logging.WARNING: color.yellow,
        logging.ERROR: color.red,
        logging.CRITICAL: color.bold_red,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color_fmt(self, levelno: int) -> str:
        c = self.color
        level_color = self.level_colors.get(levelno, c.grey)
        return (
            f"{c.white}%(delta)s{c.reset} - "
            f"{level_color}%(levelname)s{c.reset} - "
            f"{c.white}%(name)s.%(funcName)s{c.reset} - "
            f"{c.grey}%(message)s{c.reset}"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if self.use_color:
            log_fmt = self._color_fmt(record.levelno)
        else:
            log_fmt = self.plain_fmt
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = elapsed.strftime("%H:%M:%S")
        return logging.Formatter(log_fmt).format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the command line tool.

    Args:
        debug: Whether to enable debug logging (shows executed commands)
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    cwd: Pathlike | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False, so arguments containing spaces or shell
    metacharacters are passed through unchanged.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        cwd: Working directory for the command

    Returns:
        The command stdout output

    Raises:
        CommandError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            capture_output=True,
            cwd=cwd,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except FileNotFoundError as e:
        # 127 mirrors the shell's "command not found" status
        raise CommandError(cmd_str, 127, str(e)) from e


# ----------------------------------------------------------------------------
# Binary inspection


def get_binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the architectures of a Mach-O binary using macholib.

    Args:
        binary_path: Path to the binary file

    Returns:
        List of architecture strings (e.g., ["x86_64", "arm64"]).
        Empty list if not a Mach-O binary.
    """
    path = Path(binary_path)
    if not is_valid_macho(path):
        return []
    try:
        macho = MachO(str(path))
    except (ValueError, struct.error):
        return []
    return [
        CPU_TYPE_NAMES.get(h.header.cputype, str(h.header.cputype)).lower()
        for h in macho.headers
    ]


# ----------------------------------------------------------------------------
# Configuration


@dataclass(frozen=True)
class BuildSettings:
    """How to compile the executable when it is missing."""

    compiler: str = DEFAULT_COMPILER
    source: str = DEFAULT_SOURCE
    optimization: str = DEFAULT_OPTIMIZATION
    include_dirs: tuple[str, ...] = DEFAULT_INCLUDE_DIRS
    library_dirs: tuple[str, ...] = DEFAULT_LIBRARY_DIRS
    libraries: tuple[str, ...] = DEFAULT_LIBRARIES
    frameworks: tuple[str, ...] = DEFAULT_FRAMEWORKS

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> "BuildSettings":
        return cls(
            compiler=get_config_value(config, "build", "compiler")
            or DEFAULT_COMPILER,
            source=get_config_value(config, "build", "source")
            or DEFAULT_SOURCE,
            optimization=get_config_value(config, "build", "optimization")
            or DEFAULT_OPTIMIZATION,
            include_dirs=get_config_list(
                config, "build", "include_dirs", DEFAULT_INCLUDE_DIRS
            ),
            library_dirs=get_config_list(
                config, "build", "library_dirs", DEFAULT_LIBRARY_DIRS
            ),
            libraries=get_config_list(
                config, "build", "libraries", DEFAULT_LIBRARIES
            ),
            frameworks=get_config_list(
                config, "build", "frameworks", DEFAULT_FRAMEWORKS
            ),
        )

    def command(self, output: Pathlike) -> list[str]:
        """Return the compiler command line producing output."""
        cmd = [self.compiler]
        if self.optimization:
            cmd.append(self.optimization)
        cmd.extend(f"-I{d}" for d in self.include_dirs)
        cmd.extend(f"-L{d}" for d in self.library_dirs)
        cmd.extend([self.source, "-o", str(output)])
        cmd.extend(f"-l{lib}" for lib in self.libraries)
        for framework in self.frameworks:
            cmd.extend(["-framework", framework])
        return cmd


@dataclass(frozen=True)
class PackagerConfig:
    """Resolved settings for one packaging run.

    Relative paths are resolved against ``root`` by ``path()``.
    """

    app_name: str = DEFAULT_APP_NAME
    executable: str = DEFAULT_EXECUTABLE
    bundle_id: str = DEFAULT_BUNDLE_ID
    version: str = DEFAULT_VERSION
    icon: str | None = None
    codesign_id: str | None = None
    template: str = DEFAULT_TEMPLATE
    root: Path = field(default_factory=Path.cwd)
    build: BuildSettings = field(default_factory=BuildSettings)

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        config: Mapping[str, object] | None = None,
        root: Pathlike | None = None,
    ) -> "PackagerConfig":
        """Resolve settings from the environment, then config, then defaults.

        Empty environment variables count as unset.
        """
        if environ is None:
            environ = os.environ
        config = config or {}

        def resolve(env_name: str, key: str) -> str | None:
            return environ.get(env_name) or get_config_value(
                config, "package", key
            )

        return cls(
            app_name=resolve(ENV_APP_NAME, "app_name") or DEFAULT_APP_NAME,
            executable=resolve(ENV_EXECUTABLE, "executable")
            or DEFAULT_EXECUTABLE,
            bundle_id=resolve(ENV_BUNDLE_ID, "bundle_id") or DEFAULT_BUNDLE_ID,
            version=resolve(ENV_VERSION, "version") or DEFAULT_VERSION,
            icon=resolve(ENV_ICON, "icon"),
            codesign_id=resolve(ENV_CODESIGN_ID, "codesign_id"),
            template=get_config_value(config, "package", "template")
            or DEFAULT_TEMPLATE,
            root=Path(root) if root is not None else Path.cwd(),
            build=BuildSettings.from_config(config),
        )

    def validate(self) -> None:
        """Check values before anything touches the filesystem.

        Raises:
            ConfigurationError: If a value is unusable
        """
        try:
            validate_name("App name", self.app_name)
            validate_name("Version", self.version)
            check_placeholders("App name", self.app_name)
            check_placeholders("Bundle identifier", self.bundle_id)
            check_placeholders("Version", self.version)
            if self.icon:
                check_placeholders("Icon", Path(self.icon).name)
            if self.codesign_id:
                validate_signing_identity(self.codesign_id)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    def path(self, value: Pathlike) -> Path:
        """Resolve value against the packaging root."""
        return self.root / value

    @property
    def executable_path(self) -> Path:
        return self.path(self.executable)

    @property
    def icon_path(self) -> Path | None:
        return self.path(self.icon) if self.icon else None

    @property
    def template_path(self) -> Path:
        return self.path(self.template)

    @property
    def bundle(self) -> Path:
        return self.path(self.app_name + BUNDLE_EXT)

    @property
    def contents(self) -> Path:
        return self.bundle / "Contents"

    @property
    def macos(self) -> Path:
        return self.contents / "MacOS"

    @property
    def resources(self) -> Path:
        return self.contents / "Resources"

    @property
    def info_plist(self) -> Path:
        return self.contents / "Info.plist"

    @property
    def bundle_executable(self) -> Path:
        return self.macos / self.app_name

    @property
    def dmg_name(self) -> str:
        return f"{self.app_name}-{self.version}.dmg"

    @property
    def dmg(self) -> Path:
        return self.path(self.dmg_name)


# ----------------------------------------------------------------------------
# Template rendering


def render_template(text: str, values: Mapping[str, str]) -> str:
    """Replace every occurrence of each placeholder with its value.

    Values are XML-escaped since the template is a property list.
    Substitutions are applied in one pass so a value is never re-scanned.
    """
    if not values:
        return text
    pattern = re.compile("|".join(re.escape(token) for token in values))
    return pattern.sub(lambda m: escape(values[m.group(0)]), text)


def template_values(config: PackagerConfig, icon_file: str) -> dict[str, str]:
    """Map each placeholder token to its substituted value."""
    return {
        PLACEHOLDER_APP_NAME: config.app_name,
        PLACEHOLDER_BUNDLE_ID: config.bundle_id,
        PLACEHOLDER_VERSION: config.version,
        PLACEHOLDER_ICON_FILE: icon_file,
    }


def write_default_template(path: Pathlike) -> Path:
    """Write the built-in Info.plist template to path.

    Raises:
        ConfigurationError: If a file already exists at path
        FileError: If the template cannot be written
    """
    path = Path(path)
    if path.exists():
        raise ConfigurationError(f"Template already exists: {path}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(INFO_PLIST_TMPL, encoding="utf-8")
    except OSError as e:
        raise FileError(f"Cannot write template {path}: {e}") from e
    return path


# ----------------------------------------------------------------------------
# External tools


class Tools(Protocol):
    """The external-tool capability the Packager depends on."""

    def compile(self, settings: BuildSettings, output: Path, cwd: Path) -> None:
        ...

    def sign(self, identity: str, bundle: Path) -> None:
        ...

    def make_image(self, volume_name: str, source: Path, output: Path) -> None:
        ...


class PlatformTools:
    """Runs the macOS command line tools (clang, codesign, hdiutil).

    Args:
        dry_run: If True, log commands without executing them
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str], cwd: Pathlike | None = None) -> str:
        """Run a command and return its output."""
        return run_command(command, dry_run=self.dry_run, log=self.log, cwd=cwd)

    def compile(self, settings: BuildSettings, output: Path, cwd: Path) -> None:
        """Compile the executable to output, running in cwd."""
        self.run_command(settings.command(output), cwd=cwd)

    def sign(self, identity: str, bundle: Path) -> None:
        """Deep-sign the bundle, replacing existing signatures."""
        command = [
            "codesign",
            "--deep",
            "--force",
            "--verify",
            "--verbose",
            "--sign",
            identity,
            str(bundle),
        ]
        self.run_command(command)

    def make_image(self, volume_name: str, source: Path, output: Path) -> None:
        """Create a compressed, read-only disk image of source."""
        command = [
            "hdiutil",
            "create",
            "-volname",
            volume_name,
            "-srcfolder",
            str(source),
            "-ov",
            "-format",
            DMG_FORMAT,
            str(output),
        ]
        self.run_command(command)


# ----------------------------------------------------------------------------
# Packaging pipeline


class Packager:
    """Builds the .app bundle and .dmg for one configuration.

    Stages run in order and the first failure aborts the run. Artifacts
    from a previous run are removed before they are recreated; artifacts
    of a failed run are left in place.

    Args:
        config: Resolved settings for this run
        tools: External tool runner (default: PlatformTools)
        dry_run: If True, log actions without touching the filesystem
        notes: If True, print notarization instructions when done

    Example:
        packager = Packager(PackagerConfig.from_env())
        dmg_path = packager.process()
    """

    def __init__(
        self,
        config: PackagerConfig,
        tools: Tools | None = None,
        dry_run: bool = False,
        notes: bool = True,
    ) -> None:
        self.config = config
        self.dry_run = dry_run
        self.tools = tools if tools is not None else PlatformTools(dry_run)
        self.show_notes = notes
        self.icon_file = ""
        self.log = logging.getLogger(self.__class__.__name__)

    def check_template(self) -> Path:
        """Ensure the Info.plist template exists.

        Raises:
            TemplateMissingError: If the template file is absent
        """
        template = self.config.template_path
        if not template.is_file():
            raise TemplateMissingError(
                f"Info.plist template not found at {template}"
            )
        return template

    def ensure_executable(self) -> Path:
        """Build the executable if it is missing or not executable.

        Raises:
            BuildError: If the compiler fails or produces nothing
        """
        executable = self.config.executable_path
        if is_executable_file(executable):
            self.log.info("Using executable %s", executable)
        else:
            self.log.info(
                "Executable %s not found or not executable. Building release...",
                executable,
            )
            if not self.dry_run:
                executable.parent.mkdir(parents=True, exist_ok=True)
            try:
                self.tools.compile(
                    self.config.build, executable, self.config.root
                )
            except CommandError as e:
                raise BuildError.from_command("Build failed", e) from e
            if self.dry_run:
                return executable
            if not is_executable_file(executable):
                raise BuildError(
                    f"Build did not produce an executable at {executable}"
                )
            self.log.info("Build finished")

        archs = get_binary_architectures(executable)
        if archs:
            self.log.info("Executable architectures: %s", ", ".join(archs))
        elif not self.dry_run:
            self.log.warning("%s is not a Mach-O binary", executable)
        return executable

    def create_bundle_structure(self) -> None:
        """Remove any previous bundle and create the directory tree."""
        bundle = self.config.bundle
        if self.dry_run:
            self.log.info("[DRY RUN] Would recreate %s", bundle)
            return
        if bundle.exists() or bundle.is_symlink():
            self.log.info("Removing existing %s", bundle)
            if bundle.is_dir() and not bundle.is_symlink():
                shutil.rmtree(bundle)
            else:
                bundle.unlink()
        self.config.macos.mkdir(parents=True)
        self.config.resources.mkdir(parents=True)

    def copy_executable(self) -> Path:
        """Copy the executable into Contents/MacOS under the app name."""
        src = self.config.executable_path
        dest = self.config.bundle_executable
        if self.dry_run:
            self.log.info("[DRY RUN] Would copy %s to %s", src, dest)
            return dest
        shutil.copy(src, dest)
        oldmode = os.stat(dest).st_mode
        os.chmod(dest, oldmode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return dest

    def copy_icon(self) -> str:
        """Copy the icon into Contents/Resources if configured.

        Returns:
            The icon's base filename, or "" when there is no icon
        """
        icon = self.config.icon_path
        self.icon_file = ""
        if icon is None:
            return self.icon_file
        if not icon.is_file():
            self.log.warning("Icon %s not found, leaving icon unset", icon)
            return self.icon_file
        if self.dry_run:
            self.log.info("[DRY RUN] Would copy icon %s", icon)
        else:
            shutil.copy2(icon, self.config.resources / icon.name)
            self.log.info("Copied icon: %s", icon.name)
        self.icon_file = icon.name
        return self.icon_file

    def render_info_plist(self) -> Path:
        """Render Contents/Info.plist from the template."""
        template = self.check_template()
        dest = self.config.info_plist
        if self.dry_run:
            self.log.info("[DRY RUN] Would render %s to %s", template, dest)
            return dest
        content = render_template(
            template.read_text(encoding="utf-8"),
            template_values(self.config, self.icon_file),
        )
        dest.write_text(content, encoding="utf-8")
        try:
            plistlib.loads(content.encode("utf-8"))
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            self.log.warning("%s is not a valid property list: %s", dest, e)
        return dest

    def sign_bundle(self) -> bool:
        """Codesign the bundle if a signing identity is configured.

        Returns:
            True if the bundle was signed

        Raises:
            CodesignError: If codesign fails
        """
        identity = self.config.codesign_id
        if not identity:
            self.log.info("No signing identity set, bundle left unsigned")
            return False
        self.log.info("Codesigning with identity: %s", identity)
        try:
            self.tools.sign(identity, self.config.bundle)
        except CommandError as e:
            raise CodesignError.from_command("Codesign failed", e) from e
        self.log.info("Codesign done")
        return True

    def create_dmg(self) -> Path:
        """Create the DMG, replacing any existing file.

        Raises:
            PackagingError: If hdiutil fails or produces nothing
        """
        output = self.config.dmg
        if output.exists() and not self.dry_run:
            self.log.info("Removing existing %s", output)
            output.unlink()

        self.log.info("Creating DMG %s", output)
        try:
            self.tools.make_image(
                self.config.app_name, self.config.bundle, output
            )
        except CommandError as e:
            raise PackagingError.from_command("DMG creation failed", e) from e

        if not self.dry_run and not output.exists():
            raise PackagingError(f"Failed to create DMG: {output}")
        return output

    def print_notes(self) -> None:
        """Print the manual notarization steps."""
        print(
            NOTARIZATION_NOTES.format(
                dmg=self.config.dmg_name,
                bundle=self.config.app_name + BUNDLE_EXT,
            )
        )

    def _stage(self, name, func):
        """Run a stage, reporting filesystem errors as FileError."""
        try:
            return func()
        except OSError as e:
            raise FileError(f"{name} failed: {e}") from e

    def process(self) -> Path:
        """Run every stage and return the path of the DMG."""
        self.log.info(
            "Packaging %s -> %s", self.config.app_name, self.config.bundle
        )
        self.check_template()
        self._stage("build", self.ensure_executable)
        self._stage("bundle scaffolding", self.create_bundle_structure)
        self._stage("executable copy", self.copy_executable)
        self._stage("icon copy", self.copy_icon)
        self._stage("Info.plist rendering", self.render_info_plist)
        self.sign_bundle()
        dmg = self._stage("disk image", self.create_dmg)
        self.log.info("Packaging complete: %s", dmg)
        if self.show_notes:
            self.print_notes()
        return dmg


# ----------------------------------------------------------------------------
# Functional API


def package_app(
    root: Pathlike | None = None,
    environ: Mapping[str, str] | None = None,
    tools: Tools | None = None,
    dry_run: bool = False,
    *,
    config_path: Pathlike | None = None,
) -> Path:
    """Package the app found in root and return the DMG path.

    This is a convenience function that resolves a PackagerConfig and
    runs a Packager over it.

    Args:
        root: Packaging root (default: current directory)
        environ: Environment mapping (default: os.environ)
        tools: External tool runner (default: PlatformTools)
        dry_run: If True, only show what would be done
        config_path: Explicit TOML config file (keyword only)

    Example:
        dmg = package_app(environ={"APP_NAME": "MyGame", "VERSION": "2.0"})
    """
    root = Path(root) if root is not None else Path.cwd()
    config = load_config(
        Path(config_path) if config_path else None, root=root
    )
    packager_config = PackagerConfig.from_env(environ, config, root)
    return Packager(packager_config, tools=tools, dry_run=dry_run).process()


# ----------------------------------------------------------------------------
# Command-line interface


def _exit_status(error: PackagerError) -> int:
    if isinstance(error, StageError) and error.returncode:
        return error.returncode
    return 1


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macpackager."""
    parser = argparse.ArgumentParser(
        prog="macpackager",
        description=(
            "Package a native executable as a macOS .app bundle and DMG. "
            "Settings come from the environment: APP_NAME, EXECUTABLE, "
            "BUNDLE_ID, VERSION, ICON, CODESIGN_ID."
        ),
        epilog=(
            "Examples:\n"
            "  macpackager\n"
            "  APP_NAME=MyGame VERSION=2.0 macpackager\n"
            '  CODESIGN_ID="Developer ID Application: Jane Doe (ABCDE12345)" '
            "macpackager\n"
            "  macpackager --init-template\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="TOML config file (default: .macpackager.toml or macpackager.toml)",
    )
    parser.add_argument(
        "--init-template",
        action="store_true",
        help="write the default Info.plist template and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args(argv)

    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macpackager")

    root = Path.cwd()
    env_file = root / ".env"
    if env_file.is_file():
        load_dotenv(env_file)

    try:
        config = load_config(
            Path(args.config) if args.config else None, root=root
        )
        packager_config = PackagerConfig.from_env(os.environ, config, root)
        if args.init_template:
            path = write_default_template(packager_config.template_path)
            log.info("Wrote template: %s", path)
            return
        Packager(packager_config, dry_run=args.dry_run).process()
    except PackagerError as e:
        log.error("%s", e)
        output = getattr(e, "output", None)
        if output:
            log.error("%s", output.rstrip())
        sys.exit(_exit_status(e))
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
