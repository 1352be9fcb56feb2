"""Running the external tools: cargo, rustc, ndstool and dslink."""

import json
import os
import shlex
import subprocess
import sys
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from ndscargo.config import load_config
from ndscargo.project import (
    MINIMUM_COMMIT_DATE,
    CommitDate,
    NDSConfig,
    get_icon_path,
    get_name,
    get_romfs_path,
)

MINIMUM_RUSTC_VERSION = (1, 70, 0)
_TEST_KINDS = {"bin", "lib", "rlib", "dylib"}


class ToolchainError(Exception):
    """An external tool is missing, failed, or produced unusable output."""

    def __init__(self, message: str, returncode: int = 1):
        super().__init__(message)
        self.returncode = returncode


@dataclass
class Command:
    """A program with its arguments and environment overrides (None removes a variable)."""

    program: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str | None] = field(default_factory=dict)

    def argv(self) -> list[str]:
        """The full argument vector, program first."""
        return [self.program, *self.args]

    def render(self) -> str:
        """Shell-like description of the command, as printed in verbose mode."""
        lines = ["Running command:"]
        for key, value in sorted(self.env.items()):
            quoted = "" if value is None else shlex.quote(value)
            lines.append(f"   {key}={quoted} \\")
        lines.append(f"   {shlex.join(self.argv())}\n")
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class CompilerArtifact:
    """A ``compiler-artifact`` message from cargo's JSON output."""

    package_id: str
    target_name: str
    target_kind: tuple[str, ...] = ()
    target_test: bool = False
    executable: str | None = None


def cargo(config: Iterable[str]) -> Command:
    """A cargo command carrying the given ``--config`` overrides."""
    program = os.environ.get("CARGO", "cargo")
    return Command(program, [f"--config={entry}" for entry in config])


def print_command(command: Command) -> None:
    """Describe the command on standard error."""
    sys.stderr.write(command.render())
    sys.stderr.flush()


def _environ(command: Command) -> dict[str, str] | None:
    if not command.env:
        return None
    env = dict(os.environ)
    for key, value in command.env.items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
    return env


def _run_inherited(command: Command, spawn_error: str) -> None:
    try:
        completed = subprocess.run(command.argv(), env=_environ(command), check=False)
    except OSError as exc:
        raise ToolchainError(spawn_error) from exc
    if completed.returncode != 0:
        code = completed.returncode if completed.returncode > 0 else 1
        raise ToolchainError(
            f"`{command.program}` exited with status {completed.returncode}", code
        )


def parse_messages(lines: Iterable) -> Iterator:
    """Yield cargo messages: CompilerArtifact, other JSON objects as dicts, text as str."""
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        text = line.rstrip("\r\n")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            yield text
            continue
        if not isinstance(data, dict):
            yield text
        elif data.get("reason") == "compiler-artifact":
            target = data.get("target") or {}
            yield CompilerArtifact(
                package_id=data.get("package_id", ""),
                target_name=target.get("name", ""),
                target_kind=tuple(target.get("kind", ())),
                target_test=bool(target.get("test", False)),
                executable=data.get("executable"),
            )
        else:
            yield data


def find_sysroot() -> Path:
    """The sysroot of the current toolchain, from ``$SYSROOT`` or ``rustc``."""
    sysroot = os.environ.get("SYSROOT")
    if sysroot is None:
        rustc = os.environ.get("RUSTC", "rustc")
        try:
            output = subprocess.run(
                [rustc, "--print", "sysroot"], capture_output=True, check=False
            )
        except OSError as exc:
            raise ToolchainError(f"Failed to run `{rustc} -- print sysroot`") from exc
        try:
            sysroot = output.stdout.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ToolchainError(
                "Failed to parse sysroot path into a UTF-8 string"
            ) from exc
    return Path(sysroot.strip())


def _rustc_version_meta() -> dict[str, str]:
    rustc = os.environ.get("RUSTC", "rustc")
    try:
        output = subprocess.run(
            [rustc, "-vV"], capture_output=True, text=True, check=False
        )
    except OSError as exc:
        raise ToolchainError(f"Failed to run `{rustc} -vV`") from exc
    if output.returncode != 0:
        raise ToolchainError(f"`{rustc} -vV` exited with status {output.returncode}")
    fields = {}
    for line in output.stdout.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()
    if "release" not in fields:
        raise ToolchainError("could not read the rustc release from `rustc -vV`")
    return fields


def _channel(pre: str) -> str:
    if not pre:
        return "stable"
    name = pre.split(".")[0]
    if name in ("dev", "nightly", "beta"):
        return name
    raise ToolchainError(f"unknown rustc release channel `{pre}`")


def _version_triple(text: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in text.split("."))
    except ValueError as exc:
        raise ToolchainError(f"could not parse rustc version `{text}`") from exc


def check_rust_version() -> None:
    """Raise ToolchainError unless rustc is a recent enough nightly."""
    fields = _rustc_version_meta()
    release = fields["release"].partition("+")[0]
    version, _, pre = release.partition("-")

    if _channel(pre) in ("beta", "stable"):
        raise ToolchainError(
            "cargo nds requires a nightly rustc version.\n"
            "Please run `rustup override set nightly` to use nightly in the "
            "current directory, or use `cargo +nightly nds` to use it for a "
            "single invocation."
        )

    old_version = MINIMUM_RUSTC_VERSION > _version_triple(version)

    old_commit = False
    commit_date = fields.get("commit-date")
    if commit_date is not None and commit_date != "unknown":
        parsed = CommitDate.parse(commit_date)
        if parsed is None:
            raise ToolchainError("could not parse `rustc --version` commit date")
        old_commit = MINIMUM_COMMIT_DATE > parsed

    if old_version or old_commit:
        raise ToolchainError(
            f"cargo nds requires rustc nightly version >= {MINIMUM_COMMIT_DATE}\n"
            "Please run `rustup update nightly` to upgrade your nightly version"
        )


def _cargo_metadata() -> dict:
    program = os.environ.get("CARGO", "cargo")
    try:
        output = subprocess.run(
            [program, "metadata", "--format-version", "1", "--no-deps"],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ToolchainError("Failed to get cargo metadata") from exc
    if output.returncode != 0:
        raise ToolchainError("Failed to get cargo metadata")
    try:
        return json.loads(output.stdout)
    except json.JSONDecodeError as exc:
        raise ToolchainError("Failed to get cargo metadata") from exc


def get_metadata(messages: Iterable) -> NDSConfig:
    """Describe the last executable built, using cargo's package metadata."""
    metadata = _cargo_metadata()
    packages = {package["id"]: package for package in metadata.get("packages", [])}

    artifact = next(
        (
            message
            for message in reversed(list(messages))
            if isinstance(message, CompilerArtifact) and message.executable is not None
        ),
        None,
    )
    if artifact is None:
        raise ToolchainError("No executable found from build command output!")
    try:
        package = packages[artifact.package_id]
    except KeyError as exc:
        raise ToolchainError(
            f"package `{artifact.package_id}` is missing from cargo metadata"
        ) from exc

    icon = "./icon.bmp"
    if not Path(icon).exists():
        blocksds = os.environ.get("BLOCKSDS")
        if blocksds is None:
            raise ToolchainError("BLOCKSDS is not set and ./icon.bmp does not exist")
        icon = f"{blocksds}/sys/icon.bmp"

    kind = artifact.target_kind[0] if artifact.target_kind else ""
    if kind in _TEST_KINDS and artifact.target_test:
        name = f"{artifact.target_name} tests"
    elif kind == "example":
        name = f"{artifact.target_name} - {package['name']} example"
    else:
        name = artifact.target_name

    authors = package.get("authors") or []
    author = authors[0] if authors else "Unspecified Author"

    return NDSConfig(
        name=name,
        author=author,
        description=package.get("description") or "Homebrew Application",
        icon=icon,
        target_path=Path(artifact.executable),
        cargo_manifest_path=Path(package["manifest_path"]),
    )


def build_nds(config: NDSConfig, verbose: bool) -> None:
    """Package the built executables into a ``.nds`` ROM with ``ndstool``."""
    name, _ = get_name(config)
    settings = load_config(config.cargo_manifest_path)

    if settings.has_name():
        banner_text = settings.banner_text()
    else:
        banner_text = f"{name.name};{config.description};{config.author}"

    command = Command(
        "ndstool",
        [
            "-c",
            str(config.path_nds()),
            "-9",
            str(config.path_arm9()),
            "-7",
            str(config.path_arm7()),
            "-b",
            str(get_icon_path(config)),
            banner_text,
        ],
    )

    romfs_path, is_default_romfs = get_romfs_path(config)
    if romfs_path.is_dir():
        print(f"Adding RomFS from {romfs_path}", file=sys.stderr)
        command.args.extend(["-d", str(romfs_path)])
    elif not is_default_romfs:
        raise ToolchainError(f"Could not find configured RomFS dir: {romfs_path}")

    if verbose:
        print_command(command)

    _run_inherited(
        command,
        "ndstool command failed, most likely due to 'ndstool' not being in $PATH",
    )


def link(config: NDSConfig, dslink_args: Iterable[str], verbose: bool) -> None:
    """Send the ``.nds`` ROM to a device with ``dslink``."""
    command = Command("dslink", [*dslink_args, str(config.path_nds())])
    if verbose:
        print_command(command)
    _run_inherited(command, "dslink command failed, most likely due to 'dslink' not being in $PATH")