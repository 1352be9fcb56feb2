import json
import subprocess
from pathlib import Path
from unittest import mock

import pytest

from ndscargo.project import NDSConfig
from ndscargo.toolchain import (
    Command,
    CompilerArtifact,
    ToolchainError,
    build_nds,
    cargo,
    check_rust_version,
    find_sysroot,
    get_metadata,
    link,
    parse_messages,
    print_command,
)

DEFAULT_ICON = "/opt/wonderful/thirdparty/blocksds/core/sys/icon.bmp"


def _completed(stdout="", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


def _version_output(release, commit_date="2023-06-01"):
    return (
        f"rustc {release} (abcdef0 {commit_date})\n"
        "binary: rustc\n"
        "commit-hash: abcdef0\n"
        f"commit-date: {commit_date}\n"
        "host: x86_64-unknown-linux-gnu\n"
        f"release: {release}\n"
        "LLVM version: 16.0.5\n"
    )


def test_cargo_default_program(monkeypatch):
    monkeypatch.delenv("CARGO", raising=False)
    command = cargo(["build.jobs=1", "net.offline=true"])
    assert command.argv() == ["cargo", "--config=build.jobs=1", "--config=net.offline=true"]


def test_cargo_program_from_environment(monkeypatch):
    monkeypatch.setenv("CARGO", "/tools/cargo")
    assert cargo([]).argv() == ["/tools/cargo"]


def test_render_lists_environment_and_command():
    command = Command("cargo", ["build", "two words"], {"RUSTFLAGS": "-C x", "UNSET": None})
    lines = command.render().splitlines()
    assert lines[0] == "Running command:"
    assert lines[1] == "   RUSTFLAGS='-C x' \\"
    assert lines[2] == "   UNSET= \\"
    assert lines[3] == "   cargo build 'two words'"
    assert command.render().endswith("\n\n")


def test_print_command_writes_render_to_stderr(capsys):
    command = Command("ndstool", ["-c", "out.nds"])
    print_command(command)
    assert capsys.readouterr().err == command.render()


def test_parse_messages():
    artifact = {
        "reason": "compiler-artifact",
        "package_id": "game 0.1.0",
        "target": {"name": "game", "kind": ["bin"], "test": False},
        "executable": "/t/game.arm9.elf",
    }
    lines = [json.dumps(artifact) + "\n", '{"reason": "build-finished", "success": true}\n', "plain text\n"]
    messages = list(parse_messages(lines))
    assert messages[0] == CompilerArtifact("game 0.1.0", "game", ("bin",), False, "/t/game.arm9.elf")
    assert messages[1] == {"reason": "build-finished", "success": True}
    assert messages[2] == "plain text"


def test_parse_messages_accepts_bytes():
    messages = list(parse_messages([b"not json\n"]))
    assert messages == ["not json"]


def test_find_sysroot_from_environment(monkeypatch):
    monkeypatch.setenv("SYSROOT", "  /toolchains/nightly \n")
    assert find_sysroot() == Path("/toolchains/nightly")


def test_find_sysroot_from_rustc(monkeypatch):
    monkeypatch.delenv("SYSROOT", raising=False)
    monkeypatch.delenv("RUSTC", raising=False)
    result = subprocess.CompletedProcess(args=[], returncode=0, stdout=b"/sys/root\n")
    with mock.patch("subprocess.run", return_value=result) as run:
        assert find_sysroot() == Path("/sys/root")
    assert run.call_args.args[0] == ["rustc", "--print", "sysroot"]


def test_find_sysroot_missing_rustc(monkeypatch):
    monkeypatch.delenv("SYSROOT", raising=False)
    monkeypatch.setenv("RUSTC", "missing-rustc")
    with mock.patch("subprocess.run", side_effect=FileNotFoundError):
        with pytest.raises(ToolchainError, match="missing-rustc"):
            find_sysroot()


def test_check_rust_version_accepts_recent_nightly(monkeypatch):
    monkeypatch.delenv("RUSTC", raising=False)
    with mock.patch("subprocess.run", return_value=_completed(_version_output("1.72.0-nightly"))) as run:
        result = check_rust_version()
    assert result is None
    assert run.call_count == 1
    assert run.call_args.args[0] == ["rustc", "-vV"]


def test_check_rust_version_rejects_stable():
    with mock.patch("subprocess.run", return_value=_completed(_version_output("1.72.0"))):
        with pytest.raises(ToolchainError, match="requires a nightly rustc version"):
            check_rust_version()


def test_check_rust_version_rejects_old_commit():
    output = _version_output("1.72.0-nightly", commit_date="2023-01-01")
    with mock.patch("subprocess.run", return_value=_completed(output)):
        with pytest.raises(ToolchainError, match="2023-05-31"):
            check_rust_version()


def test_check_rust_version_rejects_old_version():
    with mock.patch("subprocess.run", return_value=_completed(_version_output("1.69.0-nightly"))):
        with pytest.raises(ToolchainError, match="rustup update nightly"):
            check_rust_version()


def test_check_rust_version_bad_commit_date():
    output = _version_output("1.72.0-nightly", commit_date="someday")
    with mock.patch("subprocess.run", return_value=_completed(output)):
        with pytest.raises(ToolchainError, match="commit date"):
            check_rust_version()


def _metadata(tmp_path, description=None, authors=()):
    package = {
        "id": "game 0.1.0",
        "name": "game",
        "authors": list(authors),
        "description": description,
        "manifest_path": str(tmp_path / "Cargo.toml"),
    }
    return json.dumps({"packages": [package]})


def _artifact(kind="bin", test=False, name="game", executable="/t/game.arm9.elf"):
    return CompilerArtifact("game 0.1.0", name, (kind,), test, executable)


def test_get_metadata(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BLOCKSDS", "/sdk")
    with mock.patch("subprocess.run", return_value=_completed(_metadata(tmp_path, authors=["Ann <ann@example.com>"]))):
        config = get_metadata(["text", _artifact()])
    assert config.name == "game"
    assert config.author == "Ann <ann@example.com>"
    assert config.description == "Homebrew Application"
    assert config.icon == "/sdk/sys/icon.bmp"
    assert config.target_path == Path("/t/game.arm9.elf")
    assert config.cargo_manifest_path == tmp_path / "Cargo.toml"


def test_get_metadata_defaults_and_local_icon(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "icon.bmp").write_bytes(b"")
    with mock.patch("subprocess.run", return_value=_completed(_metadata(tmp_path, description="A game"))):
        config = get_metadata([_artifact(kind="bin", test=True)])
    assert config.author == "Unspecified Author"
    assert config.description == "A game"
    assert config.icon == "./icon.bmp"
    assert config.name == "game tests"


def test_get_metadata_example_name(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BLOCKSDS", "/sdk")
    with mock.patch("subprocess.run", return_value=_completed(_metadata(tmp_path))):
        config = get_metadata([_artifact(kind="example", name="hello")])
    assert config.name == "hello - game example"


def test_get_metadata_uses_last_executable(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BLOCKSDS", "/sdk")
    messages = [_artifact(name="first", executable="/t/first.elf"), _artifact(name="second", executable="/t/second.elf"), _artifact(name="lib", executable=None)]
    with mock.patch("subprocess.run", return_value=_completed(_metadata(tmp_path))):
        config = get_metadata(messages)
    assert config.name == "second"
    assert config.target_path == Path("/t/second.elf")


def test_get_metadata_without_executable(tmp_path):
    with mock.patch("subprocess.run", return_value=_completed(_metadata(tmp_path))):
        with pytest.raises(ToolchainError, match="No executable found"):
            get_metadata([_artifact(executable=None), "text"])


def _project(tmp_path, monkeypatch):
    monkeypatch.setenv("BLOCKSDS", str(tmp_path / "sdk"))
    manifest = tmp_path / "Cargo.toml"
    manifest.write_text('[package]\nname = "game"\n')
    return NDSConfig(
        description="desc",
        author="me",
        target_path=tmp_path / "target" / "game.arm9.elf",
        cargo_manifest_path=manifest,
    )


def test_build_nds_arguments(tmp_path, monkeypatch):
    config = _project(tmp_path, monkeypatch)
    with mock.patch("subprocess.run", return_value=_completed()) as run:
        build_nds(config, False)
    assert run.call_args.args[0] == [
        "ndstool",
        "-c",
        str(config.path_nds()),
        "-9",
        str(config.path_arm9()),
        "-7",
        f"{tmp_path / 'sdk'}/sys/default_arm7/arm7.elf",
        "-b",
        DEFAULT_ICON,
        "game;desc;me",
    ]


def test_build_nds_with_romfs_and_banner(tmp_path, monkeypatch):
    config = _project(tmp_path, monkeypatch)
    (tmp_path / "romfs").mkdir()
    (tmp_path / "nds.toml").write_text('name = ["A", "B", "C"]\n')
    with mock.patch("subprocess.run", return_value=_completed()) as run:
        build_nds(config, True)
    argv = run.call_args.args[0]
    assert argv[-2:] == ["-d", str(tmp_path / "romfs")]
    assert argv[argv.index("-b") + 2] == "A;B;C"


def test_build_nds_missing_configured_romfs(tmp_path, monkeypatch):
    config = _project(tmp_path, monkeypatch)
    config.cargo_manifest_path.write_text('[package]\nname = "game"\n[package.metadata.nds]\nromfs = "assets"\n')
    with mock.patch("subprocess.run", return_value=_completed()) as run:
        with pytest.raises(ToolchainError, match="Could not find configured RomFS dir"):
            build_nds(config, False)
    assert run.call_count == 0


def test_build_nds_failure_status(tmp_path, monkeypatch):
    config = _project(tmp_path, monkeypatch)
    with mock.patch("subprocess.run", return_value=_completed(returncode=3)):
        with pytest.raises(ToolchainError) as info:
            build_nds(config, False)
    assert info.value.returncode == 3


def test_build_nds_missing_tool(tmp_path, monkeypatch):
    config = _project(tmp_path, monkeypatch)
    with mock.patch("subprocess.run", side_effect=FileNotFoundError):
        with pytest.raises(ToolchainError, match="ndstool"):
            build_nds(config, False)


def test_link_arguments(tmp_path):
    config = NDSConfig(target_path=tmp_path / "game.arm9.elf")
    with mock.patch("subprocess.run", return_value=_completed()) as run:
        link(config, ["-a", "192.0.2.1"], False)
    assert run.call_args.args[0] == ["dslink", "-a", "192.0.2.1", str(config.path_nds())]


def test_link_signal_maps_to_status_one(tmp_path):
    config = NDSConfig(target_path=tmp_path / "game.arm9.elf")
    with mock.patch("subprocess.run", return_value=_completed(returncode=-9)):
        with pytest.raises(ToolchainError) as info:
            link(config, [], False)
    assert info.value.returncode == 1