"""Entry point of ``cargo nds``: run cargo for the DS target, then post-process."""

import os
import subprocess
import sys
from collections.abc import Iterable, Iterator

from ndscargo.command import (
    CargoCmd,
    Input,
    MessageFormatError,
    Run,
    Test,
    UsageError,
    parse_args,
)
from ndscargo.config import ConfigError
from ndscargo.graph import GraphError
from ndscargo.project import ManifestError, blocksds_root
from ndscargo.scaffold import TARGET_JSON_NAME
from ndscargo.toolchain import (
    Command,
    ToolchainError,
    cargo,
    check_rust_version,
    parse_messages,
    print_command,
)


def make_cargo_command(input: Input, message_format: str | None) -> Command:
    """The cargo invocation for the parsed command line.

    Commands that compile code get the DS target, ``build-std`` and a JSON
    message format; run and test commands with a custom runner forward the
    executable's arguments after ``--``.
    """
    cargo_cmd = input.cmd
    rustflags = f"-C link-args=-specs={blocksds_root()}/sys/crts/ds_arm9.specs"

    command = cargo(input.config)
    command.args.append(cargo_cmd.subcommand_name())
    command.env["RUSTFLAGS"] = rustflags

    if cargo_cmd.should_compile():
        command.args.extend(
            [
                "--target",
                TARGET_JSON_NAME,
                "-Z",
                "build-std=core,alloc",
                "--message-format",
                message_format or CargoCmd.DEFAULT_MESSAGE_FORMAT,
            ]
        )

    if isinstance(cargo_cmd, Test):
        # RUSTDOCFLAGS is ignored unless --doc is passed, so it is always set.
        command.env["RUSTDOCFLAGS"] = (
            os.environ.get("RUSTDOCFLAGS", "") + cargo_cmd.rustdocflags()
        )

    command.args.extend(cargo_cmd.cargo_args())

    run = None
    if isinstance(cargo_cmd, Run):
        run = cargo_cmd
    elif isinstance(cargo_cmd, Test):
        run = cargo_cmd.run_args
    if run is not None and run.use_custom_runner():
        command.args.append("--")
        command.args.extend(run.build_args.passthrough.exe_args())

    return command


def _environment(command: Command) -> dict[str, str]:
    env = dict(os.environ)
    for key, value in command.env.items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
    return env


def _lines(stream: Iterable[bytes], tee: bool) -> Iterator[bytes]:
    for raw in stream:
        if tee:
            sys.stdout.write(raw.decode("utf-8", errors="replace"))
            sys.stdout.flush()
        yield raw


def run_cargo(input: Input, message_format: str | None) -> tuple[int, list]:
    """Run cargo and return its exit status with the messages it printed.

    Output is echoed to standard output when the user chose a message format,
    and for documentation tests, whose compile errors go to standard output.
    """
    command = make_cargo_command(input, message_format)
    if input.verbose:
        print_command(command)

    cmd = input.cmd
    tee = message_format is not None or (isinstance(cmd, Test) and cmd.doc)

    try:
        process = subprocess.Popen(
            command.argv(),
            stdout=subprocess.PIPE,
            env=_environment(command),
        )
    except OSError as exc:
        raise ToolchainError(f"failed to run `{command.program}`: {exc}") from exc

    with process:
        messages = list(parse_messages(_lines(process.stdout, tee)))
        returncode = process.wait()
    return returncode, messages


def _fail(message: str, code: int = 1) -> int:
    print(message, file=sys.stderr)
    return code


def main(argv=None) -> int:
    """Run ``cargo nds`` with the given arguments (``sys.argv[1:]`` by default)."""
    if argv is None:
        argv = sys.argv[1:]

    try:
        check_rust_version()
    except ToolchainError as exc:
        return _fail(str(exc), exc.returncode)

    try:
        input = parse_args(argv)
    except UsageError as exc:
        if exc.exit_code == 0:
            print(str(exc))
            return 0
        return _fail(str(exc), exc.exit_code)

    try:
        message_format = input.cmd.extract_message_format()
    except MessageFormatError as exc:
        return _fail(str(exc))

    try:
        status, messages = run_cargo(input, message_format)
    except ToolchainError as exc:
        return _fail(str(exc), exc.returncode)

    if status != 0:
        return status if status > 0 else 1

    try:
        input.cmd.run_callback(messages)
    except ToolchainError as exc:
        return _fail(str(exc), exc.returncode)
    except (ManifestError, GraphError, ConfigError, OSError) as exc:
        return _fail(str(exc))
    return 0