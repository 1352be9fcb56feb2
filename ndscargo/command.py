"""The ``cargo nds`` command line: subcommands, their cargo arguments and callbacks."""

import ipaddress
import os
import subprocess
import sys
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from ndscargo.project import NDSConfig, blocksds_root
from ndscargo.scaffold import TARGET_JSON_NAME, scaffold_project
from ndscargo.toolchain import build_nds, cargo, get_metadata, link, print_command

VERSION = "0.1.2"
HELP_FLAGS = ("-h", "--help")
VERSION_FLAGS = ("-V", "--version")

USAGE = "Usage: cargo nds [OPTIONS] <COMMAND>"

HELP = f"""Cargo wrapper for developing Nintendo DS homebrew apps

{USAGE}

Commands:
  build    Builds an executable suitable to run on a DS (nds)
  run      Builds an executable and sends it to a device with `dslink`
  test     Builds a test executable and sends it to a device with `dslink`
  new      Sets up a new cargo project suitable to run on a DS
  init     Sets up a cargo project in an existing directory for the DS
  COMMAND  Run any other `cargo` command with custom building tailored for the nds

Options:
  -v, --verbose          Print the exact commands being run
      --config <CONFIG>  Set cargo configuration on the command line
  -h, --help             Print help
  -V, --version          Print version

Run and test options:
  -a, --address <ADDRESS>  IP address of the device to send the executable to
  -0, --argv0 <ARGV0>      Set the 0th argument of the executable
  -s, --server             Start the dslink server after sending the executable
      --retries <RETRIES>  Number of tries when connecting to the device
      --no-run             (test) Do not send the built executable to the device
      --doc                (test) Build documentation tests instead of unit tests

All arguments after the first `--`, or starting with the first unrecognized
option, are passed through to `cargo` unmodified. Arguments after a second
`--` are passed to the executable being run.
"""

_RUNNER_CACHE: dict[tuple, bool] = {}


class UsageError(Exception):
    """The command line could not be parsed, or help/version was requested."""

    def __init__(self, message: str, exit_code: int = 2):
        super().__init__(message)
        self.exit_code = exit_code


class MessageFormatError(ValueError):
    """``--message-format`` was given a value that cannot be used."""


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


@dataclass
class RemainingArgs:
    """Arguments passed through to cargo, then (after ``--``) to the executable."""

    args: list[str] = field(default_factory=list)

    def cargo_args(self) -> list[str]:
        """The arguments meant for ``cargo``."""
        return self._split()[0]

    def exe_args(self) -> list[str]:
        """The arguments meant for the executable itself."""
        return self._split()[1]

    def _split(self) -> tuple[list[str], list[str]]:
        if "--" in self.args:
            split = self.args.index("--")
            return self.args[:split], self.args[split + 1 :]
        return list(self.args), []


def extract_message_format_from_args(cargo_args: list[str]) -> str | None:
    """Remove ``--message-format`` (and its value) from the list and return the format.

    Only JSON formats are accepted.
    """
    pos = next(
        (i for i, arg in enumerate(cargo_args) if arg.startswith("--message-format")),
        None,
    )
    if pos is None:
        return None

    arg = cargo_args.pop(pos)
    _, sep, value = arg.partition("=")
    if sep:
        message_format = value
    else:
        if pos >= len(cargo_args):
            raise MessageFormatError("error: `--message-format` requires a value")
        message_format = cargo_args.pop(pos)

    if not message_format.startswith("json"):
        raise MessageFormatError("error: non-JSON `message-format` is not supported")
    return message_format


class CargoCmd(ABC):
    """A ``cargo nds`` subcommand."""

    DEFAULT_MESSAGE_FORMAT = "json-render-diagnostics"

    @abstractmethod
    def cargo_args(self) -> list[str]:
        """The additional arguments given to the underlying cargo subcommand."""

    @abstractmethod
    def subcommand_name(self) -> str:
        """The cargo subcommand actually run for this command."""

    @abstractmethod
    def _message_args(self) -> list[str]:
        """The mutable argument list that may hold ``--message-format``."""

    def should_compile(self) -> bool:
        """Whether this command compiles code and needs the DS target environment."""
        return False

    def should_build_ndsx(self) -> bool:
        """Whether this command produces a ``.nds`` ROM."""
        return False

    def should_link_to_device(self) -> bool:
        """Whether the result is sent to a device with ``dslink``."""
        return False

    def _default_message_format(self) -> str | None:
        return None

    def extract_message_format(self) -> str | None:
        """Take ``--message-format`` out of the cargo arguments and return it."""
        message_format = extract_message_format_from_args(self._message_args())
        if message_format is not None:
            return message_format
        return self._default_message_format()

    def _callback(self, config: NDSConfig | None) -> None:
        return None

    def run_callback(self, messages: Iterable) -> None:
        """Run the post-cargo step for this command, given cargo's messages."""
        config = None
        if self.should_build_ndsx():
            _eprint("Getting metadata")
            config = get_metadata(messages)
        self._callback(config)


@dataclass
class Build(CargoCmd):
    """``cargo nds build``: build an executable and package it as a ROM."""

    verbose: bool = False
    passthrough: RemainingArgs = field(default_factory=RemainingArgs)

    def cargo_args(self) -> list[str]:
        return self.passthrough.cargo_args()

    def subcommand_name(self) -> str:
        return "build"

    def _message_args(self) -> list[str]:
        return self.passthrough.args

    def should_compile(self) -> bool:
        return True

    def should_build_ndsx(self) -> bool:
        return True

    def _callback(self, config: NDSConfig | None) -> None:
        if config is not None:
            _eprint(f"Building nds: {config.path_nds()}")
            build_nds(config, self.verbose)


@dataclass
class Run(CargoCmd):
    """``cargo nds run``: build, then send the ROM to a device."""

    address: ipaddress.IPv4Address | None = None
    argv0: str | None = None
    server: bool = False
    retries: int | None = None
    build_args: Build = field(default_factory=Build)
    config: list[str] = field(default_factory=list)

    def cargo_args(self) -> list[str]:
        return self.build_args.passthrough.cargo_args()

    def subcommand_name(self) -> str:
        return "run" if self.use_custom_runner() else "build"

    def _message_args(self) -> list[str]:
        return self.build_args.passthrough.args

    def should_compile(self) -> bool:
        return True

    def should_build_ndsx(self) -> bool:
        return True

    def should_link_to_device(self) -> bool:
        return not self.use_custom_runner()

    def get_dslink_args(self) -> list[str]:
        """Arguments for ``dslink`` derived from these options."""
        if self.address is None:
            return []
        return ["-a", str(self.address)]

    def use_custom_runner(self) -> bool:
        """Whether cargo has a custom runner configured for the DS target.

        The probe runs once per cargo program and ``--config`` set.
        """
        command = cargo(self.config)
        key = (command.program, tuple(command.args))
        configured = _RUNNER_CACHE.get(key)
        if configured is None:
            os.environ["RUSTFLAGS"] = (
                f"-C link-args=-specs={blocksds_root()}/sys/crts/ds_arm9.specs"
            )
            command.args.extend(
                ["-Z", "build-std=core,alloc", "--target", f"./{TARGET_JSON_NAME}"]
            )
            if self.build_args.verbose:
                print_command(command)
            try:
                completed = subprocess.run(
                    command.argv(),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    check=False,
                )
                configured = completed.returncode == 0
            except OSError:
                configured = False
            _RUNNER_CACHE[key] = configured

        if self.build_args.verbose:
            _eprint(f"Custom runner is {'' if configured else 'not '}configured")
        return configured

    def _callback(self, config: NDSConfig | None) -> None:
        self.build_args._callback(config)
        if not self.use_custom_runner() and config is not None:
            _eprint("Running dslink")
            link(config, self.get_dslink_args(), self.build_args.verbose)


@dataclass
class Test(CargoCmd):
    """``cargo nds test``: build tests and optionally run them on a device."""

    no_run: bool = False
    doc: bool = False
    run_args: Run = field(default_factory=Run)

    def _should_run(self) -> bool:
        return self.run_args.use_custom_runner() and not self.no_run

    def cargo_args(self) -> list[str]:
        args = self.run_args.build_args.passthrough.cargo_args()
        if self.doc:
            args.extend(["--doc", "-Z", "doctest-xcompile"])
        elif not self._should_run():
            args.append("--no-run")
        return args

    def subcommand_name(self) -> str:
        return "test"

    def _message_args(self) -> list[str]:
        return self.run_args.build_args.passthrough.args

    def _default_message_format(self) -> str | None:
        return "human" if self.doc else None

    def should_compile(self) -> bool:
        return True

    def should_build_ndsx(self) -> bool:
        if self.doc:
            _eprint("Documentation tests requested, no ndsx will be built")
            return False
        return True

    def should_link_to_device(self) -> bool:
        if self.no_run:
            return False
        return not self.run_args.use_custom_runner()

    def rustdocflags(self) -> str:
        """Extra RUSTDOCFLAGS: ``--no-run`` unless the tests can be run."""
        return "" if self._should_run() else " --no-run"

    def _callback(self, config: NDSConfig | None) -> None:
        if self.no_run:
            self.run_args.build_args._callback(config)
        else:
            self.run_args._callback(config)


@dataclass
class New(CargoCmd):
    """``cargo nds new``: create a project set up for the DS."""

    path: str = ""
    passthrough: RemainingArgs = field(default_factory=RemainingArgs)

    def cargo_args(self) -> list[str]:
        return [*self.passthrough.cargo_args(), self.path]

    def subcommand_name(self) -> str:
        return "new"

    def _message_args(self) -> list[str]:
        return self.passthrough.args

    def _callback(self, config: NDSConfig | None) -> None:
        scaffold_project(self.path, self.passthrough.args)


@dataclass
class Init(CargoCmd):
    """``cargo nds init``: set up an existing directory as a DS project."""

    path: str = "."
    passthrough: RemainingArgs = field(default_factory=RemainingArgs)

    def cargo_args(self) -> list[str]:
        return [*self.passthrough.cargo_args(), self.path]

    def subcommand_name(self) -> str:
        return "init"

    def _message_args(self) -> list[str]:
        return self.passthrough.args

    def _callback(self, config: NDSConfig | None) -> None:
        scaffold_project(self.path, self.passthrough.args)


@dataclass
class Passthrough(CargoCmd):
    """Any other cargo subcommand, run with the DS target settings."""

    args: list[str] = field(default_factory=list)

    def cargo_args(self) -> list[str]:
        return self.args[1:]

    def subcommand_name(self) -> str:
        return self.args[0]

    def _message_args(self) -> list[str]:
        return self.args

    def should_compile(self) -> bool:
        return True


@dataclass
class Input:
    """A parsed ``cargo nds`` command line."""

    cmd: CargoCmd
    verbose: bool = False
    config: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Option:
    dest: str
    long: str
    short: str | None = None
    takes_value: bool = False
    multiple: bool = False

    def match(self, token: str, queue: deque):
        """The option's value if the token is this option, else None."""
        if token == self.long or (self.short is not None and token == self.short):
            if not self.takes_value:
                return True
            if not queue:
                raise UsageError(
                    f"error: a value is required for '{self.long}' but none was supplied"
                )
            return queue.popleft()
        if self.takes_value:
            if token.startswith(self.long + "="):
                return token[len(self.long) + 1 :]
            if self.short is not None and token.startswith(self.short):
                return token[len(self.short) :]
        elif token.startswith(self.long + "="):
            raise UsageError(f"error: unexpected value for '{self.long}'")
        return None


_GLOBAL_OPTIONS = (
    _Option("verbose", "--verbose", "-v"),
    _Option("config", "--config", takes_value=True, multiple=True),
)
_RUN_OPTIONS = (
    _Option("address", "--address", "-a", takes_value=True),
    _Option("argv0", "--argv0", "-0", takes_value=True),
    _Option("server", "--server", "-s"),
    _Option("retries", "--retries", takes_value=True),
)
_TEST_OPTIONS = (
    _Option("no_run", "--no-run"),
    _Option("doc", "--doc"),
    *_RUN_OPTIONS,
)


def _apply(token: str, options, queue: deque, values: dict) -> bool:
    for option in options:
        value = option.match(token, queue)
        if value is None:
            continue
        if option.multiple:
            values.setdefault(option.dest, []).append(value)
        else:
            values[option.dest] = value
        return True
    return False


def _parse_options(queue: deque, options, values: dict) -> bool:
    """Consume leading options; True if an escaping ``--`` was consumed."""
    while queue:
        token = queue.popleft()
        if token == "--":
            return True
        if token in HELP_FLAGS:
            raise UsageError(HELP, 0)
        if _apply(token, (*_GLOBAL_OPTIONS, *options), queue, values):
            continue
        queue.appendleft(token)
        break
    return False


def _ipv4(value):
    if value is None:
        return None
    try:
        return ipaddress.IPv4Address(value)
    except ValueError as exc:
        raise UsageError(
            f"error: invalid value '{value}' for '--address <ADDRESS>': {exc}"
        ) from exc


def _count(value):
    if value is None:
        return None
    try:
        count = int(value)
    except ValueError:
        count = -1
    if count < 0:
        raise UsageError(f"error: invalid value '{value}' for '--retries <RETRIES>'")
    return count


def _make_run(values: dict, args: list[str]) -> Run:
    return Run(
        address=_ipv4(values.get("address")),
        argv0=values.get("argv0"),
        server=bool(values.get("server", False)),
        retries=_count(values.get("retries")),
        build_args=Build(
            verbose=values["verbose"], passthrough=RemainingArgs(args)
        ),
        config=list(values["config"]),
    )


def _parse_project(queue: deque, values: dict, required: bool) -> tuple[str | None, list[str]]:
    escaped = _parse_options(queue, (), values)
    if not queue or (not escaped and queue[0].startswith("-")):
        if required:
            if queue:
                raise UsageError(
                    f"error: unexpected argument '{queue[0]}' found\n\n{USAGE}"
                )
            raise UsageError(
                f"error: the following required arguments were not provided: <PATH>\n\n{USAGE}"
            )
        return None, list(queue)
    path = queue.popleft()
    if not escaped:
        _parse_options(queue, (), values)
    return path, list(queue)


def _parse_subcommand(name: str, queue: deque, values: dict) -> CargoCmd:
    if name == "help":
        raise UsageError(HELP, 0)
    if name == "build":
        _parse_options(queue, (), values)
        return Build(verbose=values["verbose"], passthrough=RemainingArgs(list(queue)))
    if name == "run":
        _parse_options(queue, _RUN_OPTIONS, values)
        return _make_run(values, list(queue))
    if name == "test":
        _parse_options(queue, _TEST_OPTIONS, values)
        return Test(
            no_run=bool(values.get("no_run", False)),
            doc=bool(values.get("doc", False)),
            run_args=_make_run(values, list(queue)),
        )
    if name == "new":
        path, args = _parse_project(queue, values, required=True)
        return New(path=path, passthrough=RemainingArgs(args))
    if name == "init":
        path, args = _parse_project(queue, values, required=False)
        return Init(path=path or ".", passthrough=RemainingArgs(args))
    return Passthrough([name, *queue])


def parse_args(argv: Iterable[str]) -> Input:
    """Parse the arguments after the program name, starting with ``nds``."""
    queue = deque(argv)
    if not queue or queue[0] != "nds":
        raise UsageError(f"error: expected the `nds` subcommand\n\n{USAGE}")
    queue.popleft()

    values: dict = {"verbose": False, "config": []}
    while queue:
        token = queue.popleft()
        if token in HELP_FLAGS:
            raise UsageError(HELP, 0)
        if token in VERSION_FLAGS:
            raise UsageError(f"cargo-nds {VERSION}", 0)
        if _apply(token, _GLOBAL_OPTIONS, queue, values):
            continue
        if token.startswith("-"):
            raise UsageError(f"error: unexpected argument '{token}' found\n\n{USAGE}")
        cmd = _parse_subcommand(token, queue, values)
        return Input(cmd=cmd, verbose=values["verbose"], config=list(values["config"]))

    raise UsageError(HELP, 2)