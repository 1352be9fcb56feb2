"""The subset of cargo's ``--unit-graph`` output that the build relies on."""

import json
import os
import subprocess
from dataclasses import dataclass, field

from ndscargo.toolchain import Command, print_command

SUPPORTED_VERSION = 1
UNIT_GRAPH_FLAGS = ("-Z", "unstable-options", "--unit-graph")


class GraphError(Exception):
    """The unit graph could not be collected or understood."""


@dataclass(frozen=True)
class Profile:
    """Build profile of a unit; only the debug-info level matters here."""

    debuginfo: int | None = None


@dataclass(frozen=True)
class Unit:
    """One compilation unit: its cargo target description and profile."""

    target: dict
    profile: Profile


@dataclass(frozen=True)
class UnitGraph:
    """Cargo's unit graph: a format version and the units to be built."""

    version: int
    units: list[Unit] = field(default_factory=list)

    @classmethod
    def from_json(cls, data):
        """Build a graph from JSON text, bytes or an already decoded object."""
        if isinstance(data, (str, bytes, bytearray)):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise GraphError(str(exc)) from exc
        if not isinstance(data, dict):
            raise GraphError("unit graph must be a JSON object")
        version = data.get("version")
        if not _is_int(version):
            raise GraphError("missing or invalid field `version`")
        units = data.get("units")
        if not isinstance(units, list):
            raise GraphError("missing or invalid field `units`")
        return cls(version=version, units=[_unit(entry) for entry in units])

    @classmethod
    def from_cargo(cls, cargo_cmd: Command, verbose: bool):
        """Run the given cargo command with ``--unit-graph`` and parse its output.

        Nothing is built; cargo prints the graph instead.
        """
        first, rest = cargo_cmd.args[:1], cargo_cmd.args[1:]
        env = {key: value for key, value in cargo_cmd.env.items() if value is not None}
        command = Command(
            cargo_cmd.program,
            [*first, *UNIT_GRAPH_FLAGS, *rest],
            env,
        )

        if verbose:
            print_command(command)

        try:
            completed = subprocess.run(
                command.argv(),
                env={**os.environ, **env},
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise GraphError(f"failed to run `{command.program}`: {exc}") from exc

        # cargo may exit unsuccessfully even after printing a usable graph,
        # so only the output itself is judged.
        try:
            graph = cls.from_json(completed.stdout)
        except GraphError as exc:
            stderr = completed.stderr.decode("utf-8", errors="replace")
            raise GraphError(
                f"unable to parse `--unit-graph` json: {exc}\nstderr: `{stderr}`"
            ) from exc

        if graph.version != SUPPORTED_VERSION:
            raise GraphError(
                f"unknown `cargo --unit-graph` output version {graph.version}"
            )
        return graph


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _unit(entry) -> Unit:
    if not isinstance(entry, dict):
        raise GraphError("each unit must be a JSON object")
    target = entry.get("target")
    if not isinstance(target, dict):
        raise GraphError("missing or invalid field `target`")
    profile = entry.get("profile")
    if not isinstance(profile, dict):
        raise GraphError("missing or invalid field `profile`")
    debuginfo = profile.get("debuginfo")
    if debuginfo is not None and not (_is_int(debuginfo) and debuginfo >= 0):
        raise GraphError("`debuginfo` must be a non-negative integer")
    return Unit(target=target, profile=Profile(debuginfo=debuginfo))