# ndscargo

A wrapper around `cargo` for developing Nintendo DS homebrew in Rust with
the BlocksDS toolchain. It runs the real `cargo` with the DS target
specification, `build-std=core,alloc` and the BlocksDS linker specs, then
packs the built ELF into a `.nds` ROM with `ndstool`, and can send the ROM
to a console with `dslink`.

## Installation

```
pip install .
```

This installs the `cargo-nds` command. Because it is named `cargo-nds` and
lives on your `PATH`, cargo runs it as the `nds` subcommand: `cargo nds ...`.
The command expects `nds` as its first argument, which is what cargo passes.

Requirements:

- a nightly Rust toolchain, version 1.70 or newer with a commit date of
  2023-05-31 or later (checked with `rustc -vV` before anything else runs;
  `$RUSTC` selects the compiler, `$CARGO` the cargo program);
- `ndstool` and `dslink` on your `PATH`;
- a BlocksDS installation, located by the `BLOCKSDS` environment variable
  (default `/opt/wonderful/thirdparty/blocksds/core`).

## Usage

```
cargo nds new my-game          # create a project set up for the DS
cargo nds init                 # set up the current directory (path defaults to .)
cargo nds build                # build the ELF and pack it into a .nds file
cargo nds run -a 192.168.0.10  # build, then send the ROM with dslink
cargo nds test --no-run        # build the test executable only
cargo nds test --doc           # build documentation tests
cargo nds clippy               # any other cargo command is passed through
```

Global options:

- `-v`, `--verbose`: print every command that is run, with its environment
  overrides. This does not make cargo itself verbose; add `-- -v` for that.
- `--config KEY=VALUE`: forwarded to cargo as `--config=KEY=VALUE`; may be
  repeated.
- `-h`, `--help` and `-V`, `--version`.

Options of `run` and `test`: `-a/--address`, `-0/--argv0`, `-s/--server` and
`--retries`. `test` adds `--no-run` and `--doc`.

Arguments after the first `--`, or from the first unrecognised option on,
go to cargo unchanged. A second `--` separates arguments for the executable,
e.g. `cargo nds run -- -- xyz`; these are forwarded only when cargo has a
custom runner configured for the target.

`build`, `run`, `test` and passed-through commands get
`--target armv5te-nintendo-ds.json -Z build-std=core,alloc` and a
`--message-format`. Only JSON message formats are accepted; the default is
`json-render-diagnostics` (`human` for `test --doc`). When you give a
format yourself, cargo's output is echoed to standard output.

### Running on a device

Whether a custom runner is configured is probed once per cargo program and
`--config` set. Without one, `run` and `test` (unless `--no-run`) build and
then call `dslink`, passing `-a ADDRESS` when `--address` is given. With
one, cargo's own `run`/`test` is used instead.

## Project setup

`cargo nds new PATH` and `cargo nds init [PATH]` run cargo's `new`/`init`
and then, unless `--lib` was given:

- create a `romfs` directory and a `.cargo/config.toml` with `release` and
  `dev` profile settings;
- write the target specification `armv5te-nintendo-ds.json`;
- replace `src/main.rs` with a starter program;
- append a `libnds_sys` git dependency and a `[package.metadata.nds]`
  section to `Cargo.toml`. The dependency's repository is taken from the
  `LIBNDS_SYS_GIT` environment variable; set it, since the built-in default
  is only a placeholder.

## Building the ROM

`ndstool` is called with the ARM9 ELF, an ARM7 ELF (`<name>.arm7.elf` next
to the executable if it exists, otherwise BlocksDS's
`sys/default_arm7/arm7.elf`), an icon and banner text.

An optional `nds.toml` next to `Cargo.toml` sets the banner and icon. If
the file exists, `name` is required and must hold exactly three strings:

```toml
name = ["My Game", "A short description", "Me"]
icon = "icon.bmp"
```

Without `nds.toml`, the banner is the package name, the package
description (or `Homebrew Application`) and the first author (or
`Unspecified Author`), and the icon is
`/opt/wonderful/thirdparty/blocksds/core/sys/icon.bmp`. The `icon` path is
relative to the manifest.

A RomFS directory is added with `-d` whenever it exists. Its location is
read from `package.metadata.nds.romfs` in `Cargo.toml` (default `romfs`);
a configured directory that does not exist is an error. Note that project
setup writes the key `romfs_dir`, which is not read here, so the default
`romfs` directory is what is used unless you add `romfs`.

## Library use

The modules can be used directly:

- `ndscargo.command.parse_args(argv)` parses a command line (starting with
  `nds`) into an `Input` with a `CargoCmd` (`Build`, `Run`, `Test`, `New`,
  `Init` or `Passthrough`).
- `ndscargo.cli.make_cargo_command(input, message_format)` returns the
  `Command` that would be run; `run_cargo` runs it and returns the exit
  status and parsed messages.
- `ndscargo.toolchain` holds `Command`, `parse_messages`, `get_metadata`,
  `build_nds`, `link`, `find_sysroot` and `check_rust_version`.
- `ndscargo.project` holds `NDSConfig` (output paths), `CommitDate`,
  `get_romfs_path`, `get_name` and `get_icon_path`.
- `ndscargo.config.load_config(manifest_path)` reads `nds.toml`.
- `ndscargo.scaffold.scaffold_project(path, cargo_args)` applies the
  project setup described above.
- `ndscargo.graph.UnitGraph` parses cargo's `--unit-graph` output
  (`from_json`) or collects it by running cargo (`from_cargo`).

## Limitations

- `--argv0`, `--server` and `--retries` are accepted but not passed on to
  `dslink`; only `--address` is.
- The unit graph is available as a library but is not used by the
  `cargo nds` command.