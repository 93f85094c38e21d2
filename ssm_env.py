# SPDX-License-Identifier: Apache-2.0
# Copyright 2025 Trevor Baker, all rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Run a command with environment variables from AWS Parameter Store.

This tool:
1. Parses which parameters to export (by name, by path, or all of them)
2. Fetches them from AWS Systems Manager Parameter Store
3. Builds the child environment, applying renames
4. Runs the command and exits with its exit code

Example:
    ssm-env -p /prod/db/host:DB_HOST -P /prod/app -- ./server --port 8080
"""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Final

from parameter_store import (
    MissingParameterError,
    ParameterStore,
    ResolutionError,
    ResolvedParameter,
)


__version__ = "1.0.0"

# Exit codes
EXIT_FAILURE: Final[int] = 1
EXIT_INTERRUPTED: Final[int] = 130
MAX_EXIT_CODE: Final[int] = 255

PATH_SEPARATOR: Final[str] = "/"
LOG_FORMAT: Final[str] = "%(name)s: %(levelname)s: %(message)s"

logger = logging.getLogger("ssm-env")


class ArgParseError(argparse.ArgumentTypeError):
    """A flag value could not be parsed."""


class SpawnError(RuntimeError):
    """The child process could not be started."""


@dataclass(frozen=True)
class ExportSpec:
    """A parameter to export and the environment variable it becomes."""

    store_key: str
    env_name: str

    @classmethod
    def from_param(cls, value: str) -> ExportSpec:
        """Parse ``NAME[:ENV]``; ENV defaults to NAME.

        Raises:
            ArgParseError: If NAME or an explicit ENV is empty.
        """
        store_key, sep, env_name = value.partition(":")
        if not store_key:
            raise ArgParseError(f"invalid parameter '{value}': expected NAME[:ENV]")
        if sep and not env_name:
            raise ArgParseError(f"invalid parameter '{value}': ENV after ':' is empty")
        return cls(store_key=store_key, env_name=env_name or store_key)

    @classmethod
    def from_export(cls, value: str) -> ExportSpec:
        """Parse ``ENV[=PARAM]``; PARAM defaults to ENV.

        Raises:
            ArgParseError: If ENV or an explicit PARAM is empty.
        """
        env_name, sep, store_key = value.partition("=")
        if not env_name:
            raise ArgParseError(f"invalid export '{value}': expected ENV[=PARAM]")
        if sep and not store_key:
            raise ArgParseError(f"invalid export '{value}': PARAM after '=' is empty")
        return cls(store_key=store_key or env_name, env_name=env_name)


@dataclass(frozen=True)
class PathSpec:
    """A path prefix whose parameters are exported by their suffix."""

    path: str

    @classmethod
    def from_arg(cls, value: str) -> PathSpec:
        """Parse a ``PATH`` flag value.

        Raises:
            ArgParseError: If the path is empty.
        """
        if not value:
            raise ArgParseError("invalid path: PATH must not be empty")
        return cls(path=value)

    @property
    def prefix(self) -> str:
        """The path with exactly one trailing separator guaranteed."""
        if self.path.endswith(PATH_SEPARATOR):
            return self.path
        return f"{self.path}{PATH_SEPARATOR}"

    def export_name(self, store_key: str) -> str:
        """Strip the prefix from a store key; keys outside it are unchanged."""
        return store_key.removeprefix(self.prefix)


@dataclass(frozen=True)
class Config:
    """Configuration for one invocation, built from command-line arguments."""

    utility: str
    arguments: tuple[str, ...] = ()
    exports: tuple[ExportSpec, ...] = ()
    paths: tuple[PathSpec, ...] = ()
    decrypt: bool = True
    ignore_environment: bool = False
    recursive: bool = False
    strict: bool = False
    region: str | None = None
    profile: str | None = None
    verbose: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> Config:
        """Build configuration from parsed arguments.

        ``--param`` and ``--export`` specs are merged in that order.
        """
        return cls(
            utility=args.utility,
            arguments=tuple(args.arguments),
            exports=(*args.params, *args.exports),
            paths=tuple(args.export_paths),
            decrypt=not args.no_decrypt,
            ignore_environment=args.ignore,
            recursive=args.recursive,
            strict=args.strict,
            region=args.region,
            profile=args.profile,
            verbose=args.verbose,
        )

    @property
    def store_keys(self) -> list[str]:
        """Explicitly requested store keys, deduplicated in order."""
        return list(dict.fromkeys(spec.store_key for spec in self.exports))


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="ssm-env",
        description=(
            "Run a command with environment variables set from AWS Systems Manager "
            "Parameter Store. With no --param, --export or --export-path, every "
            "parameter visible to the caller is exported."
        ),
    )
    parser.add_argument(
        "--no-decrypt",
        action="store_true",
        help="do not decrypt SecureString parameters",
    )
    parser.add_argument(
        "-i",
        "--ignore",
        action="store_true",
        help="start the command with an empty environment",
    )
    parser.add_argument(
        "-p",
        "--param",
        dest="params",
        metavar="NAME[:ENV]",
        type=ExportSpec.from_param,
        action="append",
        default=[],
        help="export parameter NAME, optionally as environment variable ENV",
    )
    parser.add_argument(
        "-e",
        "--export",
        dest="exports",
        metavar="ENV[=PARAM]",
        type=ExportSpec.from_export,
        action="append",
        default=[],
        help="export environment variable ENV, optionally read from parameter PARAM",
    )
    parser.add_argument(
        "-P",
        "--export-path",
        dest="export_paths",
        metavar="PATH",
        type=PathSpec.from_arg,
        action="append",
        default=[],
        help="export every parameter under PATH, named by its suffix",
    )
    parser.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        help="include all descendants of each --export-path, not just one level",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="fail if a parameter named by --param or --export is not found",
    )
    parser.add_argument("--region", help="AWS region (defaults to the AWS configuration)")
    parser.add_argument("--profile", help="AWS named profile")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("utility", help="the command to run")
    parser.add_argument(
        "arguments",
        nargs=argparse.REMAINDER,
        help="arguments passed to the command",
    )
    return parser


def rename_table(exports: Iterable[ExportSpec]) -> dict[str, tuple[str, ...]]:
    """Map each renamed store key to the environment names requested for it.

    Only specs whose environment name differs from the store key are
    renames. A plain spec for a key that is also renamed keeps the key
    itself as one of its names.
    """
    specs = list(exports)
    table: dict[str, tuple[str, ...]] = {}
    for spec in specs:
        if spec.env_name != spec.store_key:
            table[spec.store_key] = (*table.get(spec.store_key, ()), spec.env_name)

    for spec in specs:
        if spec.env_name == spec.store_key and spec.store_key in table:
            table[spec.store_key] = (*table[spec.store_key], spec.env_name)

    return {key: tuple(dict.fromkeys(names)) for key, names in table.items()}


def resolve_parameters(config: Config, store: ParameterStore) -> list[ResolvedParameter]:
    """Fetch the parameters selected by the configuration.

    Explicit names are fetched first, then each path in order. With neither,
    every visible parameter name is enumerated and fetched.

    Args:
        config: Invocation configuration.
        store: Parameter Store client.

    Returns:
        Resolved parameters in fetch order.

    Raises:
        ResolutionError: If any store request fails.
        MissingParameterError: In strict mode, if an explicit name is missing.
    """
    keys = config.store_keys
    resolved: list[ResolvedParameter] = []

    if keys:
        resolved.extend(store.get_parameters(keys, with_decryption=config.decrypt))

    for path in config.paths:
        found = store.get_parameters_by_path(
            path.path, with_decryption=config.decrypt, recursive=config.recursive
        )
        resolved.extend(replace(p, export_name=path.export_name(p.store_key)) for p in found)

    if not keys and not config.paths:
        logger.info("No parameters requested, exporting every visible parameter")
        names = store.describe_parameter_names()
        resolved.extend(store.get_parameters(names, with_decryption=config.decrypt))

    if config.strict:
        returned = {p.store_key for p in resolved}
        missing = [key for key in keys if key not in returned]
        if missing:
            raise MissingParameterError(missing)

    logger.debug(f"Resolved {len(resolved)} parameter(s)")
    return resolved


def build_environment(
    base: Mapping[str, str],
    parameters: Iterable[ResolvedParameter],
    renames: Mapping[str, Sequence[str]],
) -> dict[str, str]:
    """Overlay resolved parameters onto a base environment.

    Later parameters win when names collide. ``base`` is not modified.

    Args:
        base: Inherited environment, or an empty mapping.
        parameters: Resolved parameters in fetch order.
        renames: Store key to environment names, from ``rename_table``.

    Returns:
        The complete environment for the child process.
    """
    env = dict(base)
    for param in parameters:
        for name in renames.get(param.store_key, (param.export_name,)):
            if not name:
                logger.debug(f"Skipping {param.store_key}: empty environment name")
                continue
            logger.debug(f"Exporting {param.store_key} as {name}")
            env[name] = param.value
    return env


def exit_code(returncode: int) -> int:
    """Map a child return code to this tool's exit code.

    Negative codes (killed by a signal) and codes that do not fit in an
    exit status become 1.
    """
    if 0 <= returncode <= MAX_EXIT_CODE:
        return returncode
    return EXIT_FAILURE


def run_utility(utility: str, arguments: Sequence[str], env: Mapping[str, str]) -> int:
    """Run the command with exactly ``env`` as its environment and wait for it.

    Raises:
        SpawnError: If the command cannot be started.
    """
    command = [utility, *arguments]
    try:
        process = subprocess.Popen(command, env=dict(env))  # noqa: S603
    except (OSError, ValueError) as e:
        raise SpawnError(f"Failed to run {utility}: {e}") from e

    logger.debug(f"Spawned {utility} (pid {process.pid}), waiting")
    try:
        returncode = process.wait()
    except KeyboardInterrupt:
        logger.debug(f"Interrupted, waiting for {utility} to exit")
        process.wait()
        raise
    logger.debug(f"{utility} exited with {returncode}")
    return exit_code(returncode)


def configure_logging(verbose: bool = False) -> None:
    """Send tool logs to stderr; quiet unless verbose or DEBUG is set."""
    logging.basicConfig(format=LOG_FORMAT, level=logging.WARNING)
    level = logging.DEBUG if verbose or os.getenv("DEBUG") else logging.WARNING
    logger.setLevel(level)
    logging.getLogger("parameter_store").setLevel(level)


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, resolve parameters and run the command.

    Returns:
        The command's exit code, or 1 if parameters could not be resolved
        or the command could not be started.
    """
    args = build_parser().parse_args(argv)
    config = Config.from_args(args)
    configure_logging(config.verbose)

    try:
        store = ParameterStore.from_session(region=config.region, profile=config.profile)
        parameters = resolve_parameters(config, store)

        base = {} if config.ignore_environment else dict(os.environ)
        env = build_environment(base, parameters, rename_table(config.exports))

        return run_utility(config.utility, config.arguments, env)

    except (ResolutionError, SpawnError) as e:
        logger.error(str(e))
        return EXIT_FAILURE

    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
