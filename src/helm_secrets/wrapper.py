"""
Run helm commands with secrets values files decrypted on the fly.

    helm-secrets upgrade i1 stable/nginx-ingress -f secrets.test.yaml

decrypts secrets.test.yaml to secrets.test.yaml.dec, runs

    helm upgrade i1 stable/nginx-ingress -f secrets.test.yaml.dec

and removes secrets.test.yaml.dec again, whether helm succeeded or not.
"""

import getopt
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape

from . import grammar
from .config import get_helm_bin, get_tiller_host, is_debug
from .secrets import ArgumentParseError, HelmError, decrypt_file, is_secrets_file

WRAPPED_COMMANDS = ("install", "upgrade", "lint", "diff")

VALUES_FLAGS = ("-f", "--values")

err_console = Console(stderr=True)


def split_subcommand(command: str, args: list) -> tuple:
    """Split off the plugin sub-command, e.g. ``upgrade`` in ``helm diff upgrade``."""
    if command in grammar.VERSIONED_PLUGIN_COMMANDS and args:
        return args[0], args[1:]
    return None, args


def parse_arguments(command: str, subcommand: Optional[str], args: list,
                    command_grammar: grammar.Grammar) -> tuple:
    """
    Parse helm arguments with GNU getopt semantics.

    Returns the recognised options as (flag, value) pairs in command line
    order, and the positional arguments.
    """
    try:
        return getopt.gnu_getopt(args, command_grammar.options, command_grammar.getopt_longopts())
    except getopt.GetoptError as e:
        name = " ".join(filter(None, [get_helm_bin(), command, subcommand]))
        raise ArgumentParseError(f"{name}: {e}")


def _decrypt_values_file(value: str, decrypted: list) -> str:
    record = decrypt_file(value)

    if not record.was_encrypted:
        err_console.print(f"[dim]Not encrypted: {escape(value)}[/dim]")
        return value

    target = str(record.decrypted)
    if record.fresh:
        decrypted.append(record.decrypted)
        err_console.print(f"[dim]Decrypted {escape(value)} to {escape(target)}[/dim]")
    else:
        err_console.print(f"[dim]{escape(target)} is newer than {escape(value)}[/dim]")

    return target


def rewrite_options(options: list, command_grammar: grammar.Grammar, decrypted: list) -> list:
    """
    Flatten parsed options back into arguments, decrypting secrets values files.

    Paths of files decrypted here are appended to ``decrypted``.
    """
    arguments = []

    for flag, value in options:
        arguments.append(flag)
        if flag in VALUES_FLAGS:
            if is_secrets_file(value):
                value = _decrypt_values_file(value, decrypted)
            arguments.append(value)
        elif command_grammar.takes_value(flag):
            arguments.append(value)

    return arguments


def build_command(command: str, subcommand: Optional[str], positionals: list, options: list) -> list:
    """helm argv: command, sub-command, positional args, then options."""
    argv = [get_helm_bin()]

    tiller_host = get_tiller_host()
    if tiller_host:
        argv += ["--host", tiller_host]

    argv.append(command)
    if subcommand:
        argv.append(subcommand)

    return argv + list(positionals) + list(options)


def cleanup(decrypted: list) -> None:
    for path in decrypted:
        Path(path).unlink(missing_ok=True)
        err_console.print(f"[dim]removed '{escape(str(path))}'[/dim]")


def run_helm_command(command: str, args: list) -> int:
    """
    Run ``helm <command> <args>`` with secrets values files decrypted.

    Returns helm's exit code. Decrypted files created here are removed
    before returning, also when helm fails.
    """
    subcommand, args = split_subcommand(command, list(args))
    command_grammar = grammar.get_grammar(command, subcommand)
    options, positionals = parse_arguments(command, subcommand, args, command_grammar)

    decrypted = []
    try:
        rewritten = rewrite_options(options, command_grammar, decrypted)
        argv = build_command(command, subcommand, positionals, rewritten)

        if is_debug():
            err_console.print(f"[dim]Running: {escape(shlex.join(argv))}[/dim]")

        try:
            result = subprocess.run(argv)
        except FileNotFoundError:
            raise HelmError(f"helm not found: {argv[0]}", returncode=127)
        return result.returncode
    finally:
        cleanup(decrypted)
