"""CLI for helm-secrets - SOPS integration for Helm."""

import argparse
import sys

from rich.console import Console
from rich.markup import escape

from . import __version__
from . import secrets
from .config import get_dec_suffix, get_helm_bin
from .wrapper import WRAPPED_COMMANDS, run_helm_command

console = Console()
err_console = Console(stderr=True)

HELP_TOKENS = ("-h", "--help", "help")

FILE_COMMANDS = ("enc", "dec", "view", "edit", "clean")


def is_help(arg):
    return arg in HELP_TOKENS


def command_help(command):
    """Usage text for one command."""
    helm = get_helm_bin()
    suffix = get_dec_suffix()

    if command == "enc":
        return f"""Encrypt secrets

Encrypts a .yaml/.json file with sops. If the file is already encrypted,
look for a decrypted {suffix} file and encrypt that to .yaml. This allows
you to first decrypt the file, edit it, then encrypt it again.

Example:
  $ {helm} secrets enc <SECRET_FILE_PATH>
  $ git add <SECRET_FILE_PATH>
  $ git commit
"""
    if command == "dec":
        return f"""Decrypt secrets

Decrypts a previously encrypted .yaml/.json file. Produces a {suffix} file.

Typical usage:
  $ {helm} secrets dec secrets/myproject/secrets.yaml
  $ vim secrets/myproject/secrets.yaml{suffix}
"""
    if command == "view":
        return f"""View specified secrets[.*].yaml file

Typical usage:
  $ {helm} secrets view secrets/myproject/nginx/secrets.yaml | grep basic_auth
"""
    if command == "edit":
        return f"""Edit encrypted secrets

Decrypt encrypted file, edit and then encrypt.

Example:
  $ {helm} secrets edit <SECRET_FILE_PATH>
  $ git add <SECRET_FILE_PATH>
"""
    if command == "clean":
        return f"""Clean all decrypted files if any exist

Removes all decrypted {suffix} files in the specified directory
(recursively).

Example:
  $ {helm} secrets clean <dir with secrets>
"""

    # install/upgrade/lint/diff
    example = {
        "install": "install -n i1 stable/nginx-ingress",
        "upgrade": "upgrade i1 stable/nginx-ingress",
        "lint": "lint ./my-chart",
        "diff": "diff upgrade i1 stable/nginx-ingress",
    }[command]
    plugin_note = '"diff" is a helm plugin. ' if command == "diff" else ""
    return f"""Run helm {command}

{plugin_note}This is a wrapper for the "helm {command}" command. It will detect -f and
--values options, and decrypt any secrets[.*].yaml files before running
"helm {command}". Decrypted files are removed afterwards.

Typical usage:
  $ {helm} secrets {example} -f values.test.yaml -f secrets.test.yaml
"""


def _fail(e):
    err_console.print(f"[red]Error:[/red] {escape(str(e))}")
    return 1


def cmd_enc(args):
    """Encrypt a secrets file, or its decrypted counterpart back into it."""
    try:
        console.print(f"Encrypting {escape(args.file)}")
        result = secrets.encrypt_file(args.file)

        if not result.encrypted:
            console.print(f"[yellow]Already encrypted:[/yellow] {escape(str(result.source))}")
        elif result.source == result.target:
            console.print(f"[green]Encrypted[/green] {escape(str(result.target))}")
        else:
            console.print(
                f"[green]Encrypted[/green] {escape(str(result.source))} "
                f"to {escape(str(result.target))}"
            )
        return 0

    except secrets.SecretsNotFoundError as e:
        return _fail(e)
    except secrets.SOPSError as e:
        err_console.print(f"[red]SOPS Error:[/red] {escape(str(e))}")
        return e.returncode


def cmd_dec(args):
    """Decrypt a secrets file into its decrypted counterpart."""
    try:
        console.print(f"Decrypting {escape(args.file)}")
        record = secrets.decrypt_file(args.file)

        if not record.was_encrypted:
            console.print(f"[yellow]Not encrypted:[/yellow] {escape(args.file)}")
        elif not record.fresh:
            console.print(f"[dim]{escape(str(record.decrypted))} is newer than {escape(args.file)}[/dim]")
        else:
            console.print(f"[green]Decrypted[/green] to {escape(str(record.decrypted))}")
        return 0

    except secrets.SecretsNotFoundError as e:
        return _fail(e)
    except secrets.SOPSError as e:
        err_console.print(f"[red]SOPS Error:[/red] {escape(str(e))}")
        return e.returncode


def cmd_view(args):
    """Print decrypted secrets as YAML (nothing is written to disk)."""
    try:
        content = secrets.view_file(args.file)
        sys.stdout.buffer.write(content)
        sys.stdout.flush()
        return 0

    except secrets.SecretsNotFoundError as e:
        return _fail(e)
    except secrets.SOPSError as e:
        err_console.print(f"[red]SOPS Error:[/red] {escape(str(e))}")
        return e.returncode


def cmd_edit(args):
    """Edit secrets with sops; the file is encrypted again when the editor exits."""
    try:
        secrets.edit_file(args.file)

    except secrets.SecretsNotFoundError as e:
        return _fail(e)
    except secrets.SOPSError as e:
        err_console.print(f"[red]SOPS Error:[/red] {escape(str(e))}")
        return e.returncode


def cmd_clean(args):
    """Remove decrypted files below a directory."""
    try:
        removed = secrets.clean_decrypted(args.file)
        for path in removed:
            console.print(f"removed '{escape(str(path))}'")
        return 0

    except secrets.SecretsNotFoundError as e:
        return _fail(e)


def cmd_helm(command, args):
    """Run a wrapped helm command."""
    if not args or is_help(args[0]):
        console.print(command_help(command), markup=False, highlight=False)
        return 0

    try:
        return run_helm_command(command, args)

    except secrets.SecretsNotFoundError as e:
        return _fail(e)
    except secrets.ArgumentParseError as e:
        return _fail(e)
    except secrets.ExternalToolError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        return e.returncode


COMMANDS = {
    "enc": cmd_enc,
    "dec": cmd_dec,
    "view": cmd_view,
    "edit": cmd_edit,
    "clean": cmd_clean,
}


class ArgumentParser(argparse.ArgumentParser):
    """Exits with status 1 on usage errors, like the helm plugin always did."""

    def error(self, message):
        self.print_usage(sys.stderr)
        err_console.print(f"[red]Error:[/red] {escape(message)}")
        sys.exit(1)


def build_parser():
    parser = ArgumentParser(
        prog="helm-secrets",
        description="SOPS secrets encryption in Helm charts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  helm-secrets enc secrets.yaml                 # Encrypt in place
  helm-secrets dec secrets.yaml                 # Write secrets.yaml.dec
  helm-secrets view secrets.yaml                # Print decrypted
  helm-secrets edit secrets.yaml                # Edit with $EDITOR
  helm-secrets clean ./charts                   # Remove decrypted files
  helm-secrets upgrade i1 ./chart -f secrets.yaml

Environment:
  HELM_SECRETS_DEC_SUFFIX   Suffix of decrypted files (default: .dec)
  HELM_BIN                  Helm executable (default: helm)
  HELM_PLUGIN_DIR           Where helm option grammars are cached
  TILLER_HOST               Passed to helm as --host
  HELM_SECRETS_DEBUG        Print the helm command before running it
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands", parser_class=ArgumentParser)

    summaries = {
        "enc": "Encrypt secrets file",
        "dec": "Decrypt secrets file",
        "view": "Print secrets decrypted",
        "edit": "Edit secrets file and encrypt afterwards",
        "clean": "Remove all decrypted files in a directory (recursively)",
    }
    for name in FILE_COMMANDS:
        sub = subparsers.add_parser(
            name,
            help=summaries[name],
            description=command_help(name),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        sub.add_argument("file", nargs="?", help="directory" if name == "clean" else "secrets file")

    # Listed for --help only: main() hands their arguments to helm untouched.
    for name in WRAPPED_COMMANDS:
        subparsers.add_parser(
            name,
            help=f"Decrypt secrets[.*].yaml files and run helm {name}",
            add_help=False,
        )

    return parser


def main(argv=None):
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    # helm arguments can't go through argparse, it would reject helm's flags
    if argv and argv[0] in WRAPPED_COMMANDS:
        return cmd_helm(argv[0], argv[1:])

    parser = build_parser()

    if not argv or is_help(argv[0]):
        parser.print_help()
        return 0

    if argv[0] in FILE_COMMANDS and len(argv) > 1 and argv[1] == "help":
        console.print(command_help(argv[0]), markup=False, highlight=False)
        return 0

    args = parser.parse_args(argv)

    if not args.file:
        console.print(command_help(args.command), markup=False, highlight=False)
        if args.command == "clean":
            err_console.print("[red]Error:[/red] Chart directory required.")
        else:
            err_console.print("[red]Error:[/red] secrets file required.")
        return 1

    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
