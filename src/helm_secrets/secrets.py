"""Core secrets file handling: classification, detection and sops calls."""

import json
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Optional, Union

from .config import get_dec_suffix

PathLike = Union[str, Path]

SECRETS_FILE_PATTERN = re.compile(r"secrets(\.[^.]+)*\.(yaml|json)")

SOPS_KEY_PATTERN = re.compile(r"^sops\s*:")
VERSION_KEY_PATTERN = re.compile(r"^\s+version\s*:")

# How far below the sops key the version key may appear.
MARKER_LOOKAHEAD = 10000


class SecretsError(Exception):
    """Base exception for secrets errors."""
    pass


class SecretsNotFoundError(SecretsError):
    """Secrets file or directory not found."""
    pass


class ExternalToolError(SecretsError):
    """An external command exited with a non-zero status."""

    def __init__(self, message: str, returncode: int = 1):
        super().__init__(message)
        self.returncode = returncode


class SOPSError(ExternalToolError):
    """SOPS command failed."""
    pass


class HelmError(ExternalToolError):
    """Helm command failed."""
    pass


class ArgumentParseError(SecretsError):
    """Arguments don't fit the options of the wrapped helm command."""
    pass


@dataclass(frozen=True)
class DecryptionRecord:
    """Outcome of decrypting a secrets file for a single helm run.

    ``decrypted`` equals ``source`` when the file wasn't encrypted at all.
    Only ``fresh`` files were written by us and must be removed afterwards.
    """

    source: Path
    decrypted: Path
    fresh: bool

    @property
    def was_encrypted(self) -> bool:
        return self.decrypted != self.source


@dataclass(frozen=True)
class EncryptionResult:
    source: Path
    target: Path
    encrypted: bool


def is_secrets_file(path: PathLike) -> bool:
    """Check if the file name looks like secrets[.*].yaml or secrets[.*].json."""
    return SECRETS_FILE_PATTERN.fullmatch(os.path.basename(str(path))) is not None


def decrypted_path(path: PathLike) -> Path:
    """Path of the decrypted sibling: secrets.yaml -> secrets.yaml.dec"""
    path = Path(path)
    return path.with_name(path.name + get_dec_suffix())


def file_type(path: PathLike) -> str:
    """sops input/output type for a file (yaml or json)."""
    return Path(path).suffix.lstrip(".")


def is_encrypted(path: PathLike) -> bool:
    """
    Check whether sops has already processed the file.

    sops adds a top-level ``sops`` section carrying a ``version`` key to
    every file it encrypts. A ``sops`` key nested deeper is ordinary data.
    A file without the section is plaintext, which is not an error.
    Raises OSError if the file can't be read.
    """
    text = Path(path).read_text(encoding="utf-8", errors="replace")

    if text.lstrip().startswith("{"):
        return _json_has_marker(text)

    lines = text.splitlines()
    for index, line in enumerate(lines):
        if not SOPS_KEY_PATTERN.match(line):
            continue
        for candidate in lines[index + 1:index + 1 + MARKER_LOOKAHEAD]:
            if VERSION_KEY_PATTERN.match(candidate):
                return True
            # next top-level key closes the sops section
            if candidate[:1] not in ("", " ", "\t", "#", "-"):
                break

    return False


def _json_has_marker(text: str) -> bool:
    try:
        document = json.loads(text)
    except ValueError:
        return False
    if not isinstance(document, dict):
        return False
    marker = document.get("sops")
    return isinstance(marker, dict) and "version" in marker


def _run_sops(args: list, **kwargs) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(["sops", *args], **kwargs)
    except FileNotFoundError:
        raise SOPSError("sops is not installed (https://github.com/getsops/sops)", returncode=127)


def _stderr_text(result: subprocess.CompletedProcess) -> str:
    stderr = result.stderr or b""
    if isinstance(stderr, bytes):
        stderr = stderr.decode(errors="replace")
    return stderr.strip()


def sops_encrypt(path: PathLike, fmt: str, output: Optional[PathLike] = None) -> None:
    """
    Encrypt a file with sops.

    Without ``output`` the file is encrypted in place. Otherwise the
    encrypted content of ``path`` is written to ``output``, which is only
    touched once sops succeeded.

    sops runs from the file's directory so it picks up the nearest
    .sops.yaml creation rules.
    """
    path = Path(path).resolve()
    type_args = ["--encrypt", "--input-type", fmt, "--output-type", fmt]

    if output is None:
        result = _run_sops(
            [*type_args, "--in-place", str(path)],
            capture_output=True,
            cwd=path.parent,
        )
    else:
        result = _run_sops(
            [*type_args, str(path)],
            capture_output=True,
            cwd=path.parent,
        )

    if result.returncode != 0:
        raise SOPSError(f"Failed to encrypt {path}: {_stderr_text(result)}", result.returncode)

    if output is not None:
        Path(output).write_bytes(result.stdout)


def sops_decrypt(path: PathLike, fmt: str, destination: PathLike) -> None:
    """Decrypt ``path`` into ``destination``, leaving nothing behind on failure."""
    destination = Path(destination)

    with open(destination, "wb") as out:
        try:
            result = _run_sops(
                ["--decrypt", "--input-type", fmt, "--output-type", fmt, str(path)],
                stdout=out,
                stderr=subprocess.PIPE,
            )
        except SOPSError:
            out.close()
            destination.unlink(missing_ok=True)
            raise

    if result.returncode != 0:
        destination.unlink(missing_ok=True)
        raise SOPSError(f"Failed to decrypt {path}: {_stderr_text(result)}", result.returncode)


def sops_view(path: PathLike, fmt: str) -> bytes:
    """Decrypt to memory, always rendered as YAML."""
    result = _run_sops(
        ["--decrypt", "--input-type", fmt, "--output-type", "yaml", str(path)],
        capture_output=True,
    )

    if result.returncode != 0:
        raise SOPSError(f"Failed to decrypt {path}: {_stderr_text(result)}", result.returncode)

    return result.stdout


def sops_edit(path: PathLike, fmt: str) -> NoReturn:
    """
    Hand the terminal over to sops' editor session.

    sops decrypts to a temp file, opens $EDITOR and encrypts again when the
    editor exits. This never returns: the program ends with the editor
    session's outcome.
    """
    try:
        tty = open("/dev/tty", "rb")
    except OSError:
        # No controlling terminal, let sops inherit our stdin.
        tty = None

    try:
        result = _run_sops(
            ["--input-type", fmt, "--output-type", fmt, str(path)],
            stdin=tty,
        )
    finally:
        if tty is not None:
            tty.close()

    if result.returncode != 0:
        raise SOPSError(f"Editing {path} failed", result.returncode)

    raise SystemExit(0)


def _require_file(path: Path) -> None:
    if not path.exists():
        raise SecretsNotFoundError(f"File does not exist: {path}")


def encrypt_file(secrets_file: PathLike) -> EncryptionResult:
    """
    Encrypt a secrets file.

    If a decrypted sibling (secrets.yaml.dec) exists, that is the plaintext
    that gets encrypted into secrets.yaml. This allows decrypting a file,
    editing it, and encrypting it back. Already encrypted input is left
    alone.
    """
    secrets_file = Path(secrets_file)
    _require_file(secrets_file)

    source = decrypted_path(secrets_file)
    if not source.exists():
        source = secrets_file

    if is_encrypted(source):
        return EncryptionResult(source, secrets_file, encrypted=False)

    fmt = file_type(secrets_file)
    if source == secrets_file:
        sops_encrypt(secrets_file, fmt)
    else:
        sops_encrypt(source, fmt, output=secrets_file)

    return EncryptionResult(source, secrets_file, encrypted=True)


def decrypt_file(secrets_file: PathLike) -> DecryptionRecord:
    """
    Decrypt a secrets file into its decrypted sibling.

    A decrypted sibling newer than the encrypted file is reused as is.
    """
    secrets_file = Path(secrets_file)
    _require_file(secrets_file)

    if not is_encrypted(secrets_file):
        return DecryptionRecord(secrets_file, secrets_file, fresh=False)

    target = decrypted_path(secrets_file)
    if target.exists() and target.stat().st_mtime_ns > secrets_file.stat().st_mtime_ns:
        return DecryptionRecord(secrets_file, target, fresh=False)

    sops_decrypt(secrets_file, file_type(secrets_file), target)
    return DecryptionRecord(secrets_file, target, fresh=True)


def view_file(secrets_file: PathLike) -> bytes:
    secrets_file = Path(secrets_file)
    _require_file(secrets_file)
    return sops_view(secrets_file, file_type(secrets_file))


def edit_file(secrets_file: PathLike) -> NoReturn:
    secrets_file = Path(secrets_file)
    _require_file(secrets_file)
    sops_edit(secrets_file, file_type(secrets_file))


def clean_decrypted(directory: PathLike) -> list[Path]:
    """Remove all decrypted files below a directory (recursively)."""
    directory = Path(directory)
    if not directory.exists():
        raise SecretsNotFoundError(f"Directory does not exist: {directory}")

    suffix = get_dec_suffix()
    removed = []
    for path in sorted(directory.rglob(f"*{suffix}")):
        if path.is_file() and not path.is_symlink():
            path.unlink()
            removed.append(path)

    return removed
