"""
Option grammar of helm commands, scraped from their help output.

Helm has no machine readable description of its flags, so we read the
"Flags:" section of ``helm <command> --help``. Scraping is slow, so the
result is cached per command and per helm version in the plugin directory.

The scrape is best effort. A flag we fail to recognise is rejected by the
argument parser like any other unknown option.
"""

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .config import get_helm_bin, get_plugin_dir
from .secrets import HelmError

FLAG_LINE_PATTERN = re.compile(
    r"(-(?P<short>[a-zA-Z0-9]), )?--(?P<long>[-_a-zA-Z0-9]+)( (?P<arg>[a-zA-Z0-9]+))?"
)

# Helm plugins report their own version separately from helm's.
VERSIONED_PLUGIN_COMMANDS = {"diff"}

CACHE_KEYS = ("options_version", "options", "longoptions")


@dataclass(frozen=True)
class FlagSpec:
    short: Optional[str]
    long: Optional[str]
    takes_value: bool

    @property
    def tokens(self) -> list[str]:
        tokens = []
        if self.short:
            tokens.append(f"-{self.short}")
        if self.long:
            tokens.append(f"--{self.long}")
        return tokens


@dataclass(frozen=True)
class Grammar:
    """The flags accepted by one helm command."""

    flags: tuple = ()

    @property
    def options(self) -> str:
        """Short options in getopt notation, e.g. ``"f:n:h"``."""
        return "".join(
            f"{flag.short}{':' if flag.takes_value else ''}"
            for flag in self.flags
            if flag.short
        )

    @property
    def longoptions(self) -> str:
        """Long options in GNU getopt notation, e.g. ``"values:,atomic"``."""
        return ",".join(
            f"{flag.long}{':' if flag.takes_value else ''}"
            for flag in self.flags
            if flag.long
        )

    def getopt_longopts(self) -> list[str]:
        """Long options as Python's getopt module wants them."""
        return [
            f"{flag.long}{'=' if flag.takes_value else ''}"
            for flag in self.flags
            if flag.long
        ]

    def lookup(self, token: str) -> Optional[FlagSpec]:
        for flag in self.flags:
            if token in flag.tokens:
                return flag
        return None

    def takes_value(self, token: str) -> bool:
        flag = self.lookup(token)
        return flag is not None and flag.takes_value

    @classmethod
    def from_getopt(cls, options: str, longoptions: str) -> "Grammar":
        """Rebuild a grammar from its cached getopt strings.

        The short/long pairing is lost in the cache; each option becomes its
        own FlagSpec, which is all the argument parser needs.
        """
        flags = []
        for short, colon in re.findall(r"([a-zA-Z0-9])(:?)", options or ""):
            flags.append(FlagSpec(short=short, long=None, takes_value=bool(colon)))

        for entry in filter(None, (longoptions or "").split(",")):
            flags.append(FlagSpec(
                short=None,
                long=entry.rstrip(":"),
                takes_value=entry.endswith(":"),
            ))

        return cls(tuple(flags))


def flags_section(help_text: str) -> list[str]:
    """Lines between the "Flags:" header and the "Global Flags:" header."""
    section = []
    in_flags = False

    for line in help_text.splitlines():
        if not in_flags:
            in_flags = line.startswith("Flags:")
            continue
        if line.startswith("Global Flags:"):
            break
        section.append(line)

    return section


def parse_help_text(help_text: str) -> Grammar:
    """
    Extract the flags from helm help output.

    Lines look like::

          -f, --values strings     specify values in a YAML file or a URL
              --atomic             if set, upgrade process rolls back ...

    A word right after the long flag name is the value placeholder.
    """
    flags = []

    for line in flags_section(help_text):
        match = FLAG_LINE_PATTERN.search(line.strip())
        if not match:
            continue
        flags.append(FlagSpec(
            short=match.group("short"),
            long=match.group("long"),
            takes_value=match.group("arg") is not None,
        ))

    return Grammar(tuple(flags))


def _run_helm(args: list, check: bool = True) -> str:
    """Run helm and return its stdout.

    With ``check`` a non-zero exit raises HelmError; help output is used
    whatever the exit status.
    """
    helm_bin = get_helm_bin()
    try:
        result = subprocess.run([helm_bin, *args], capture_output=True, text=True)
    except FileNotFoundError:
        raise HelmError(f"helm not found: {helm_bin}", returncode=127)

    if check and result.returncode != 0:
        raise HelmError(
            f"'{helm_bin} {' '.join(args)}' failed: {result.stderr.strip()}",
            result.returncode,
        )

    return result.stdout


def current_fingerprint(command: str) -> str:
    """Version string the cached grammar of a command is valid for."""
    fingerprint = _run_helm(["version", "--client", "--short"]).strip()

    if command in VERSIONED_PLUGIN_COMMANDS:
        plugin_version = _run_helm([command, "version"]).strip()
        fingerprint += f" {command}: {plugin_version}"

    return fingerprint


def scrape_help(command: str, subcommand: Optional[str] = None) -> Grammar:
    """Run ``helm <command> [<subcommand>] --help`` and parse the flags."""
    args = [command, *([subcommand] if subcommand else []), "--help"]
    return parse_help_text(_run_helm(args, check=False))


def cache_file(command: str, subcommand: Optional[str] = None) -> Path:
    name = f"helm.{command}"
    if subcommand:
        name += f".{subcommand}"
    return get_plugin_dir() / f"{name}.options"


def load_cache_entry(path: Path) -> Optional[dict]:
    """Load a cache entry, None if missing, unreadable or malformed."""
    if not path.exists():
        return None
    try:
        entry = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, UnicodeDecodeError):
        return None
    if not isinstance(entry, dict):
        return None
    if not all(isinstance(entry.get(key), str) for key in CACHE_KEYS):
        return None
    return entry


def save_cache_entry(path: Path, fingerprint: str, grammar: Grammar) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    entry = {
        "options_version": fingerprint,
        "options": grammar.options,
        "longoptions": grammar.longoptions,
    }

    # Atomic write: write to temp file then rename
    temp_path = path.with_suffix(f".tmp.{os.getpid()}")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(entry, f, default_flow_style=False)
        temp_path.replace(path)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise


def get_grammar(command: str, subcommand: Optional[str] = None) -> Grammar:
    """Grammar of a helm command, from cache if helm hasn't changed since."""
    fingerprint = current_fingerprint(command)
    path = cache_file(command, subcommand)

    entry = load_cache_entry(path)
    if entry is not None and entry.get("options_version") == fingerprint:
        return Grammar.from_getopt(entry["options"], entry["longoptions"])

    grammar = scrape_help(command, subcommand)
    save_cache_entry(path, fingerprint, grammar)
    return grammar

