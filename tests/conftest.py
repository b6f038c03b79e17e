"""Shared fixtures: a stand-in for the sops and helm executables."""

import json
import subprocess
from pathlib import Path

import pytest

HELM_VERSION = "v3.12.3+g3a31588"

INSTALL_HELP = """\
This command installs a chart archive.

Usage:
  helm install [NAME] [CHART] [flags]

Flags:
      --atomic                   if set, the installation process deletes the installation on failure
  -f, --values strings           specify values in a YAML file or a URL (can specify multiple)
      --set stringArray          set values on the command line
  -n, --name string              release name
      --wait                     if set, will wait until all resources are ready
  -h, --help                     help for install

Global Flags:
      --debug                    enable verbose output
      --kube-context string      name of the kubeconfig context to use
"""

DIFF_UPGRADE_HELP = """\
Show a diff explaining what a helm upgrade would change.

Usage:
  diff upgrade [flags] [RELEASE] [CHART]

Flags:
  -C, --context int              output NUM lines of context around changes (default -1)
  -f, --values valueFiles        specify values in a YAML file (can specify multiple)
      --set stringArray          set values on the command line
  -h, --help                     help for upgrade

Global Flags:
      --no-color                 remove colors from the output
"""

SOPS_METADATA = "sops:\n    version: 3.8.1\n"


def encrypt_text(plaintext, fmt="yaml"):
    if fmt == "json":
        document = json.loads(plaintext)
        document["sops"] = {"version": "3.8.1"}
        return json.dumps(document, indent="\t") + "\n"
    return plaintext + SOPS_METADATA


def decrypt_text(ciphertext, fmt="yaml"):
    if fmt == "json":
        document = json.loads(ciphertext)
        document.pop("sops", None)
        return json.dumps(document) + "\n"
    return ciphertext.split("sops:\n", 1)[0]


class FakeTools:
    """Replaces subprocess.run, answering like sops and helm would."""

    def __init__(self):
        self.calls = []
        self.helm_version = HELM_VERSION
        self.diff_version = "3.8.1"
        self.help_texts = {
            ("install",): INSTALL_HELP,
            ("upgrade",): INSTALL_HELP,
            ("lint",): INSTALL_HELP,
            ("diff", "upgrade"): DIFF_UPGRADE_HELP,
        }
        self.helm_returncode = 0
        self.sops_returncode = 0
        self.helm_runs = []
        # Content of the files named on helm's command line while it ran
        self.files_during_run = {}

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] == "sops":
            return self._sops(cmd, kwargs)
        return self._helm(cmd, kwargs)

    def calls_matching(self, *tokens):
        return [call for call in self.calls if all(token in call for token in tokens)]

    @property
    def help_calls(self):
        return [call for call in self.calls if call[0] != "sops" and call[-1] == "--help"]

    @property
    def decrypt_calls(self):
        return self.calls_matching("sops", "--decrypt")

    def _helm(self, cmd, kwargs):
        args = cmd[1:]
        if args == ["version", "--client", "--short"]:
            return subprocess.CompletedProcess(cmd, 0, stdout=self.helm_version + "\n", stderr="")
        if args == ["diff", "version"]:
            return subprocess.CompletedProcess(cmd, 0, stdout=self.diff_version + "\n", stderr="")
        if args and args[-1] == "--help" and kwargs.get("capture_output"):
            text = self.help_texts.get(tuple(args[:-1]), "")
            return subprocess.CompletedProcess(cmd, 0, stdout=text, stderr="")

        self.helm_runs.append(cmd)
        for arg in args:
            if Path(arg).is_file():
                self.files_during_run[arg] = Path(arg).read_text()
        return subprocess.CompletedProcess(cmd, self.helm_returncode)

    def _sops(self, cmd, kwargs):
        path = Path(cmd[-1])
        fmt = cmd[cmd.index("--input-type") + 1]

        if self.sops_returncode != 0:
            out = kwargs.get("stdout")
            if hasattr(out, "write"):
                out.write(b"partial")
            return subprocess.CompletedProcess(
                cmd, self.sops_returncode, stdout=b"", stderr=b"Failed to get the data key"
            )

        if "--encrypt" in cmd:
            ciphertext = encrypt_text(path.read_text(), fmt).encode()
            if "--in-place" in cmd:
                path.write_bytes(ciphertext)
                return subprocess.CompletedProcess(cmd, 0, stdout=b"", stderr=b"")
            return subprocess.CompletedProcess(cmd, 0, stdout=ciphertext, stderr=b"")

        if "--decrypt" in cmd:
            plaintext = decrypt_text(path.read_text(), fmt).encode()
            out = kwargs.get("stdout")
            if hasattr(out, "write"):
                out.write(plaintext)
                return subprocess.CompletedProcess(cmd, 0, stderr=b"")
            return subprocess.CompletedProcess(cmd, 0, stdout=plaintext, stderr=b"")

        # interactive edit
        return subprocess.CompletedProcess(cmd, 0)


@pytest.fixture(autouse=True)
def helm_env(tmp_path, monkeypatch):
    """Isolate every test from the user's helm setup."""
    plugin_dir = tmp_path / "plugin"
    monkeypatch.setenv("HELM_PLUGIN_DIR", str(plugin_dir))
    monkeypatch.setenv("HELM_BIN", "helm")
    monkeypatch.delenv("TILLER_HOST", raising=False)
    monkeypatch.delenv("HELM_SECRETS_DEC_SUFFIX", raising=False)
    monkeypatch.delenv("HELM_SECRETS_DEBUG", raising=False)
    return plugin_dir


@pytest.fixture
def tools(monkeypatch):
    fake = FakeTools()
    monkeypatch.setattr(subprocess, "run", fake)
    return fake


@pytest.fixture
def encrypted_file(tmp_path):
    """Factory for sops-encrypted files in tmp_path."""

    def make(name="secrets.yaml", plaintext="password: hunter2\n"):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        fmt = "json" if path.suffix == ".json" else "yaml"
        path.write_text(encrypt_text(plaintext, fmt))
        return path

    return make
