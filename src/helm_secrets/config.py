"""Configuration for helm-secrets.

Everything is read from the environment at call time, the same variables
helm exports to its plugins.
"""

import os
from pathlib import Path
from typing import Optional

DEFAULT_DEC_SUFFIX = ".dec"
DEFAULT_HELM_BIN = "helm"


def get_dec_suffix() -> str:
    """Suffix appended to decrypted files (secrets.yaml -> secrets.yaml.dec)."""
    return os.environ.get("HELM_SECRETS_DEC_SUFFIX") or DEFAULT_DEC_SUFFIX


def get_helm_bin() -> str:
    """Helm executable, normally set by helm itself when running a plugin."""
    return os.environ.get("HELM_BIN") or DEFAULT_HELM_BIN


def get_tiller_host() -> Optional[str]:
    """Alternate tiller host passed to helm as --host, if any."""
    return os.environ.get("TILLER_HOST") or None


def get_plugin_dir() -> Path:
    """Directory holding the cached helm option grammars.

    Helm sets HELM_PLUGIN_DIR for plugins. Outside of helm we follow the
    XDG spec for cache files.
    """
    plugin_dir = os.environ.get("HELM_PLUGIN_DIR")
    if plugin_dir:
        return Path(plugin_dir).expanduser()

    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache:
        base = Path(xdg_cache)
    else:
        base = Path.home() / ".cache"
    return base / "helm-secrets"


def is_debug() -> bool:
    return os.environ.get("HELM_SECRETS_DEBUG", "").lower() in ("1", "true", "yes", "on")
