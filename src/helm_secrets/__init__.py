"""
helm-secrets - SOPS integration for Helm.

Keep secrets files encrypted in git and decrypt them only for the
duration of a helm command.

Features:
- enc/dec/view/edit: encrypt, decrypt, view or edit secrets files with sops
- clean: remove decrypted files left behind in a directory
- install/upgrade/lint/diff: run helm with secrets[.*].yaml values files
  decrypted on the fly and removed afterwards

Requires: sops, helm
"""

__version__ = "0.1.0"
