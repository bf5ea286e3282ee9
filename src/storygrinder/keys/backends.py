"""Key sources: environment variables, JSON secret files, system keyring.

Every loader returns a stripped key or raises ``ValueError`` whose first
line is safe to log.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import KeyringError


def load_from_env(*var_names: str) -> str:
    """Return the first non-blank value among ``var_names``."""
    for name in var_names:
        value = os.environ.get(name, "").strip()
        if value:
            return value

    shown = " or ".join(var_names)
    first = var_names[0] if var_names else "API_KEY"
    raise ValueError(
        f"Environment variable {shown} not set.\n"
        f"  Unix/macOS: export {first}=your-api-key\n"
        f"  PowerShell: $env:{first} = 'your-api-key'"
    )


def load_from_json(file_path: str, key_name: str) -> str:
    """Read a key from a JSON secrets file.

    ``key_name`` is a dotted path into nested objects, e.g. ``"llm.gemini"``.
    """
    path = Path(file_path).expanduser()
    if not path.is_file():
        raise ValueError(f"API key file not found: {file_path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ValueError(f"Cannot read API key file {file_path}: {e}") from e
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {file_path}: {e}") from e

    for part in key_name.split("."):
        if not isinstance(data, dict) or part not in data:
            raise ValueError(f"Key '{key_name}' not found in {file_path}")
        data = data[part]

    if not isinstance(data, str):
        raise ValueError(f"Key '{key_name}' in {file_path} is not a string")
    return data.strip()


def load_from_keyring(service: str, account: str) -> str:
    """Read a key from the OS credential store through ``keyring``."""
    try:
        key = keyring.get_password(service, account)
    except KeyringError as e:
        raise ValueError(f"Failed to access system keyring ({service}/{account}): {e}") from e

    if not key or not key.strip():
        raise ValueError(
            f"API key not found in system keyring ({service}/{account}).\n"
            f"  Store it with: keyring set {service} {account}"
        )
    return key.strip()
