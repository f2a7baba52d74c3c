"""Runtime configuration read from ``SPEC_MCP_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from .store import DEFAULT_STORAGE_DIR, FileDocumentStore

ENV_PROJECT_ROOT = "SPEC_MCP_PROJECT_ROOT"
ENV_STORAGE_DIR = "SPEC_MCP_STORAGE_DIR"
ENV_MAX_RETRIES = "SPEC_MCP_MAX_RETRIES"
ENV_LOCK_TIMEOUT = "SPEC_MCP_LOCK_TIMEOUT"
ENV_LOG_LEVEL = "SPEC_MCP_LOG_LEVEL"
ENV_LOG_FILE = "SPEC_MCP_LOG_FILE"

DEFAULT_MAX_RETRIES = 3
DEFAULT_LOCK_TIMEOUT = 5.0

SERVER_ROOT = Path(__file__).resolve().parent.parent


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ValueError(f"Environment variable {name} must not be negative, got {value}")
    return value


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    project_root: Optional[str] = None
    storage_dir: str = DEFAULT_STORAGE_DIR
    max_retries: int = DEFAULT_MAX_RETRIES
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read settings from the environment (``os.environ`` by default)."""
        environ = os.environ if environ is None else environ
        log_file = environ.get(ENV_LOG_FILE)
        return cls(
            project_root=environ.get(ENV_PROJECT_ROOT) or None,
            storage_dir=environ.get(ENV_STORAGE_DIR) or DEFAULT_STORAGE_DIR,
            max_retries=_int_env(environ, ENV_MAX_RETRIES, DEFAULT_MAX_RETRIES),
            lock_timeout=_float_env(environ, ENV_LOCK_TIMEOUT, DEFAULT_LOCK_TIMEOUT),
            log_level=(environ.get(ENV_LOG_LEVEL) or "INFO").upper(),
            log_file=Path(log_file).expanduser() if log_file else None,
        )

    def store(self, root: Path) -> FileDocumentStore:
        return FileDocumentStore(root, storage_dir=self.storage_dir, lock_timeout=self.lock_timeout)


def _candidate_bases(cwd: Optional[Path] = None) -> List[Path]:
    cwd = (cwd or Path.cwd()).resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    seen: set[Path] = set()
    ordered: List[Path] = []
    for base in bases:
        if base not in seen:
            seen.add(base)
            ordered.append(base)
    return ordered


def locate_workspace_root(storage_dir: str = DEFAULT_STORAGE_DIR, cwd: Optional[Path] = None) -> Optional[Path]:
    """Nearest directory at or above ``cwd`` that holds ``storage_dir``."""
    for base in _candidate_bases(cwd):
        if (base / storage_dir).is_dir():
            return base
    return None


def resolve_root(root: Optional[str], settings: Optional[Settings] = None, cwd: Optional[Path] = None) -> Path:
    """Pick the project root: explicit argument, environment, then detection.

    Raises:
        ValueError: the chosen root does not exist, or nothing was found.
    """
    settings = settings or Settings.from_env()
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    if settings.project_root:
        env_path = Path(settings.project_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {ENV_PROJECT_ROOT} points to '{settings.project_root}', which does not exist."
            )
        return env_path

    detected = locate_workspace_root(settings.storage_dir, cwd)
    if detected:
        return detected

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {ENV_PROJECT_ROOT} environment variable."
    )
