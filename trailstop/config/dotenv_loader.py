"""
Dotenv loading for broker credentials and store URLs.

Files are read from TRAILSTOP_HOME (default: the working directory) in
this order, later files overriding earlier ones:

    .env                   shared defaults
    .env.<ENVIRONMENT>     e.g. .env.dev, .env.paper
    .env.local             per-machine overrides, never committed

Variables already exported in the process win over `.env`. In production
(`ENVIRONMENT=prod`) nothing is loaded; secrets come from the host.

Imported by trailstop.config.config, so it must not import it back.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

HOME_VAR = "TRAILSTOP_HOME"


def current_environment() -> str:
    return str(os.getenv("ENVIRONMENT") or "dev").strip().lower()


def dotenv_root(repo_root: Path | None = None) -> Path:
    if repo_root is not None:
        return Path(repo_root)
    home = os.getenv(HOME_VAR)
    return Path(home).expanduser() if home else Path.cwd()


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """
    Load the dotenv files that exist under the root.

    Returns:
        Paths actually loaded, in load order (empty in prod)
    """
    environment = current_environment()
    if environment == "prod":
        return []

    root = dotenv_root(repo_root)
    candidates = [
        (root / ".env", False),
        (root / f".env.{environment}", True),
        (root / ".env.local", True),
    ]

    loaded = []
    for path, override in candidates:
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
