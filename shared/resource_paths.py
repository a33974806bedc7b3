"""Locate bundled assets and default runtime directories."""
from __future__ import annotations

from pathlib import Path


def project_root() -> Path:
    """Return the checkout root that holds ``public/`` and ``uploads/``."""
    return Path(__file__).resolve().parent.parent


def resolve_path(*segments: str) -> Path:
    """Resolve one or more path segments relative to the project root."""
    return project_root().joinpath(*segments)


def static_root() -> Path:
    return resolve_path("public")


def default_storage_dir() -> Path:
    return resolve_path("uploads")
