import os
import shutil
from pathlib import Path
from typing import Dict, Optional, Sequence

import nox
from nox.project import load_toml
from nox.sessions import Session

ROOT_DIR: str = os.path.dirname(os.path.abspath(__file__))
MANIFEST_FILENAME = "pyproject.toml"
PROJECT_MANIFEST = load_toml(MANIFEST_FILENAME)
PROJECT_NAME: str = PROJECT_MANIFEST["project"]["name"]
PROJECT_NAME_NORMALIZED: str = PROJECT_NAME.replace("-", "_")

PROJECT_CODES_DIR: str = os.path.join("src", PROJECT_NAME_NORMALIZED)
DIST_DIR: str = os.path.join(ROOT_DIR, "dist")
BUILD_DIR: str = os.path.join(ROOT_DIR, "build")
TEST_DIR: str = os.path.join(ROOT_DIR, "tests")

DEFAULT_SESSION_KWARGS = {
    "reuse_venv": True,
    "venv_backend": "uv",
}

nox.options.default_venv_backend = "uv"


def install_group(session: Session, dependency_group: Optional[str]) -> None:
    if dependency_group is None:
        return
    dependencies = nox.project.dependency_groups(PROJECT_MANIFEST, dependency_group)
    session.install(*dependencies)
    session.log(f"Installed dependencies: {dependencies} for {dependency_group}")


def run_with_posargs(session: Session, *args: str, default_posargs: Sequence[str] = (),
                     env: Optional[Dict[str, str]] = None) -> None:
    session.run(*args, *(session.posargs or default_posargs), env=env or {})


# `nox -s test` or `nox -s test -- tests/test_analyzer.py -s -vv`
@nox.session(**DEFAULT_SESSION_KWARGS)
def test(session: Session):
    install_group(session, "dev")
    session.install("-e", ".")
    run_with_posargs(session, "python", "-m", "pytest", default_posargs=[TEST_DIR, "-s", "-vv"])


@nox.session(**DEFAULT_SESSION_KWARGS)
def clean(session: Session):
    for directory in (DIST_DIR, BUILD_DIR):
        if os.path.exists(directory):
            shutil.rmtree(directory)

    for root, dirs, _ in os.walk(ROOT_DIR):
        for name in dirs:
            if name == "__pycache__":
                cache_dir = Path(root) / name
                try:
                    shutil.rmtree(cache_dir)
                    session.log(f"Removed cache directory: {cache_dir}")
                except OSError as e:
                    session.log(f"Error removing {cache_dir}: {e}")


@nox.session(**DEFAULT_SESSION_KWARGS)
def format(session: Session):
    install_group(session, "dev")
    run_with_posargs(session, "ruff", "format", default_posargs=[PROJECT_CODES_DIR, "tests"])


@nox.session(**DEFAULT_SESSION_KWARGS)
def check(session: Session):
    install_group(session, "dev")
    run_with_posargs(session, "ruff", "check", default_posargs=[".", "--fix"])


@nox.session(name="type-check", **DEFAULT_SESSION_KWARGS)
def type_check(session: Session):
    install_group(session, "dev")
    run_with_posargs(session, "mypy", default_posargs=[PROJECT_CODES_DIR, "--check-untyped-defs"])


@nox.session(**DEFAULT_SESSION_KWARGS)
def build(session: Session):
    install_group(session, "build")
    session.run("uv", "build", external=True)


@nox.session(**DEFAULT_SESSION_KWARGS)
def ci(session: Session):
    session.notify("check")
    session.notify("type-check")
    session.notify("test")
