#!/usr/bin/env -S uv run --script --quiet

# /// script
# dependencies = ["nox", "nox-uv"]
# ///

import shlex

from nox import Session, options
from nox_uv import session

options.default_venv_backend = "uv"
options.reuse_existing_virtualenvs = True
options.stop_on_first_error = True

PYTHON_VERSIONS = ["3.10", "3.11", "3.12", "3.13"]


@session(name="lint", uv_groups=["dev"], uv_all_extras=True)
def lint(s: Session) -> None:
    s.run(*shlex.split("uv run ruff check --output-format=github ."))
    s.run(*shlex.split("uv run ruff format --check --diff ."))
    s.run(*shlex.split("uv run mypy --config-file=pyproject.toml"))


@session(python=PYTHON_VERSIONS, name="tests", uv_groups=["dev"], uv_all_extras=True)
def tests(s: Session) -> None:
    """Run tests with coverage on multiple Python versions."""
    s.run(
        "uv",
        "run",
        "pytest",
        "--cov=sqlflight",
        "--cov-report=xml",
        "--cov-report=term",
        "--cov-branch",
        "--cov-fail-under=70",
        "--junit-xml=pytest.xml",
        "-v",
    )


@session(name="clean", default=False)
def clean(s: Session):
    """Clean build artifacts and cache files."""
    import pathlib
    import shutil

    for name in ["dist", "build", ".nox", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".coverage", "htmlcov"]:
        path = pathlib.Path(name)
        if not path.exists():
            continue
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        s.log(f"Removed {name}")

    for cache_dir in pathlib.Path(".").rglob("__pycache__"):
        shutil.rmtree(cache_dir, ignore_errors=True)
