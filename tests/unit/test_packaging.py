"""Unit tests for pyproject.toml — runtime vs test dependencies."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

tomllib = pytest.importorskip("tomllib")

PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


def names(requirements: list[str]) -> set[str]:
    return {re.split(r"[\[<>=!~ ]", req, maxsplit=1)[0].lower() for req in requirements}


@pytest.fixture(scope="module")
def project() -> dict:
    with PYPROJECT.open("rb") as fh:
        return tomllib.load(fh)["project"]


def test_test_client_is_not_a_runtime_dependency(project) -> None:
    assert "httpx" not in names(project["dependencies"])
    assert "httpx" in names(project["optional-dependencies"]["test"])


def test_test_runners_only_in_test_extra(project) -> None:
    runtime = names(project["dependencies"])
    assert not runtime & {"pytest", "pytest-asyncio"}
