from pathlib import Path

import pytest

FIXTURES = Path(__file__).parent / "fixtures"


def read_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


@pytest.fixture
def fixture_xml():
    return read_fixture


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cache.db")
