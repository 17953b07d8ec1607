from pathlib import Path

import pytest

from helpers import FakeToolProviderService, make_tool


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Never read the developer's ~/.flowrun/configuration.json."""
    monkeypatch.setenv("FLOWRUN_CONFIG", str(tmp_path / "no-config.json"))
    monkeypatch.delenv("FLOWRUN_LOG_LEVEL", raising=False)


@pytest.fixture
def search_service() -> FakeToolProviderService:
    return FakeToolProviderService(
        tools={"search": [make_tool("lookup", "search", query={"type": "string"})]},
        results={("search", "lookup"): "42 results"},
    )
