from __future__ import annotations

from pathlib import Path

import pytest

_CRITICAL_TEST_FILES = {
    "test_output_capture.py",
    "test_session_bridge.py",
    "test_agent_loop.py",
}


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if name in _CRITICAL_TEST_FILES:
            item.add_marker(pytest.mark.critical_regression)
