"""
Shared pytest fixtures and configuration for collection-importer tests.
"""

import json
from pathlib import Path

import pytest

from storage.sqlite import SQLiteCollectionStore


# ============================================================================
# Fixtures: iCalendar text
# ============================================================================

def build_vevent(
    summary: str,
    start: str,
    end: str | None = None,
    uid: str | None = None,
    location: str | None = None,
) -> str:
    """One VEVENT block; dates in iCalendar UTC form (20240110T100000Z)."""
    lines = ["BEGIN:VEVENT"]
    if uid:
        lines.append(f"UID:{uid}")
    lines.append("DTSTAMP:20240101T000000Z")
    lines.append(f"DTSTART:{start}")
    if end:
        lines.append(f"DTEND:{end}")
    lines.append(f"SUMMARY:{summary}")
    if location:
        lines.append(f"LOCATION:{location}")
    lines.append("END:VEVENT")
    return "\r\n".join(lines)


def build_ics(*components: str) -> str:
    """Wrap component blocks in a VCALENDAR."""
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//collection-importer//tests//EN"]
    lines.extend(components)
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture
def ics_builder():
    """Access to the VCALENDAR/VEVENT text builders."""
    class _Builder:
        vevent = staticmethod(build_vevent)
        calendar = staticmethod(build_ics)

    return _Builder


@pytest.fixture
def standup_ics() -> str:
    """Calendar with a single uid-tagged event."""
    return build_ics(
        build_vevent("Standup", "20240110T100000Z", "20240110T101500Z", uid="abc"),
    )


# ============================================================================
# Fixtures: Storage
# ============================================================================

@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary SQLite database path."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db: Path) -> SQLiteCollectionStore:
    """Initialized SQLite collection store."""
    return SQLiteCollectionStore(temp_db)


# ============================================================================
# Fixtures: File Paths / logs
# ============================================================================

@pytest.fixture
def schemas_dir() -> Path:
    """Path to schemas directory."""
    return Path(__file__).parent.parent / "collection_importer" / "schemas"


@pytest.fixture
def parse_json_lines():
    """Decode structured log lines emitted to stdout."""
    def _parse(captured: str) -> list[dict[str, object]]:
        lines = [line for line in captured.splitlines() if line.strip()]
        return [json.loads(line) for line in lines]

    return _parse


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "contract: contract schema compliance tests")
    config.addinivalue_line("markers", "integration: end-to-end integration tests")
    config.addinivalue_line("markers", "unit: unit tests")
