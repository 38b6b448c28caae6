import re
from pathlib import Path


VERSIONS_DIR = Path(__file__).resolve().parents[2] / "alembic" / "versions"
_REVISION = re.compile(r'^revision = "([^"]+)"', re.MULTILINE)
_DOWN_REVISION = re.compile(r'^down_revision = (?:"([^"]+)"|None)', re.MULTILINE)


def _revisions() -> dict[str, str | None]:
    chain = {}
    for migration_file in sorted(VERSIONS_DIR.glob("*.py")):
        text = migration_file.read_text(encoding="utf-8")
        revision = _REVISION.search(text)
        down = _DOWN_REVISION.search(text)
        assert revision and down, f"{migration_file.name} is missing revision markers"
        chain[revision.group(1)] = down.group(1)
    return chain


def test_revision_ids_fit_version_table():
    """Postgres alembic_version.version_num is varchar(32)."""
    too_long = [revision for revision in _revisions() if len(revision) > 32]

    assert not too_long, f"Alembic revision IDs must be <= 32 chars, found: {too_long}"


def test_revisions_form_a_single_linear_chain():
    chain = _revisions()
    roots = [revision for revision, down in chain.items() if down is None]
    parents = [down for down in chain.values() if down is not None]

    assert roots == ["0001_initial"]
    assert len(parents) == len(set(parents)), "two migrations share a parent"
    assert set(parents) <= set(chain)
