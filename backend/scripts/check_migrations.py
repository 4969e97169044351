#!/usr/bin/env python
"""Verify the delivery schema migrations form one linear chain."""
import sys
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory

BACKEND_DIR = Path(__file__).parent.parent


def load_script_directory(backend_dir: Path = BACKEND_DIR) -> ScriptDirectory:
    alembic_ini = backend_dir / "alembic.ini"
    if not alembic_ini.exists():
        raise FileNotFoundError(f"alembic.ini not found in {backend_dir}")
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(backend_dir / "alembic"))
    return ScriptDirectory.from_config(config)


def revision_problems(revisions, heads) -> list[str]:
    problems = []
    ids = [rev.revision for rev in revisions]
    duplicates = sorted({rev_id for rev_id in ids if ids.count(rev_id) > 1})
    if duplicates:
        problems.append(f"Duplicate revision IDs: {', '.join(duplicates)}")

    for rev in revisions:
        if rev.down_revision and rev.down_revision not in ids:
            problems.append(
                f"Revision {rev.revision} depends on unknown {rev.down_revision}"
            )

    # Two heads means two branches off the same revision
    if len(heads) > 1:
        problems.append(f"Multiple heads: {', '.join(heads)}")
    return problems


def check_migrations(backend_dir: Path = BACKEND_DIR) -> int:
    script = load_script_directory(backend_dir)
    problems = revision_problems(list(script.walk_revisions()), script.get_heads())
    for problem in problems:
        print(f"Error: {problem}")
    if problems:
        return 1
    print(f"Migration check passed (head {script.get_current_head()})")
    return 0


if __name__ == "__main__":
    sys.exit(check_migrations())
