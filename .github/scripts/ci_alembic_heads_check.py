"""CI gate: assert the Alembic migration graph is a single chain.

A second root (down_revision = None) or a second head makes upgrade order
non-deterministic between the API container and the workers.

Expected state:
  Single root and head: a1c3e5f70001 (initial assessor schema)

If a new migration is added, it MUST chain off the existing head and this
script's EXPECTED_HEADS must be updated in the same change.

Usage:
  python .github/scripts/ci_alembic_heads_check.py
"""
from __future__ import annotations

import sys
from pathlib import Path

# Alembic needs the api directory on sys.path and the alembic.ini location.
api_root = Path(__file__).resolve().parents[2] / "apps" / "api"
sys.path.insert(0, str(api_root))

from alembic.config import Config
from alembic.script import ScriptDirectory

EXPECTED_HEADS = {"a1c3e5f70001"}
MAX_ROOTS = 1


def main() -> int:
    cfg = Config(str(api_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(api_root / "alembic"))

    script = ScriptDirectory.from_config(cfg)
    heads = set(script.get_heads())

    if heads != EXPECTED_HEADS:
        print("MIGRATION HEAD CHECK FAILED")
        print(f"  Expected heads: {sorted(EXPECTED_HEADS)}")
        print(f"  Actual heads:   {sorted(heads)}")
        for h in sorted(heads - EXPECTED_HEADS):
            print(f"    unexpected: {h}")
        for h in sorted(EXPECTED_HEADS - heads):
            print(f"    missing:    {h}")
        print("  Fix: chain the new migration off the current head and update EXPECTED_HEADS.")
        return 1

    revisions = list(script.walk_revisions())
    roots = [r.revision for r in revisions if r.down_revision is None]
    if len(roots) > MAX_ROOTS:
        print("MIGRATION ROOT CHECK FAILED")
        print(f"  Expected at most {MAX_ROOTS} root, found {len(roots)}: {sorted(roots)}")
        print("  Fix: new migrations must chain off an existing head, not use down_revision = None.")
        return 1

    print(f"Migration integrity check: OK ({len(heads)} heads, {len(roots)} roots, {len(revisions)} total)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
