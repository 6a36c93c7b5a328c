"""
Report revision/snapshot/artifact inconsistencies across all document families.

Usage:
  python scripts/check_integrity.py                 # structure only
  python scripts/check_integrity.py --verify-bytes  # also re-hash every locked artifact

Exit code 1 when anything is found.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.riskdocs.config import load_config  # noqa: E402
from app.riskdocs.storage import storage_from_config  # noqa: E402
from app.riskdocs.modules.document_lifecycle.artifacts import verify_artifact  # noqa: E402
from app.riskdocs.modules.document_lifecycle.integrity import (  # noqa: E402
    check_all_families,
    find_issued_without_artifact,
)
from app.riskdocs.modules.document_lifecycle.models import DocumentRevision  # noqa: E402
from app.riskdocs.modules.document_lifecycle.write_lock import install_write_lock  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main() -> int:
    ap = argparse.ArgumentParser(description=__doc__)
    ap.add_argument("--database-url", default=None)
    ap.add_argument("--verify-bytes", action="store_true", help="Re-read and hash every locked artifact.")
    args = ap.parse_args()

    db_url = (args.database_url or os.environ.get("DATABASE_URL") or "sqlite:///riskdocs.db").strip()
    failures = 0

    with script_session(db_url, on_factory=install_write_lock) as s:
        findings = check_all_families(s)
        for family_id, problems in sorted(findings.items()):
            for p in problems:
                print(f"family {family_id}: {p}")
                failures += 1

        for rev in find_issued_without_artifact(s):
            print(f"family {rev.family_id}: revision {rev.revision_number} ({rev.status}) has no locked artifact")
            failures += 1

        if args.verify_bytes:
            storage = storage_from_config(load_config())
            locked = s.query(DocumentRevision).filter(DocumentRevision.locked_artifact_locator.isnot(None)).all()
            for rev in locked:
                report = verify_artifact(s, rev.id, storage=storage)
                if not report.ok:
                    print(f"family {rev.family_id}: revision {rev.revision_number} artifact {report.reason}")
                    failures += 1
            print(f"Verified {len(locked)} locked artifacts.")

    print(f"{failures} problem(s) found." if failures else "No problems found.")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
