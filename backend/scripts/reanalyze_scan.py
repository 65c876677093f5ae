#!/usr/bin/env python3
"""Re-run rule checks and scoring over the canonical pages stored for a scan.

Run with:
    python -m scripts.reanalyze_scan --scan-id <uuid> [--dry-run]
"""
from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import get_settings
from app.logging_config import configure_logging
from app.services.normalizer import FindingNormalizer
from app.services.scan_store import ScanStore
from app.services.scanner.rules import RuleEngine
from app.services.scoring import ScoringEngine
from app.services.wcag.types import Finding, FindingSource


def _finding_keys(findings: Sequence[Finding]) -> List[Tuple[str, str, str, str, int]]:
    """Identity of each finding across re-runs: location, rule, message and its occurrence among equals."""
    seen: Counter = Counter()
    keys = []
    for finding in findings:
        base = (finding.page_url, finding.rule_id, finding.element.selector, finding.message)
        keys.append(base + (seen[base],))
        seen[base] += 1
    return keys


def reanalyze(store: ScanStore, scan_id: str, *, dry_run: bool = False) -> Dict[str, object]:
    scan = store.get_scan(scan_id)
    if scan is None:
        raise SystemExit(f"Scan {scan_id} not found")
    pages = store.load_pages(scan_id)
    if not pages:
        raise SystemExit(f"Scan {scan_id} has no stored canonical pages")

    previous = store.load_findings(scan_id)
    flagged = {key for key, finding in zip(_finding_keys(previous), previous) if finding.false_positive}
    # AI findings cannot be regenerated offline; carry them over untouched
    kept_ai = [finding for finding in previous if finding.source == FindingSource.ai]

    engine = RuleEngine()
    raw = []
    for page in pages:
        raw.extend(engine.analyze(page))
    settings = get_settings()
    normalizer = FindingNormalizer(suppress_ai_duplicates=settings.suppress_ai_duplicates)
    regenerated = normalizer.normalize(raw, [], scan_id)
    findings: List[Finding] = [
        finding.mark_false_positive() if key in flagged else finding
        for key, finding in zip(_finding_keys(regenerated), regenerated)
    ]
    offset = len(findings)
    findings.extend(
        replace(finding, id=f"{scan_id}-{finding.rule_id}-{offset + index}")
        for index, finding in enumerate(kept_ai)
    )

    scoring = ScoringEngine()
    score = scoring.score(findings, store.previous_overall_score(scan.url, exclude_scan_id=scan_id))
    quick_wins = scoring.quick_wins(findings)
    top_issues = scoring.top_issues(findings)

    if not dry_run:
        store.update_analysis(scan_id, findings, score, quick_wins=quick_wins, top_issues=top_issues)

    return {
        "scan_id": scan_id,
        "pages": len(pages),
        "findings": len(findings),
        "previous_findings": len(previous),
        "score": score.to_dict(),
        "dry_run": dry_run,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-run rule checks and scoring for a stored scan.")
    parser.add_argument("--scan-id", required=True)
    parser.add_argument("--dry-run", action="store_true", help="Print the new score without saving it")
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    result = reanalyze(ScanStore(), args.scan_id, dry_run=args.dry_run)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
