from datetime import datetime, timedelta

import pytest

from app.services.errors import InvalidTransition
from app.services.scan_state import ScanStateMachine, ScanStatus, ScanSummary, progress_for

START = datetime(2024, 1, 1, 12, 0, 0)


def _machine():
    return ScanStateMachine("scan-1", clock=lambda: START)


def test_happy_path_progress_values():
    machine = _machine()
    assert machine.state.status == ScanStatus.queued
    assert machine.state.progress == 0
    assert machine.state.start_time == START.isoformat()

    assert machine.start().progress == 5
    assert machine.begin_crawl(1, "https://example.com/").progress == 20
    assert machine.discovered(4).progress == 20
    assert machine.page_done("https://example.com/").progress == 35
    assert machine.page_done("https://example.com/a").progress == 50
    assert machine.page_done("https://example.com/b").progress == 65
    assert machine.page_done("https://example.com/c").progress == 80
    assert machine.analyzing().progress == 85
    assert machine.generating_report().progress == 95

    final = machine.complete(ScanSummary(total_violations=3, critical_issues=1, quick_wins=2, overall_score=91))
    assert final.status == ScanStatus.completed
    assert final.progress == 100
    assert final.current_step == "Scan completed successfully"
    assert final.estimated_completion is None
    assert machine.terminal is True


def test_crawl_progress_formula():
    assert progress_for(ScanStatus.crawling, 0, 0) == 20
    assert progress_for(ScanStatus.crawling, 3, 1) == 40
    assert progress_for(ScanStatus.crawling, 3, 3) == 80
    assert progress_for(ScanStatus.crawling, 2, 5) == 80


def test_progress_never_decreases_when_more_pages_are_found():
    machine = _machine()
    machine.start()
    machine.begin_crawl(1, "https://example.com/")
    assert machine.page_done("https://example.com/").progress == 80

    # Discovering more pages would recompute a lower value
    assert machine.discovered(5).progress == 80
    assert machine.state.pages_discovered == 5


def test_illegal_transitions_raise():
    machine = _machine()
    with pytest.raises(InvalidTransition):
        machine.analyzing()

    machine.start()
    with pytest.raises(InvalidTransition) as excinfo:
        machine.complete(ScanSummary(0, 0, 0, 100))
    assert excinfo.value.current == "starting"
    assert excinfo.value.target == "completed"


def test_terminal_states_accept_no_transitions():
    machine = _machine()
    machine.start()
    machine.fail("Browser crashed")

    with pytest.raises(InvalidTransition):
        machine.begin_crawl(1, "https://example.com/")
    with pytest.raises(InvalidTransition):
        machine.fail("again")


def test_page_errors_are_recorded_in_order():
    machine = _machine()
    machine.start()
    machine.begin_crawl(3, "https://example.com/")
    machine.page_done("https://example.com/", error="Navigation timeout")
    machine.page_done("https://example.com/a")
    state = machine.page_done("https://example.com/b", error="HTTP 500")

    assert state.pages_crawled == 3
    assert [(entry.page, entry.error) for entry in state.errors] == [
        ("https://example.com/", "Navigation timeout"),
        ("https://example.com/b", "HTTP 500"),
    ]


def test_fail_appends_system_error_and_resets_progress():
    machine = _machine()
    machine.start()
    machine.begin_crawl(2, "https://example.com/")

    state = machine.fail("No pages could be analyzed")
    assert state.status == ScanStatus.failed
    assert state.progress == 0
    assert state.current_step == "Scan failed: No pages could be analyzed"
    assert state.failure_reason == "No pages could be analyzed"
    assert state.errors[-1].page == "system"
    assert state.errors[-1].error == "No pages could be analyzed"


def test_estimated_completion_while_crawling():
    machine = _machine()
    machine.start()
    quick = machine.begin_crawl(4, "https://example.com/")
    assert quick.estimated_completion == (START + timedelta(milliseconds=4 * 3000)).isoformat()

    deep = machine.discovered(10)
    assert deep.estimated_completion == (START + timedelta(milliseconds=10 * 8000)).isoformat()


def test_state_dict_uses_wire_names():
    machine = _machine()
    machine.start()
    machine.begin_crawl(1, "https://example.com/")
    payload = machine.state.to_dict()

    assert payload["scanId"] == "scan-1"
    assert payload["status"] == "crawling"
    assert payload["currentPage"] == "https://example.com/"
    assert payload["errors"] == []
    assert "metadata" not in payload

    machine.page_done("https://example.com/")
    machine.analyzing()
    machine.generating_report()
    done = machine.complete(ScanSummary(2, 1, 1, 90)).to_dict()
    assert done["metadata"] == {"totalViolations": 2, "criticalIssues": 1, "quickWins": 1, "overallScore": 90}
    assert "estimatedCompletion" not in done
