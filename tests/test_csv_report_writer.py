"""Tests for CSV report export."""
import csv
from github_metrics.domain.models import ContributorMetrics, RankedUser, RunStatistics
from github_metrics.infrastructure.csv_report_writer import CsvReportWriter, period_file_name


def read_rows(path):
    with open(path, newline='', encoding='utf-8') as f:
        return list(csv.reader(f))


def test_period_file_name():
    assert period_file_name("Last 2 Weeks") == "last_2_weeks.csv"


def test_write_period_in_ranking_order(tmp_path):
    """Test that contributors are written in ranking order."""
    metrics = {
        "alice": ContributorMetrics(commits=10, reviews=2, score=2.1),
        "bob": ContributorMetrics(commits=3, pull_requests=1),
    }
    ranking = [RankedUser("bob", 1), RankedUser("alice", 2)]

    path = CsvReportWriter(tmp_path / "reports").write_period("Last 4 Weeks", metrics, ranking)

    rows = read_rows(path)
    assert path.name == "last_4_weeks.csv"
    assert rows[0][:3] == ["rank", "user", "commits"]
    assert rows[1][:2] == ["1", "bob"]
    assert rows[2][:3] == ["2", "alice", "10"]
    assert rows[2][6] == "2.1"


def test_write_run_summary_lists_skipped_units(tmp_path):
    """Test that degraded units are visible in the run summary."""
    stats = RunStatistics(cache_hits=4, skipped=1, skipped_units=["issues:acme-x (skipped_exhausted)"])

    rows = read_rows(CsvReportWriter(tmp_path).write_run_summary(stats))

    assert ["cache_hits", "4"] in rows
    assert ["skipped", "1"] in rows
    assert ["skipped_unit", "issues:acme-x (skipped_exhausted)"] in rows
