from factories import make_log
from ideas_lab.services.run_logs import RunLogsStats, compute_logs_stats


def test_empty_logs():
    assert compute_logs_stats([]) == RunLogsStats()


def test_stats_counts_and_average():
    logs = [
        make_log(status="succeeded", latency_ms=100, tokens=50),
        make_log(status="failed", latency_ms=None, tokens=None),
        make_log(status="running", latency_ms=201, tokens=7),
    ]

    stats = compute_logs_stats(logs)

    assert stats.total == 3
    assert stats.success_count == 1
    assert stats.failed_count == 1
    assert stats.avg_latency_ms == 100
    assert stats.total_tokens == 57
    assert stats.to_dict() == {
        "total": 3,
        "successCount": 1,
        "failedCount": 1,
        "avgLatencyMs": 100,
        "totalTokens": 57,
    }


def test_average_latency_rounds_halves_up():
    stats = compute_logs_stats([make_log(latency_ms=2), make_log(latency_ms=3)])

    assert stats.avg_latency_ms == 3
