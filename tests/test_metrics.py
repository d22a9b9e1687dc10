from banquet_tracker.core.metrics import MetricsCollector


def test_event_counters_and_timers():
    collector = MetricsCollector()
    collector.increment_event("freeze.count")
    collector.increment_event("freeze.count", 2)
    collector.increment_event("")
    collector.record_timer("boost.activate_s", 0.01)
    collector.record_timer("boost.activate_s", 0.03)

    snap = collector.snapshot()
    assert snap["events"] == {"freeze.count": 3}
    timer = snap["timers"]["boost.activate_s"]
    assert timer["count"] == 2
    assert round(timer["max_ms"]) == 30
    assert round(timer["min_ms"]) == 10


def test_http_stats_by_route_and_status():
    collector = MetricsCollector()
    collector.record_http("get", "/players/{player_id}", 200, 0.002)
    collector.record_http("GET", "/players/{player_id}", 404, 0.001)

    http = collector.snapshot()["http"]
    assert http["total_count"] == 2
    route = http["by_route"]["GET:/players/{player_id}"]
    assert route["count"] == 2
    assert route["status_counts"] == {"200": 1, "404": 1}


def test_reset_clears_everything():
    collector = MetricsCollector()
    collector.increment_event("trade.recorded")
    collector.record_http("POST", "/trades", 201, 0.005)
    collector.reset()
    snap = collector.snapshot()
    assert snap["events"] == {}
    assert snap["http"]["total_count"] == 0
    assert collector.uptime_s() >= 0
