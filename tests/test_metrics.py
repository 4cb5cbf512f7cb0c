import pytest

from storycraft.metrics import MetricsCollector, ProcessingMonitor, with_metrics


class FakeClock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def collector(clock):
    return MetricsCollector(services=('gemini', 'imagen'), clock=clock)


def test_current_metrics_aggregate_recent_requests(collector):
    collector.record_request('gemini', True, 200)
    collector.record_request('gemini', False, 400)
    collector.record_request('imagen', True, 1000, aspect_ratio='9:16', cost=0.04)

    current = collector.get_current_metrics()

    assert current['activeRequests'] == 3
    assert current['errorRate'] == pytest.approx(100 / 3)
    assert current['totalCost'] == pytest.approx(0.04)
    assert current['services']['gemini']['avgResponseTime'] == 300
    assert current['topAspectRatios'] == [{'ratio': '9:16', 'usage': pytest.approx(0.04)}]


def test_old_points_leave_the_window(collector, clock):
    collector.record_request('gemini', False, 100)
    clock.now += 301

    assert collector.get_current_metrics()['activeRequests'] == 0


def test_health_status_thresholds(collector):
    for _ in range(19):
        collector.record_request('gemini', True, 100)
    collector.record_request('gemini', False, 100)
    collector.record_request('imagen', True, 6000)

    health = collector.get_health_status()

    assert health['services']['gemini']['status'] == 'healthy'
    assert health['services']['imagen']['status'] == 'degraded'
    assert health['status'] == 'degraded'
    assert len(health['issues']) == 1


def test_health_unknown_without_traffic(collector):
    health = collector.get_health_status()

    assert health['status'] == 'healthy'
    assert health['services']['gemini']['status'] == 'unknown'


def test_cost_history_filters_and_retention(collector, clock):
    collector.record_cost('imagen', 'generate', 0.02, '16:9')
    collector.record_cost('imagen', 'generate', 0.03, '9:16')

    assert collector.get_total_cost('imagen', '9:16') == pytest.approx(0.03)

    clock.now += 25 * 3600
    collector.cleanup()
    assert collector.cost_entries == []


def test_with_metrics_decorator_records_failures(collector):
    @with_metrics('gemini', collector=collector)
    def explode():
        raise RuntimeError('x')

    with pytest.raises(RuntimeError):
        explode()

    assert collector.get_service_metrics('gemini')['failedRequests'] == 1


def test_export_contains_history(collector):
    collector.record_request('gemini', True, 50)

    exported = collector.export_metrics()

    assert exported['performanceHistory'][0]['service'] == 'gemini'
    assert set(exported['services']) == {'gemini', 'imagen'}


def test_processing_monitor_stats(clock):
    monitor = ProcessingMonitor(clock=clock)
    first = monitor.record_processing_start('https://youtube.com/shorts/abc', 'shorts')
    second = monitor.record_processing_start('https://youtube.com/watch?v=def')

    clock.now += 2
    monitor.record_processing_complete(first, 'primary', clock.now - 2, True)
    monitor.record_processing_complete(second, 'fallback', clock.now - 1, False, ValueError('quota'))

    stats = monitor.get_stats()
    assert stats['count'] == 2
    assert stats['successRate'] == 50
    assert stats['fallbackRate'] == 50
    assert stats['shortsPercentage'] == 50
    assert stats['averageDuration'] == pytest.approx(1500)
    assert stats['topErrors'] == [{'error': 'ValueError:quota', 'count': 1}]
    assert monitor.get_recent_events(1)[0].type == 'error'


def test_processing_monitor_report_and_reset(clock):
    monitor = ProcessingMonitor(clock=clock)
    event = monitor.record_processing_start('u')
    monitor.record_processing_complete(event, 'primary', clock.now, True)

    report = monitor.generate_report()
    assert 'Total requests:      1' in report
    assert 'primary: 1 (100.0%)' in report

    monitor.reset()
    assert monitor.get_stats()['count'] == 0
    assert monitor.get_recent_events() == []
