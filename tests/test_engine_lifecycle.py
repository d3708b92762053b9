"""
Integration tests for the crawl engine lifecycle: drain termination,
continuous mode, pause/restart/stop and lifecycle events.
"""

import json
import threading
import time
from collections import Counter

import pytest
from hypothesis import given, strategies as st

from crawl_orchestrator import CrawlEngine
from crawl_orchestrator.concurrent.events import EventListener
from crawl_orchestrator.concurrent.models import (
    EngineConfig,
    EngineState,
    FetchResponse,
    RuleDescriptor,
    Task,
    WorkerState
)
from crawl_orchestrator.concurrent.monitoring import EngineMonitor
from crawl_orchestrator.crawlers.base import BaseFetcher
from crawl_orchestrator.crawlers.pipelines import CollectingPipeline
from crawl_orchestrator.crawlers.rules import RegexRuleProvider
from crawl_orchestrator.utils.errors import ConfigurationError, EngineStateError


class RecordingFetcher(BaseFetcher):
    """Always succeeds; records every fetched url."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = []
        self.closed = 0
        self._lock = threading.Lock()

    def fetch(self, task, profile=None):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.calls.append(task.url)
        return FetchResponse(url=task.url, status_code=200, content=b"ok")

    def close(self):
        self.closed += 1


class RecordingListener(EventListener):
    def __init__(self):
        self.events = []

    def on_start(self, engine):
        self.events.append("start")

    def on_pause(self, engine):
        self.events.append("pause")

    def on_restart(self, engine):
        self.events.append("restart")

    def on_stop(self, engine):
        self.events.append("stop")


class RecordingMonitor(EngineMonitor):
    def __init__(self):
        self.exported = []
        self.unexported = []

    def export(self, snapshot):
        self.exported.append(snapshot)

    def unexport(self, snapshot):
        self.unexported.append(snapshot)


def record_url(response, task):
    return {"url": task.url}


def make_engine(threads=2, loop=False, parser=record_url, fetcher=None, listener=None, monitor=None, **config):
    config.setdefault("start_file", None)
    config.setdefault("proxy_file", None)
    return CrawlEngine(
        config=EngineConfig(thread_count=threads, loop=loop, retry=0, **config),
        rule_provider=RegexRuleProvider([RuleDescriptor("all", ".*", parser)]),
        fetcher=fetcher or RecordingFetcher(),
        pipeline=CollectingPipeline(),
        event_listener=listener,
        monitor=monitor or EngineMonitor()
    )


def wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestDrainMode:
    """Drain-to-completion termination."""

    def test_three_tasks_two_workers(self):
        listener = RecordingListener()
        fetcher = RecordingFetcher()
        engine = make_engine(threads=2, fetcher=fetcher, listener=listener)
        engine.add_start_urls("http://example.com/1", "http://example.com/2", "http://example.com/3")

        engine.start()
        assert engine.join(timeout=10)

        assert sorted(fetcher.calls) == ["http://example.com/1", "http://example.com/2", "http://example.com/3"]
        assert engine.barrier.count_downs == 2
        assert engine.barrier.remaining == 0
        assert listener.events.count("start") == 1
        assert listener.events.count("stop") == 1
        assert listener.events[-1] == "stop"
        assert engine.state == EngineState.STOPPED
        assert fetcher.closed == 1
        assert all(state == WorkerState.STOPPED.value for _, state in engine.snapshot().worker_states)

    def test_stop_after_completion_does_not_fire_again(self):
        listener = RecordingListener()
        engine = make_engine(listener=listener)
        engine.add_start_urls("http://example.com/1")
        engine.start()
        assert engine.join(timeout=10)

        assert engine.stop() is True
        assert listener.events.count("stop") == 1

    def test_run_blocks_on_calling_thread(self):
        fetcher = RecordingFetcher()
        engine = make_engine(threads=3, fetcher=fetcher)
        engine.add_start_urls(*[f"http://example.com/{i}" for i in range(10)])

        engine.run()

        assert engine.state == EngineState.STOPPED
        assert len(fetcher.calls) == 10
        assert engine.stats.records_emitted.get_value() == 10

    @given(
        threads=st.integers(min_value=1, max_value=4),
        fan_out=st.integers(min_value=1, max_value=3),
        depth=st.integers(min_value=0, max_value=3)
    )
    def test_does_not_terminate_before_follow_ups_processed(self, threads, fan_out, depth):
        def expanding_parser(response, task):
            level = task.metadata.get("level", 0)
            follow_ups = []
            if level < depth:
                follow_ups = [
                    task.derive(f"{task.url}/{n}", metadata={"level": level + 1})
                    for n in range(fan_out)
                ]
            return task.url, follow_ups

        fetcher = RecordingFetcher(delay=0.001)
        engine = make_engine(threads=threads, fetcher=fetcher, parser=expanding_parser)
        engine.add_start_urls("http://example.com/root")

        engine.start()
        assert engine.join(timeout=30)

        expected = sum(fan_out ** level for level in range(depth + 1))
        assert len(fetcher.calls) == expected
        assert len(set(fetcher.calls)) == expected
        assert engine.scheduler.is_quiescent()
        assert engine.barrier.count_downs == threads

    def test_no_start_tasks_terminates_immediately(self):
        engine = make_engine(threads=2)
        engine.start()
        assert engine.join(timeout=10)
        assert engine.state == EngineState.STOPPED

    def test_start_file_tasks_appended_after_programmatic(self, work_dir):
        start_file = work_dir / "starts.json"
        start_file.write_text(json.dumps([{"url": "http://example.com/from-file", "priority": 0}]), encoding="utf-8")
        fetcher = RecordingFetcher()
        engine = make_engine(threads=1, fetcher=fetcher, start_file=str(start_file))
        engine.add_start_urls("http://example.com/programmatic")

        engine.start()
        assert engine.join(timeout=10)

        assert fetcher.calls == ["http://example.com/programmatic", "http://example.com/from-file"]

    def test_malformed_start_file_fails_start(self, work_dir):
        start_file = work_dir / "starts.json"
        start_file.write_text("{not json", encoding="utf-8")
        engine = make_engine(start_file=str(start_file))

        with pytest.raises(ConfigurationError):
            engine.run()
        assert engine.state == EngineState.CONFIGURED


class TestContinuousMode:
    """Continuous mode only ends through stop()."""

    def test_runs_until_stopped(self):
        listener = RecordingListener()
        fetcher = RecordingFetcher()
        engine = make_engine(threads=2, loop=True, fetcher=fetcher, listener=listener)
        engine.add_start_urls("http://example.com/1")

        engine.start()
        assert wait_until(lambda: len(fetcher.calls) == 1)

        # Quiescent but not terminated
        assert engine.await_termination(timeout=0.3) is False
        assert engine.state == EngineState.RUNNING
        assert engine.barrier.remaining == 2

        # Still accepting work
        engine.add_start_urls("http://example.com/2")
        assert wait_until(lambda: len(fetcher.calls) == 2)

        assert engine.stop(wait=True, timeout=10) is True
        assert engine.barrier.count_downs == 2
        assert engine.state == EngineState.STOPPED
        assert listener.events.count("stop") == 1
        assert fetcher.closed == 1

    def test_stop_without_wait_tears_down_in_background(self):
        listener = RecordingListener()
        engine = make_engine(threads=3, loop=True, listener=listener)
        engine.start()
        assert wait_until(lambda: engine.barrier is not None)

        engine.stop(wait=False)

        assert engine.await_termination(timeout=10) is True
        assert wait_until(lambda: listener.events.count("stop") == 1)
        assert engine.state == EngineState.STOPPED

    def test_stop_before_start(self):
        listener = RecordingListener()
        fetcher = RecordingFetcher()
        engine = make_engine(loop=True, fetcher=fetcher, listener=listener)

        assert engine.stop() is True
        assert engine.state == EngineState.STOPPED
        assert listener.events == ["stop"]
        with pytest.raises(EngineStateError):
            engine.run()


class TestPauseRestart:
    """Cooperative pause boundary."""

    def test_pause_blocks_fetch_until_restart(self):
        listener = RecordingListener()
        fetcher = RecordingFetcher()
        engine = make_engine(threads=3, loop=True, fetcher=fetcher, listener=listener)
        engine.add_start_urls("http://example.com/warmup")
        engine.start()
        assert wait_until(lambda: len(fetcher.calls) == 1)

        assert engine.pause() is True
        assert engine.state == EngineState.PAUSED
        assert engine.begin_update_rules(timeout=5)

        urls = [f"http://example.com/paused/{i}" for i in range(6)]
        engine.add_start_urls(*urls)
        time.sleep(0.3)
        assert fetcher.calls == ["http://example.com/warmup"]

        assert engine.restart() is True
        assert wait_until(lambda: len(fetcher.calls) == 7)

        # Nothing lost or duplicated across the cycle
        assert Counter(fetcher.calls[1:]) == Counter(urls)
        assert engine.stop(wait=True, timeout=10)
        assert listener.events == ["start", "pause", "restart", "stop"]

    def test_pause_and_restart_are_idempotent(self):
        listener = RecordingListener()
        engine = make_engine(threads=2, loop=True, listener=listener)
        engine.start()
        assert wait_until(lambda: engine.state == EngineState.RUNNING)

        assert engine.pause() is True
        assert engine.pause() is False
        assert engine.restart() is True
        assert engine.restart() is False
        assert engine.stop(wait=True, timeout=10)
        assert listener.events.count("pause") == 1
        assert listener.events.count("restart") == 1

    def test_pause_before_start_is_noop(self):
        engine = make_engine()
        assert engine.pause() is False
        assert engine.restart() is False
        assert engine.state == EngineState.CONFIGURED

    def test_stop_while_paused_keeps_unprocessed_tasks(self):
        fetcher = RecordingFetcher()
        engine = make_engine(threads=2, loop=True, fetcher=fetcher)
        engine.start()
        assert wait_until(lambda: engine.state == EngineState.RUNNING)

        engine.pause()
        engine.add_start_urls("http://example.com/a", "http://example.com/b", "http://example.com/c")
        time.sleep(0.1)

        assert engine.stop(wait=True, timeout=10) is True
        assert fetcher.calls == []
        assert engine.scheduler.waiting_count == 3
        assert engine.scheduler.in_flight_count == 0


class TestEngineConfiguration:
    """Configure and start preconditions."""

    def test_missing_rule_source_is_fatal(self):
        with pytest.raises(ConfigurationError):
            CrawlEngine(config=EngineConfig(start_file=None, proxy_file=None))

    def test_start_twice_fails(self):
        engine = make_engine(loop=True)
        engine.start()
        with pytest.raises(EngineStateError):
            engine.start()
        assert wait_until(lambda: engine.state == EngineState.RUNNING)
        with pytest.raises(EngineStateError):
            engine.run()
        assert engine.stop(wait=True, timeout=10)

    def test_configure_after_start_fails(self):
        engine = make_engine()
        engine.run()
        with pytest.raises(EngineStateError):
            engine.configure(rule_provider=RegexRuleProvider())

    def test_add_task_after_stop_fails(self):
        engine = make_engine()
        engine.run()
        with pytest.raises(EngineStateError):
            engine.add_start_task(Task(url="http://example.com/late"))

    def test_fluent_start_registration(self):
        engine = make_engine()
        result = engine.add_start_urls("http://example.com/1").add_start_task(Task(url="http://example.com/2"))
        assert result is engine
        assert [t.url for t in engine.start_tasks] == ["http://example.com/1", "http://example.com/2"]


class TestObservability:
    """Monitor hooks, listener isolation and status reporting."""

    def test_monitor_receives_start_and_stop_snapshots(self):
        monitor = RecordingMonitor()
        engine = make_engine(threads=2, monitor=monitor)
        engine.add_start_urls("http://example.com/1", "http://example.com/2")
        engine.run()

        assert len(monitor.exported) == 1
        assert len(monitor.unexported) == 1
        assert monitor.exported[0].state == EngineState.RUNNING
        assert monitor.unexported[0].state == EngineState.STOPPED
        assert monitor.unexported[0].task_stats["tasks_processed"] == 2
        assert monitor.unexported[0].get_uptime() >= 0

    def test_failing_monitor_and_listener_do_not_break_crawl(self):
        class BrokenMonitor(EngineMonitor):
            def export(self, snapshot):
                raise RuntimeError("exporter down")

        class BrokenListener(EventListener):
            def on_start(self, engine):
                raise RuntimeError("listener bug")

        fetcher = RecordingFetcher()
        engine = make_engine(fetcher=fetcher, monitor=BrokenMonitor(), listener=BrokenListener())
        engine.add_start_urls("http://example.com/1")
        engine.run()

        assert fetcher.calls == ["http://example.com/1"]
        assert engine.state == EngineState.STOPPED

    def test_get_status(self):
        engine = make_engine(threads=2)
        engine.add_start_urls("http://example.com/1")
        engine.run()

        status = engine.get_status()
        assert status["state"] == "stopped"
        assert status["mode"] == "drain"
        assert status["thread_count"] == 2
        assert status["barrier_remaining"] == 0
        assert status["tasks"]["tasks_processed"] == 1
        assert status["queue"]["done_count"] == 1
        assert status["rules"] == ["all"]
        assert set(status["workers"]) == {"spider_0", "spider_1"}

    def test_context_manager_stops_engine(self):
        listener = RecordingListener()
        with make_engine(loop=True, listener=listener) as engine:
            engine.start()
            assert wait_until(lambda: engine.state == EngineState.RUNNING)

        assert engine.state == EngineState.STOPPED
        assert listener.events.count("stop") == 1
