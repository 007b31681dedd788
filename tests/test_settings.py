"""Tests for settings loading and the runner's component factories."""

from pathlib import Path

import pytest

from notifier.broker import InMemoryBroker, SqliteBroker
from notifier.dead_letter import MemoryDeadLetterSink, SqliteDeadLetterSink
from notifier.observability import Collector
from notifier.runner import (
    build_broker,
    build_dead_letter_sink,
    build_dispatcher,
    build_publisher,
)
from notifier.settings import get_default_settings, get_setting, load_settings, reload_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    reload_settings()
    yield
    reload_settings()


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path)
        assert get_setting(settings, "topics.events") == "patient"
        assert get_setting(settings, "retry.max_attempts") == 5

    def test_yaml_overrides_are_merged(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text(
            "consumer:\n  group_id: billing-group\nretry:\n  max_attempts: 3\n",
            encoding="utf-8",
        )
        settings = load_settings(tmp_path)
        assert get_setting(settings, "consumer.group_id") == "billing-group"
        assert get_setting(settings, "consumer.poll_timeout") == 1.0
        assert get_setting(settings, "retry.max_attempts") == 3
        assert get_setting(settings, "retry.base_delay") == 0.5

    def test_cached_until_reload(self, tmp_path: Path) -> None:
        first = load_settings(tmp_path)
        (tmp_path / "settings.yaml").write_text("topics:\n  events: billing\n", encoding="utf-8")
        assert load_settings(tmp_path) is first
        reload_settings()
        assert get_setting(load_settings(tmp_path), "topics.events") == "billing"

    def test_broken_yaml_falls_back_to_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text("retry: [unclosed\n", encoding="utf-8")
        assert get_setting(load_settings(tmp_path), "retry.max_attempts") == 5

    def test_numeric_values_are_coerced_or_reverted(self, tmp_path: Path) -> None:
        (tmp_path / "settings.yaml").write_text(
            "retry:\n  max_attempts: three\n  base_delay: '0.25'\n"
            "consumer:\n  shutdown_grace: 3\n  idempotency_capacity: true\n"
            "reconnect: 5\n",
            encoding="utf-8",
        )
        settings = load_settings(tmp_path)
        assert get_setting(settings, "retry.max_attempts") == 5
        assert get_setting(settings, "retry.base_delay") == 0.25
        assert isinstance(get_setting(settings, "consumer.shutdown_grace"), float)
        assert get_setting(settings, "consumer.idempotency_capacity") == 10000
        assert get_setting(settings, "reconnect.max_delay") == 10.0

    def test_get_setting_missing_path(self) -> None:
        assert get_setting({"a": {"b": 1}}, "a.c", "x") == "x"
        assert get_setting({"a": 1}, "a.b") is None

    def test_defaults_are_copies(self) -> None:
        defaults = get_default_settings()
        defaults["retry"]["max_attempts"] = 99
        assert get_default_settings()["retry"]["max_attempts"] == 5


class TestFactories:
    def test_memory_backends(self, tmp_path: Path) -> None:
        settings = get_default_settings()
        settings["broker"]["backend"] = "memory"
        settings["dead_letter"]["backend"] = "memory"
        assert isinstance(build_broker(settings, tmp_path), InMemoryBroker)
        assert isinstance(build_dead_letter_sink(settings, tmp_path), MemoryDeadLetterSink)

    def test_sqlite_backends(self, tmp_path: Path) -> None:
        settings = get_default_settings()
        assert isinstance(build_broker(settings, tmp_path), SqliteBroker)
        assert isinstance(build_dead_letter_sink(settings, tmp_path), SqliteDeadLetterSink)

    def test_unknown_backend(self, tmp_path: Path) -> None:
        settings = get_default_settings()
        settings["broker"]["backend"] = "carrier-pigeon"
        with pytest.raises(ValueError):
            build_broker(settings, tmp_path)

    def test_dispatcher_and_publisher_use_configured_topic(self) -> None:
        settings = get_default_settings()
        settings["topics"]["events"] = "billing"
        broker = InMemoryBroker()
        collector = Collector()
        dispatcher = build_dispatcher(settings, broker, collector, MemoryDeadLetterSink())
        publisher = build_publisher(settings, broker, collector)
        assert publisher.topic == "billing"
        assert not dispatcher.running
