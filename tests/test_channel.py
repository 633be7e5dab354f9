"""Tests del canal acotado y del bus de eventos."""

import threading

import pytest

from capture_api.events import EVENT_CONNECT, EVENT_ERROR, EventBus
from capture_api.mqtt.channel import ChannelConfig, MessageChannel


# =============================================================================
# CANAL
# =============================================================================

class TestMessageChannel:

    def test_fifo(self):
        channel = MessageChannel(ChannelConfig(max_queue_size=10))
        for i in range(3):
            channel.put(i)
        assert [channel.get(timeout=0) for _ in range(3)] == [0, 1, 2]

    def test_drop_oldest_when_full(self):
        channel = MessageChannel(ChannelConfig(max_queue_size=2, drop_oldest=True))
        for i in range(3):
            assert channel.put(i) is True
        assert channel.get(timeout=0) == 1
        assert channel.get_stats()["dropped"] == 1

    def test_drop_newest_when_full(self):
        channel = MessageChannel(ChannelConfig(max_queue_size=2, drop_oldest=False))
        channel.put(0)
        channel.put(1)
        assert channel.put(2) is False
        assert channel.get(timeout=0) == 0

    def test_get_times_out(self):
        assert MessageChannel(ChannelConfig()).get(timeout=0.01) is None

    def test_close_wakes_consumer(self):
        channel = MessageChannel(ChannelConfig())
        result = []
        consumer = threading.Thread(target=lambda: result.append(channel.get()))
        consumer.start()

        channel.close()
        consumer.join(timeout=1.0)

        assert result == [None]
        assert channel.put("late") is False

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MQTT_QUEUE_MAX_SIZE", "50")
        monkeypatch.setenv("MQTT_DROP_OLDEST", "false")
        config = ChannelConfig.from_env()
        assert config.max_queue_size == 50
        assert config.drop_oldest is False


# =============================================================================
# EVENTOS
# =============================================================================

class TestEventBus:

    def test_handlers_receive_arguments(self):
        bus = EventBus()
        seen = []
        bus.register_handler(EVENT_ERROR, seen.append)
        bus.emit(EVENT_ERROR, "boom")
        assert seen == ["boom"]

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            EventBus().register_handler("subscribe", lambda: None)

    def test_failing_handler_does_not_block_others(self):
        bus = EventBus()
        seen = []

        def broken():
            raise RuntimeError("listener bug")

        bus.register_handler(EVENT_CONNECT, broken)
        bus.register_handler(EVENT_CONNECT, lambda: seen.append("ok"))
        bus.emit(EVENT_CONNECT)

        assert seen == ["ok"]

    def test_remove_handler(self):
        bus = EventBus()
        seen = []
        handler = seen.append
        bus.register_handler(EVENT_ERROR, handler)
        bus.remove_handler(EVENT_ERROR, handler)
        bus.remove_handler(EVENT_ERROR, handler)

        bus.emit(EVENT_ERROR, "x")

        assert seen == []
        assert bus.stats["emitted"][EVENT_ERROR] == 1
