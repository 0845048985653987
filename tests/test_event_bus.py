"""Tests for the shared event publisher."""

import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from services.shared.errors import EventPublishError


class TestPublish:
    async def test_publishes_json_to_bus_target(self, publisher, redis):
        event = publisher.event("ecommerce.orders", "OrderCreated", {"order_id": "o-1"})

        await publisher.publish(event)

        ((channel, message),) = redis.published
        assert channel == "test-bus"
        assert message["source"] == "ecommerce.orders"
        assert message["event_type"] == "OrderCreated"
        assert message["data"]["order_id"] == "o-1"
        assert message["data"]["timestamp"] == event.timestamp.isoformat()

    async def test_explicit_bus_target(self, publisher, redis):
        event = publisher.event("s", "E", {}, bus_target="other-bus")

        await publisher.publish(event)

        assert redis.published[0][0] == "other-bus"

    async def test_events_are_immutable(self, publisher):
        event = publisher.event("s", "E", {})

        with pytest.raises(PydanticValidationError):
            event.event_type = "Other"

    async def test_required_publish_propagates_failure(self, publisher, redis):
        redis.unreachable = True

        with pytest.raises(EventPublishError) as exc_info:
            await publisher.publish(publisher.event("s", "OrderCreated", {}))

        assert exc_info.value.event_type == "OrderCreated"
        assert exc_info.value.kind.is_permanent is False


class TestAdvisoryPublish:
    async def test_best_effort_swallows_and_logs(self, publisher, redis, caplog):
        redis.unreachable = True

        with caplog.at_level(logging.ERROR):
            delivered = await publisher.publish_best_effort(
                publisher.event("s", "OrderUpdated", {})
            )

        assert delivered is False
        assert "Advisory event OrderUpdated was dropped" in caplog.text

    async def test_best_effort_reports_delivery(self, publisher, redis):
        assert await publisher.publish_best_effort(publisher.event("s", "E", {}))
        assert redis.event_types() == ["E"]

    async def test_detached_failure_goes_to_the_log(self, publisher, redis, caplog):
        redis.unreachable = True

        with caplog.at_level(logging.ERROR):
            task = publisher.publish_detached(publisher.event("s", "E", {}))
            await publisher.drain()

        assert task.done()
        assert publisher.pending == 0
        assert "Detached event publication failed" in caplog.text

    async def test_drain_waits_for_detached_publications(self, publisher, redis):
        for i in range(3):
            publisher.publish_detached(publisher.event("s", f"E{i}", {}))

        await publisher.drain()

        assert sorted(redis.event_types()) == ["E0", "E1", "E2"]
