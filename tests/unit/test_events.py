"""Unit tests for the change feed."""
import asyncio
import json
import threading
from unittest.mock import patch

from pika.exceptions import AMQPConnectionError

from common.events import (
    ANNOUNCEMENT_CREATED,
    BOOKING_CREATED,
    NOTIFICATION_CREATED,
    ChangeFeed,
    RabbitForwarder,
)


def test_subscription_filters_event_types():
    feed = ChangeFeed()
    with feed.subscribe([BOOKING_CREATED]) as subscription:
        feed.publish(ANNOUNCEMENT_CREATED, 1)
        feed.publish(BOOKING_CREATED, 2)

        assert subscription.get(timeout=0.5).entity_id == 2
        assert subscription.get(timeout=0.05) is None


def test_user_scoped_subscription():
    feed = ChangeFeed()
    with feed.subscribe(user_id=7) as subscription:
        feed.publish(NOTIFICATION_CREATED, 1, user_id=8)
        feed.publish(NOTIFICATION_CREATED, 2, user_id=7)
        feed.publish(ANNOUNCEMENT_CREATED, 3)

        received = [subscription.get(timeout=0.5).entity_id for _ in range(2)]

    assert received == [2, 3]


def test_close_unsubscribes_and_wakes_readers():
    feed = ChangeFeed()
    subscription = feed.subscribe()
    assert feed.subscriber_count == 1

    subscription.close()
    feed.publish(BOOKING_CREATED, 1)

    assert feed.subscriber_count == 0
    assert subscription.get(timeout=0.05) is None


def test_async_subscription_receives_events_from_worker_threads():
    feed = ChangeFeed()

    async def scenario():
        subscription = feed.subscribe_async([NOTIFICATION_CREATED], user_id=4)
        worker = threading.Thread(
            target=feed.publish, args=(NOTIFICATION_CREATED, 11), kwargs={"user_id": 4}
        )
        worker.start()
        event = await subscription.next(timeout=1)
        idle = await subscription.next(timeout=0.01)
        subscription.close()
        after_close = await subscription.next(timeout=1)
        worker.join()
        return event, idle, after_close

    event, idle, after_close = asyncio.run(scenario())

    assert event.entity_id == 11
    assert idle is None
    assert after_close is None
    assert feed.subscriber_count == 0


def test_event_message_shape():
    event = ChangeFeed().publish(BOOKING_CREATED, 5, {"room_id": "Auditório"}, user_id=3)
    message = event.to_message()

    assert message["event"] == BOOKING_CREATED
    assert message["payload"] == {"room_id": "Auditório"}
    assert json.loads(json.dumps(message))["user_id"] == 3


@patch("common.events.pika.BlockingConnection")
def test_forwarder_publishes_persistent_messages(mock_connection):
    channel = mock_connection.return_value.channel.return_value
    feed = ChangeFeed(forwarder=RabbitForwarder("rabbitmq", "bookings"))

    feed.publish(BOOKING_CREATED, 9, user_id=1)

    channel.queue_declare.assert_called_once_with(queue="bookings", durable=True)
    kwargs = channel.basic_publish.call_args.kwargs
    assert kwargs["routing_key"] == "bookings"
    assert json.loads(kwargs["body"])["entity_id"] == 9
    assert kwargs["properties"].delivery_mode == 2
    mock_connection.return_value.close.assert_called_once()


@patch("common.events.pika.BlockingConnection", side_effect=AMQPConnectionError("down"))
def test_broker_outage_does_not_break_local_delivery(_):
    feed = ChangeFeed(forwarder=RabbitForwarder("rabbitmq", "bookings"))
    with feed.subscribe() as subscription:
        feed.publish(BOOKING_CREATED, 1)
        assert subscription.get(timeout=0.5).entity_id == 1
