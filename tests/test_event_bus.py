import pytest
from pydantic import ValidationError as PydanticValidationError

from helmsman.event_bus import EVENT_TYPES, EventBus, GovernanceEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[GovernanceEvent] = []

    def dummy_subscriber(event: GovernanceEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    returned = test_bus.emit(
        event_type="tool_blocked",
        session_id="session-1",
        payload={"tool": "write"},
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event is returned
    assert event.event_type == "tool_blocked"
    assert event.session_id == "session-1"
    assert event.payload == {"tool": "write"}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_stop_delivery():
    test_bus = EventBus()
    received_events: list[GovernanceEvent] = []

    def broken_subscriber(event: GovernanceEvent):
        raise OSError("disk full")

    test_bus.subscribe(broken_subscriber)
    test_bus.subscribe(received_events.append)

    test_bus.emit("anchor_added", "session-1", {})

    assert [e.event_type for e in received_events] == ["anchor_added"]


def test_unsubscribe():
    test_bus = EventBus()
    received_events: list[GovernanceEvent] = []
    test_bus.subscribe(received_events.append)
    test_bus.unsubscribe(received_events.append)

    test_bus.emit("anchor_added", "session-1", {})

    assert received_events == []


def test_unknown_event_type_is_rejected():
    test_bus = EventBus()
    received_events: list[GovernanceEvent] = []
    test_bus.subscribe(received_events.append)

    with pytest.raises(PydanticValidationError):
        test_bus.emit("tool_blocekd", "session-1", {})

    assert received_events == []


def test_every_emitted_kind_is_a_known_event_type():
    assert {"state_degraded", "system_prompt_injected", "tool_executed_despite_denial"} <= EVENT_TYPES


def test_alert_events_are_flagged():
    test_bus = EventBus()

    assert test_bus.emit("tool_executed_despite_denial", "session-1", {}).is_alert
    assert test_bus.emit("state_degraded", "engine", {}).is_alert
    assert not test_bus.emit("tool_allowed", "session-1", {}).is_alert
