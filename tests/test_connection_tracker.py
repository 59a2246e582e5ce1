import pytest

from session_relay import errors
from session_relay.records import ConnectionKind, ConnectionState, SignalKind
from session_relay.schemas import RoomCreate
from session_relay.services.connection_tracker import canonical_pair_id

State = ConnectionState


class TestPairId:
    def test_symmetric(self):
        assert canonical_pair_id("alice", "bob") == canonical_pair_id("bob", "alice")

    def test_separator_in_ids_cannot_collide(self):
        assert canonical_pair_id("a:b", "c") != canonical_pair_id("a", "b:c")

    def test_distinct_pairs_differ(self):
        assert canonical_pair_id("alice", "bob") != canonical_pair_id("alice", "carol")


class TestCreateConnection:
    def test_one_record_per_unordered_pair(self, tracker, lobby):
        first = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(first.id, State.CONNECTED)

        again = tracker.create_connection("bob", "alice", "lobby")

        assert again is first
        assert again.state == State.CONNECTED
        assert len(tracker) == 1
        assert tracker.total_connections == 1

    def test_records_initiator_and_kind(self, tracker, lobby):
        connection = tracker.create_connection("bob", "alice", "lobby", ConnectionKind.AUDIO_ONLY)

        assert connection.participants == ("alice", "bob")
        assert connection.initiator_id == "bob"
        assert connection.kind == ConnectionKind.AUDIO_ONLY
        assert connection.state == State.NEW

    def test_failed_connection_is_replaced(self, tracker, lobby, clock, scheduler):
        old = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(old.id, State.FAILED)

        fresh = tracker.create_connection("alice", "bob", "lobby")
        assert fresh is not old
        assert fresh.state == State.NEW

        # the cleanup scheduled for the old record must leave the new one alone
        clock.advance(10)
        scheduler.run_pending()
        assert tracker.get(fresh.id) is fresh

    def test_requires_distinct_participants(self, tracker, lobby):
        with pytest.raises(errors.ValidationError):
            tracker.create_connection("alice", "alice", "lobby")
        with pytest.raises(errors.ValidationError):
            tracker.create_connection("alice", "", "lobby")

    def test_requires_existing_room(self, tracker):
        with pytest.raises(errors.RoomNotFound):
            tracker.create_connection("alice", "bob", "nowhere")

    def test_limit_applies_to_initiator(self, tracker, lobby):
        tracker.create_connection("alice", "bob", "lobby")
        tracker.create_connection("alice", "carol", "lobby")

        with pytest.raises(errors.ConnectionLimitExceeded) as exc:
            tracker.create_connection("alice", "dave", "lobby")
        assert exc.value.code == "CONNECTION_LIMIT_EXCEEDED"
        assert tracker.get_connection("alice", "dave") is None

    def test_limit_applies_to_responder(self, tracker, lobby):
        tracker.create_connection("bob", "x", "lobby")
        tracker.create_connection("bob", "y", "lobby")

        with pytest.raises(errors.ConnectionLimitExceeded):
            tracker.create_connection("carol", "bob", "lobby")

    def test_existing_pair_allowed_at_limit(self, tracker, lobby):
        tracker.create_connection("alice", "bob", "lobby")
        tracker.create_connection("alice", "carol", "lobby")
        assert tracker.create_connection("bob", "alice", "lobby") is tracker.get_connection("alice", "bob")


class TestStateMachine:
    def test_offer_connect_fail_cleanup(self, tracker, lobby, clock, scheduler):
        tracker.record_offer("alice", "bob", "lobby", {"sdp": "v=0"})
        connection = tracker.get_connection("alice", "bob")
        assert connection.state == State.CONNECTING

        clock.advance(2)
        tracker.transition(connection.id, State.CONNECTED)
        assert connection.connected_at == clock.now()
        assert connection.stats.setup_time == pytest.approx(2)
        assert tracker.active_connections == 1

        tracker.transition(connection.id, State.FAILED)
        assert tracker.active_connections == 0
        assert tracker.get(connection.id) is connection

        clock.advance(4)
        scheduler.run_pending()
        assert tracker.get(connection.id) is connection

        clock.advance(1)
        scheduler.run_pending()
        assert tracker.get(connection.id) is None

    def test_recovered_connection_survives_cleanup(self, tracker, lobby, clock, scheduler):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.CONNECTED)
        tracker.transition(connection.id, State.DISCONNECTED)

        clock.advance(10)
        tracker.transition(connection.id, State.CONNECTED)
        clock.advance(30)
        scheduler.run_pending()

        assert tracker.get(connection.id) is connection
        assert connection.state == State.CONNECTED

    def test_disconnected_is_reclaimed(self, tracker, lobby, clock, scheduler):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.CONNECTED)
        tracker.transition(connection.id, State.DISCONNECTED)

        clock.advance(30)
        scheduler.run_pending()
        assert tracker.get(connection.id) is None

    def test_closed_is_reclaimed_quickly(self, tracker, lobby, clock, scheduler):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.CLOSED)

        clock.advance(1)
        scheduler.run_pending()
        assert tracker.get(connection.id) is None

    @pytest.mark.parametrize(
        "path, bad",
        [
            ([], State.DISCONNECTED),
            ([State.FAILED], State.CONNECTED),
            ([State.CONNECTED], State.CONNECTING),
        ],
    )
    def test_invalid_transition_raises(self, tracker, lobby, path, bad):
        connection = tracker.create_connection("alice", "bob", "lobby")
        for state in path:
            tracker.transition(connection.id, state)

        with pytest.raises(errors.StateError):
            tracker.transition(connection.id, bad)

    def test_same_state_only_touches_activity(self, tracker, lobby, clock):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.CONNECTED)
        clock.advance(3)
        tracker.transition(connection.id, State.CONNECTED)

        assert connection.last_activity == clock.now()
        assert tracker.active_connections == 1

    def test_unknown_connection(self, tracker):
        with pytest.raises(errors.ConnectionNotFound):
            tracker.transition("conn:x:y", State.CONNECTED)

    def test_close_participant(self, tracker, lobby):
        with_bob = tracker.create_connection("alice", "bob", "lobby")
        with_carol = tracker.create_connection("carol", "alice", "lobby")
        tracker.transition(with_bob.id, State.CONNECTED)

        touched = tracker.close_participant("alice", "lobby", State.DISCONNECTED)

        assert sorted(touched) == sorted([with_bob.id, with_carol.id])
        assert with_bob.state == State.DISCONNECTED
        # never connected, so there is nothing to resume
        assert with_carol.state == State.CLOSED

    def test_close_participant_from_failed(self, tracker, lobby):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.FAILED)

        tracker.close_participant("bob", "lobby", State.DISCONNECTED)
        assert connection.state == State.CLOSED


class TestSignaling:
    def test_answer_without_offer_fails_connection(self, tracker, lobby):
        connection = tracker.create_connection("alice", "bob", "lobby")

        assert tracker.record_answer("bob", "alice", "lobby", {"sdp": "answer"}) is None
        assert connection.state == State.FAILED
        assert tracker.queued_messages("lobby", "alice") == []

    def test_answer_with_no_connection_is_dropped(self, tracker, lobby):
        assert tracker.record_answer("bob", "alice", "lobby", {"sdp": "answer"}) is None
        assert tracker.get_connection("alice", "bob") is None

    def test_answer_after_offer_is_queued(self, tracker, lobby):
        tracker.record_offer("alice", "bob", "lobby", {"sdp": "offer"})
        message = tracker.record_answer("bob", "alice", "lobby", {"sdp": "answer"})

        assert message.kind == SignalKind.ANSWER
        assert tracker.get_connection("alice", "bob").answer == {"sdp": "answer"}
        assert tracker.queued_messages("lobby", "alice") == [message]

    def test_ice_candidate_needs_live_connection(self, tracker, lobby):
        assert tracker.record_ice_candidate("alice", "bob", "lobby", {"candidate": "c"}) is None

        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.FAILED)
        assert tracker.record_ice_candidate("alice", "bob", "lobby", {"candidate": "c"}) is None

    def test_queue_is_fifo_and_bounded(self, tracker, lobby):
        tracker.record_offer("alice", "bob", "lobby", "o")
        for candidate in ("c1", "c2", "c3"):
            tracker.record_ice_candidate("alice", "bob", "lobby", candidate)

        assert [m.payload for m in tracker.queued_messages("lobby", "bob")] == ["c1", "c2", "c3"]
        assert tracker.dropped_messages == 1

    def test_queues_are_per_room(self, tracker, registry, lobby):
        registry.create_room(RoomCreate(id="hall", name="Hall"))
        tracker.record_offer("alice", "bob", "lobby", "o")

        assert tracker.queued_messages("hall", "bob") == []
        assert len(tracker.queued_messages("lobby", "bob")) == 1

    def test_drain_and_restore_keep_order(self, tracker, lobby):
        tracker.record_offer("alice", "bob", "lobby", "m1")
        tracker.record_ice_candidate("alice", "bob", "lobby", "m2")
        tracker.record_ice_candidate("alice", "bob", "lobby", "m3")

        drained = tracker.drain_messages("lobby", "bob")
        assert [m.payload for m in drained] == ["m1", "m2", "m3"]
        assert tracker.queued_messages("lobby", "bob") == []

        tracker.restore_messages("lobby", "bob", drained[1:])
        assert [m.payload for m in tracker.queued_messages("lobby", "bob")] == ["m2", "m3"]

    def test_restore_into_a_busy_queue_counts_what_is_dropped(self, tracker, lobby, caplog):
        tracker.record_offer("alice", "bob", "lobby", "m1")
        tracker.record_ice_candidate("alice", "bob", "lobby", "m2")
        tracker.record_ice_candidate("alice", "bob", "lobby", "m3")
        drained = tracker.drain_messages("lobby", "bob")
        tracker.record_ice_candidate("alice", "bob", "lobby", "m4")
        tracker.record_ice_candidate("alice", "bob", "lobby", "m5")

        tracker.restore_messages("lobby", "bob", drained)

        assert [m.payload for m in tracker.queued_messages("lobby", "bob")] == ["m3", "m4", "m5"]
        assert tracker.dropped_messages == 2
        assert "dropping 2 undelivered messages" in caplog.text

    def test_reoffer_after_failure_keeps_kind(self, tracker, lobby):
        tracker.record_offer("alice", "bob", "lobby", "o1", ConnectionKind.AUDIO_ONLY)
        tracker.transition(canonical_pair_id("alice", "bob"), State.FAILED)

        tracker.record_offer("alice", "bob", "lobby", "o2", ConnectionKind.AUDIO_ONLY)

        connection = tracker.get_connection("alice", "bob")
        assert connection.kind == ConnectionKind.AUDIO_ONLY
        assert connection.state == State.CONNECTING
        assert connection.offer == "o2"

    def test_wire_format(self, tracker, lobby, clock):
        message = tracker.record_offer("alice", "bob", "lobby", {"sdp": "v=0"})

        assert message.to_wire() == {
            "type": "offer",
            "connection_id": canonical_pair_id("alice", "bob"),
            "room_id": "lobby",
            "sender_id": "alice",
            "target_id": "bob",
            "payload": {"sdp": "v=0"},
            "timestamp": clock.now(),
        }

    def test_purge_expired(self, tracker, lobby, clock):
        tracker.record_offer("alice", "bob", "lobby", "old")
        clock.advance(601)
        tracker.record_ice_candidate("alice", "bob", "lobby", "new")

        assert tracker.purge_queues() == 1
        assert [m.payload for m in tracker.queued_messages("lobby", "bob")] == ["new"]

    def test_clear_queue(self, tracker, lobby):
        tracker.record_offer("alice", "bob", "lobby", "o")
        assert tracker.clear_queue("lobby", "bob") == 1
        assert tracker.queued_count == 0


class TestSweep:
    def test_stalled_handshake_is_dropped_and_counted(self, tracker, lobby, clock):
        tracker.record_offer("alice", "bob", "lobby", "o")
        clock.advance(61)

        removed = tracker.sweep()

        assert removed == [canonical_pair_id("alice", "bob")]
        assert tracker.statistics()["failed_connections"] == 1

    def test_connected_is_never_stale(self, tracker, lobby, clock):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.transition(connection.id, State.CONNECTED)
        clock.advance(10_000)

        assert tracker.sweep() == []

    def test_idle_new_connection_is_stale(self, tracker, lobby, clock):
        tracker.create_connection("alice", "bob", "lobby")
        clock.advance(301)
        assert len(tracker.sweep()) == 1
        assert len(tracker) == 0

    def test_scheduled_maintenance(self, tracker, lobby, clock, scheduler):
        tracker.record_offer("alice", "bob", "lobby", "o")
        tracker.schedule_maintenance()

        clock.advance(700)
        scheduler.run_pending()

        assert len(tracker) == 0
        assert tracker.queued_count == 0


class TestDataChannels:
    def test_limit(self, tracker, lobby):
        connection = tracker.create_connection("alice", "bob", "lobby")
        tracker.create_data_channel(connection.id, "chat")
        tracker.create_data_channel(connection.id, "pose")

        with pytest.raises(errors.CapacityError) as exc:
            tracker.create_data_channel(connection.id, "files")
        assert exc.value.code == "CONNECTION_LIMIT_EXCEEDED"

    def test_transfer_accounting(self, tracker, lobby):
        connection = tracker.create_connection("alice", "bob", "lobby")
        channel = tracker.create_data_channel(connection.id, "chat")

        tracker.record_data_transfer(connection.id, channel.id, "alice", 100)
        tracker.record_data_transfer(connection.id, channel.id, "bob", 40)

        assert channel.messages == 2
        assert channel.bytes_transferred == 140
        assert connection.stats.bytes_sent == 100
        assert connection.stats.bytes_received == 40


def test_statistics_by_kind(tracker, lobby):
    audio = tracker.create_connection("alice", "bob", "lobby", ConnectionKind.AUDIO_ONLY)
    data = tracker.create_connection("alice", "carol", "lobby", ConnectionKind.DATA_ONLY)
    tracker.transition(audio.id, State.CONNECTED)
    tracker.transition(data.id, State.FAILED)

    stats = tracker.statistics()
    assert stats["by_kind"]["audio-only"] == {"success": 1, "failure": 0}
    assert stats["by_kind"]["data-only"] == {"success": 0, "failure": 1}
    assert stats["successful_connections"] == 1
    assert stats["active_connections"] == 1
