"""Tests for GattSession connection lifecycle, disconnect and close."""

import pytest

from gattmanager.constants import (
    GATT_CONN_TERMINATE_PEER_USER,
    GATT_FAILURE,
    GATT_SUCCESS,
    TOPIC_CONNECTION_ESTABLISHED,
    TOPIC_CONNECTION_LOST,
)
from gattmanager.errors import (
    ConnectionFailedError,
    ConnectionPreconditionError,
    LinkLostError,
    NotConnectedError,
)
from gattmanager.model import PeripheralIdentity
from gattmanager.state import ConnectionState

from tests.conftest import ADDRESS, FakeLink, Recorder


class TestConnect:
    """Connection establishment and its preconditions."""

    def test_connect_emits_true_when_link_comes_up(self, session, transport, identity, mock_pubsub):
        """Test that the connection stream emits True once the transport reports the link up."""
        recorder = Recorder()
        recorder.attach(session.connect(identity))

        assert transport.names() == ["connect"]
        assert session.connection_state == ConnectionState.CONNECTING
        assert recorder.values == []

        session.on_connection_state_change(transport.link, GATT_SUCCESS, True)

        assert recorder.values == [True]
        assert recorder.terminal_signals == 0
        assert session.is_connected
        assert session.peripheral == identity
        mock_pubsub.sendMessage.assert_any_call(TOPIC_CONNECTION_ESTABLISHED, session=session)

    def test_connect_is_cold(self, session, transport, identity):
        """Test that building the connection stream does nothing until subscription."""
        observable = session.connect(identity)
        assert transport.calls == []
        observable.subscribe()
        assert transport.names() == ["connect"]

    def test_missing_identity_fails_fast(self, session, transport):
        """Test that connecting with no identity and no previous peripheral errors."""
        recorder = Recorder()
        recorder.attach(session.connect())
        assert isinstance(recorder.error, ConnectionPreconditionError)
        assert transport.calls == []

    def test_blank_address_fails_fast(self, session, transport):
        """Test that an identity with a whitespace address is rejected."""
        recorder = Recorder()
        recorder.attach(session.connect(PeripheralIdentity("   ")))
        assert isinstance(recorder.error, ConnectionPreconditionError)
        assert transport.calls == []

    def test_disabled_adapter_fails_fast(self, session, transport, identity):
        """Test that a disabled adapter is reported without touching the transport."""
        transport.adapter_enabled = False
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        assert isinstance(recorder.error, ConnectionPreconditionError)
        assert transport.calls == []
        assert session.connection_state == ConnectionState.DISCONNECTED

    def test_connect_to_same_peripheral_while_connected(self, session, transport, identity, connected):
        """Test that a second connect to the bound peripheral emits True without reconnecting."""
        recorder = Recorder()
        recorder.attach(session.connect(PeripheralIdentity("aa-bb-cc-dd-ee-ff")))
        assert recorder.values == [True]
        assert transport.count("connect") == 1

    def test_connect_to_other_peripheral_is_rejected(self, session, transport, connected):
        """Test that the session refuses a second peripheral while bound."""
        recorder = Recorder()
        recorder.attach(session.connect(PeripheralIdentity("11:22:33:44:55:66")))
        assert isinstance(recorder.error, ConnectionPreconditionError)
        assert transport.count("connect") == 1

    def test_concurrent_subscribers_share_attempt(self, session, transport, identity):
        """Test that subscribers joining a pending attempt all see the link come up."""
        first, second = Recorder(), Recorder()
        first.attach(session.connect(identity))
        second.attach(session.connect(identity))
        assert transport.count("connect") == 1

        session.on_connection_state_change(transport.link, GATT_SUCCESS, True)
        assert first.values == [True]
        assert second.values == [True]

    def test_transport_refusal_errors_stream(self, session, transport, identity):
        """Test that a transport refusing to connect surfaces ConnectionFailedError."""
        transport.refuse["connect"] = True
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        assert isinstance(recorder.error, ConnectionFailedError)
        assert recorder.error.status == GATT_FAILURE
        assert session.connection_state == ConnectionState.DISCONNECTED

    def test_transport_exception_errors_stream(self, session, transport, identity):
        """Test that an exception from transport connect surfaces ConnectionFailedError."""
        transport.raise_on["connect"] = RuntimeError("radio busy")
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        assert isinstance(recorder.error, ConnectionFailedError)
        assert session.link is None

    def test_failure_status_while_connecting(self, session, transport, identity):
        """Test that a failed connect callback carries the platform status."""
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        link = transport.link
        session.on_connection_state_change(link, 133, False)

        assert isinstance(recorder.error, ConnectionFailedError)
        assert recorder.error.status == 133
        assert session.connection_state == ConnectionState.DISCONNECTED
        assert ("close", link) in transport.calls

    def test_reconnect_reuses_last_peripheral(self, session, transport, identity, connected):
        """Test that observe_connection() without a peripheral targets the last one."""
        session.disconnect()
        session.on_connection_state_change(transport.link, GATT_SUCCESS, False)

        recorder = Recorder()
        recorder.attach(session.observe_connection())
        assert transport.count("connect") == 2
        assert transport.calls[-1] == ("connect", identity)
        session.on_connection_state_change(transport.link, GATT_SUCCESS, True)
        assert recorder.values == [True]

    def test_stale_link_callback_is_ignored(self, session, transport, identity):
        """Test that a state change for another link does not affect the session."""
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        session.on_connection_state_change(FakeLink(identity, 99), GATT_SUCCESS, True)
        assert recorder.values == []
        assert session.connection_state == ConnectionState.CONNECTING


class TestDisconnect:
    """Caller-initiated and peer-initiated disconnection."""

    def test_requested_disconnect_completes_stream(self, session, transport, connected, mock_pubsub):
        """Test that a requested disconnect emits False and completes."""
        link = transport.link
        session.disconnect()
        assert ("disconnect", link) in transport.calls
        assert session.connection_state == ConnectionState.DISCONNECTING

        session.on_connection_state_change(link, GATT_SUCCESS, False)

        assert connected.values == [True, False]
        assert connected.completed == 1
        assert connected.errors == []
        assert session.connection_state == ConnectionState.DISCONNECTED
        assert session.link is None
        mock_pubsub.sendMessage.assert_any_call(TOPIC_CONNECTION_LOST, session=session)

    def test_disconnect_without_link_raises(self, session):
        """Test that disconnecting an idle session is never a silent no-op."""
        with pytest.raises(NotConnectedError):
            session.disconnect()

    def test_disconnect_while_connecting_closes_immediately(self, session, transport, identity):
        """Test that cancelling a pending connect tears down without waiting for a callback."""
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        link = transport.link

        session.disconnect()

        assert ("close", link) in transport.calls
        assert recorder.completed == 1
        assert session.connection_state == ConnectionState.DISCONNECTED

    def test_disconnect_when_transport_reports_link_down(self, session, transport, connected):
        """Test that the session closes the link itself when the transport already lost it."""
        transport.link_up = False
        link = transport.link
        session.disconnect()

        assert ("close", link) in transport.calls
        assert connected.values == [True, False]
        assert connected.completed == 1

    def test_peer_disconnect_errors_with_link_lost(self, session, transport, connected):
        """Test that an unrequested disconnect terminates the stream with LinkLostError."""
        session.on_connection_state_change(transport.link, GATT_CONN_TERMINATE_PEER_USER, False)

        assert connected.values == [True, False]
        assert isinstance(connected.error, LinkLostError)
        assert connected.error.status == GATT_CONN_TERMINATE_PEER_USER
        assert connected.completed == 0

    def test_callbacks_after_disconnect_are_stale(self, session, transport, connected):
        """Test that completions for a torn-down link are ignored."""
        link = transport.link
        session.on_connection_state_change(link, 8, False)
        session.on_connection_state_change(link, GATT_SUCCESS, True)
        assert not session.is_connected
        assert connected.terminal_signals == 1


class TestClose:
    """Session close and context management."""

    def test_close_connected_session(self, session, transport, connected):
        """Test that close disconnects, completes streams and shuts the transport down."""
        link = transport.link
        session.close()

        assert ("disconnect", link) in transport.calls
        assert ("close", link) in transport.calls
        assert transport.shutdown_count == 1
        assert connected.completed == 1
        assert session.connection_state == ConnectionState.DISCONNECTED

    def test_close_is_idempotent(self, session, transport, connected):
        """Test that closing twice shuts the transport down once."""
        session.close()
        session.close()
        assert transport.shutdown_count == 1

    def test_connect_after_close_is_rejected(self, session, transport, identity):
        """Test that a closed session refuses new connections."""
        session.close()
        recorder = Recorder()
        recorder.attach(session.connect(identity))
        assert isinstance(recorder.error, ConnectionPreconditionError)
        assert transport.count("connect") == 0

    def test_context_manager_closes(self, transport, timers, identity):
        """Test that leaving the with-block closes the session."""
        from gattmanager.session import GattSession

        with GattSession(transport, timer_factory=timers) as session:
            session.connect(identity).subscribe()
        assert transport.shutdown_count == 1
        assert session.connection_state == ConnectionState.DISCONNECTED

    def test_repr_mentions_address(self, session, connected):
        """Test the session repr."""
        assert ADDRESS in repr(session)
        assert "connected" in repr(session)
