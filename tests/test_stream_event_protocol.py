import logging
import struct
import unittest
import unittest.mock

from topicwire.event import Event, encode_event
from topicwire.stream.protocols.event import (
    LENGTH_HEADER_FORMAT,
    EventStreamProtocol,
    ProtocolStates,
)


def create_event_message(topic: bytes, data: bytes) -> bytes:
    header = struct.pack(LENGTH_HEADER_FORMAT, len(data))
    return topic + b"\n" + header + data


def connect(p: EventStreamProtocol) -> unittest.mock.Mock:
    transport_mock = unittest.mock.Mock()
    extra_info = {
        "peername": ("127.0.0.1", 50000),
        "sockname": ("127.0.0.1", 8080),
    }
    transport_mock.get_extra_info.side_effect = extra_info.get
    p.connection_made(transport_mock)
    return transport_mock


def received_events(on_event_mock: unittest.mock.Mock):
    return [args[2] for args, _kwargs in on_event_mock.call_args_list]


class EventStreamProtocolTestCase(unittest.TestCase):
    def test_event_received(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        p.data_received(b"orders\n\x00\x00\x00\x05hello")

        self.assertEqual(on_event_mock.call_count, 1)
        (prot, peer_id, event), _kwargs = on_event_mock.call_args
        self.assertIs(prot, p)
        self.assertEqual(peer_id, p.identity)
        self.assertEqual(event, Event("orders", b"hello"))
        self.assertEqual(p.state, ProtocolStates.WAIT_TOPIC)

    def test_empty_payload_is_valid(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        p.data_received(b"orders\n\x00\x00\x00\x00")

        self.assertEqual(received_events(on_event_mock), [Event("orders", b"")])

    def test_topic_trailing_carriage_return_is_stripped(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        p.data_received(create_event_message(b"orders\r", b"abc"))

        self.assertEqual(received_events(on_event_mock), [Event("orders", b"abc")])

    def test_pipelined_events_received_in_order(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        data = encode_event("first", b"one") + encode_event("second", b"two")
        p.data_received(data)

        self.assertEqual(
            received_events(on_event_mock),
            [Event("first", b"one"), Event("second", b"two")],
        )

    def test_event_received_in_worst_case_delivery_scenario(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        msg = encode_event("orders", b"Hello World") + encode_event("empty", b"")

        # Send the test message 1 byte at a time
        for b in msg:
            p.data_received(bytes([b]))

        self.assertEqual(
            received_events(on_event_mock),
            [Event("orders", b"Hello World"), Event("empty", b"")],
        )

    def test_payload_may_contain_newlines(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        p.data_received(encode_event("lines", b"a\nb\n") + encode_event("next", b"c"))

        self.assertEqual(
            received_events(on_event_mock),
            [Event("lines", b"a\nb\n"), Event("next", b"c")],
        )

    def test_topic_filling_buffer_capacity_is_accepted(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock, topic_buffer_size=16)
        connect(p)

        # 15 topic bytes plus the delimiter exactly fill the buffer
        p.data_received(create_event_message(b"t" * 15, b"x"))

        self.assertEqual(received_events(on_event_mock), [Event("t" * 15, b"x")])

    def test_error_raised_when_topic_too_long(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock, topic_buffer_size=1024)
        transport_mock = connect(p)

        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.data_received(b"a" * 2000)
        self.assertIn("TopicTooLong", log.output[0])

        self.assertFalse(on_event_mock.called)
        self.assertTrue(transport_mock.close.called)
        self.assertEqual(p.state, ProtocolStates.CLOSED)

    def test_error_raised_when_topic_is_not_utf8(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        transport_mock = connect(p)

        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.data_received(create_event_message(b"\xff\xfe", b"hello"))
        self.assertIn("InvalidTopicEncoding", log.output[0])

        self.assertFalse(on_event_mock.called)
        self.assertTrue(transport_mock.close.called)

    def test_error_raised_when_payload_too_large(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock, max_payload_size=8)
        transport_mock = connect(p)

        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.data_received(b"orders\n" + struct.pack(">I", 9))
        self.assertIn("PayloadTooLarge", log.output[0])

        self.assertFalse(on_event_mock.called)
        self.assertTrue(transport_mock.close.called)

    def test_error_raised_when_stream_closes_during_length(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        transport_mock = connect(p)

        p.data_received(b"orders\n\x00\x00")
        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            self.assertFalse(p.eof_received())
        self.assertIn("IncompleteLength", log.output[0])

        self.assertFalse(on_event_mock.called)
        self.assertTrue(transport_mock.close.called)

    def test_error_raised_when_stream_closes_after_topic(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        p.data_received(b"orders\n")
        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.eof_received()
        self.assertIn("IncompleteLength", log.output[0])
        self.assertFalse(on_event_mock.called)

    def test_error_raised_when_stream_closes_during_topic(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        p.data_received(b"ord")
        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.eof_received()
        self.assertIn("IncompleteLength", log.output[0])
        self.assertFalse(on_event_mock.called)

    def test_error_raised_when_stream_closes_during_payload(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        transport_mock = connect(p)

        p.data_received(b"orders\n\x00\x00\x00\x05hel")
        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.eof_received()
        self.assertIn("IncompletePayload", log.output[0])

        self.assertFalse(on_event_mock.called)
        self.assertTrue(transport_mock.close.called)

    def test_clean_close_on_frame_boundary(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock)
        transport_mock = connect(p)

        p.data_received(encode_event("orders", b"hello"))
        with self.assertLogs("topicwire.stream.protocols", level=logging.DEBUG) as log:
            p.eof_received()
        self.assertFalse(any("ERROR" in log_item for log_item in log.output))

        self.assertEqual(on_event_mock.call_count, 1)
        self.assertFalse(transport_mock.close.called)

    def test_data_ignored_after_framing_error(self):
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_event=on_event_mock, topic_buffer_size=8)
        connect(p)

        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR):
            p.data_received(b"x" * 8)
        p.data_received(encode_event("orders", b"hello"))

        self.assertFalse(on_event_mock.called)

    def test_transport_error_is_logged(self):
        on_peer_unavailable_mock = unittest.mock.Mock()
        p = EventStreamProtocol(on_peer_unavailable=on_peer_unavailable_mock)
        connect(p)
        peer_id = p.identity

        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.connection_lost(ConnectionResetError("reset by peer"))
        self.assertIn("TransportError", log.output[0])
        self.assertIn("reset by peer", log.output[0])

        on_peer_unavailable_mock.assert_called_once_with(p, peer_id)
        self.assertEqual(p.state, ProtocolStates.CLOSED)

    def test_on_event_callback_errors_do_not_break_protocol(self):
        on_event_mock = unittest.mock.Mock(side_effect=[Exception("Boom"), None])
        p = EventStreamProtocol(on_event=on_event_mock)
        connect(p)

        with self.assertLogs("topicwire.stream.protocols", level=logging.ERROR) as log:
            p.data_received(encode_event("a", b"1") + encode_event("b", b"2"))
        self.assertIn("Error in on_event callback method", log.output[0])

        self.assertEqual(on_event_mock.call_count, 2)
        self.assertEqual(p.state, ProtocolStates.WAIT_TOPIC)

    def test_send_event(self):
        p = EventStreamProtocol()
        transport_mock = connect(p)

        p.send("orders", b"hello")

        transport_mock.write.assert_called_once_with(b"orders\n\x00\x00\x00\x05hello")

    def test_error_raised_when_sending_invalid_event(self):
        p = EventStreamProtocol()
        transport_mock = connect(p)

        with self.assertLogs(
            "topicwire.stream.protocols.event", level=logging.ERROR
        ) as log:
            p.send("Hello World", "not bytes")
        self.assertIn("payload must be bytes", log.output[0])

        with self.assertLogs(
            "topicwire.stream.protocols.event", level=logging.ERROR
        ) as log:
            p.send("two\nlines", b"data")
        self.assertIn("must not contain a newline", log.output[0])

        with self.assertLogs(
            "topicwire.stream.protocols.event", level=logging.ERROR
        ) as log:
            p.send("orders\r", b"data")
        self.assertIn("must not end with a carriage return", log.output[0])

        self.assertFalse(transport_mock.write.called)

    def test_error_raised_when_sending_topic_longer_than_buffer(self):
        p = EventStreamProtocol(topic_buffer_size=16)
        transport_mock = connect(p)

        with self.assertLogs(
            "topicwire.stream.protocols.event", level=logging.ERROR
        ) as log:
            p.send("t" * 100, b"x")
        self.assertIn("exceeds topic buffer size", log.output[0])
        self.assertFalse(transport_mock.write.called)

        # A topic line that exactly fills the buffer can be sent
        p.send("t" * 15, b"x")
        transport_mock.write.assert_called_once_with(encode_event("t" * 15, b"x"))

    def test_events_round_trip(self):
        topic_buffer_size = 32
        cases = (
            ("", b""),
            ("orders", b"hello"),
            ("température/北京", b"\x00\x01\x02"),
            ("carriage\rreturn", b"\r\n"),
            ("t" * (topic_buffer_size - 1), b"x"),
            ("binary", b"line one\nline two\n\x00\xff"),
            ("big", bytes(range(256)) * 16),
        )
        chunk_sizes = (None, 1, 7)

        for topic, payload in cases:
            msg = encode_event(topic, payload)
            for chunk_size in chunk_sizes:
                with self.subTest(topic=topic, chunk_size=chunk_size):
                    on_event_mock = unittest.mock.Mock()
                    p = EventStreamProtocol(
                        on_event=on_event_mock, topic_buffer_size=topic_buffer_size
                    )
                    connect(p)

                    step = chunk_size or len(msg)
                    for i in range(0, len(msg), step):
                        p.data_received(msg[i : i + step])

                    self.assertEqual(
                        received_events(on_event_mock), [Event(topic, payload)]
                    )
                    self.assertEqual(p.state, ProtocolStates.WAIT_TOPIC)

        # All cases pipelined on a single connection arrive in order
        on_event_mock = unittest.mock.Mock()
        p = EventStreamProtocol(
            on_event=on_event_mock, topic_buffer_size=topic_buffer_size
        )
        connect(p)
        p.data_received(b"".join(encode_event(t, d) for t, d in cases))
        self.assertEqual(
            received_events(on_event_mock), [Event(t, d) for t, d in cases]
        )


if __name__ == "__main__":
    unittest.main()
