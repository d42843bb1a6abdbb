import random
import time
import unittest

from client import DecoyGenerator
from fakes import RecordingInterface, connected_pair, make_config
from shared import MessageType, FILLER_CHARSET


class DecoyGeneratorTests(unittest.TestCase):
    def setUp(self):
        self.ui = RecordingInterface()
        self.config = make_config(send_dummy_packets=True, dummy_min_interval=0.02, dummy_max_interval=0.05,
                                  max_dummy_packet_size=7)
        self.session, self.server, _ = connected_pair(self.config, self.ui)
        self.addCleanup(self.server.close)
        self.addCleanup(self.session.close)

    def test_interval_is_drawn_from_the_configured_range(self):
        for seed in range(20):
            decoy = DecoyGenerator(self.session, self.config, self.ui, random.Random(seed))
            self.assertGreaterEqual(decoy.interval, 0.02)
            self.assertLessEqual(decoy.interval, 0.05)

    def test_sends_fake_messages_of_bounded_length(self):
        decoy = DecoyGenerator(self.session, self.config, self.ui, random.Random(7))
        decoy.start()
        self.addCleanup(decoy.stop)

        for _ in range(5):
            message = self.server.read(timeout=2)
            self.assertIs(message.type, MessageType.FAKE)
            self.assertTrue(1 <= len(message.text) <= 7)
            self.assertTrue(set(message.text) <= set(FILLER_CHARSET))

    def test_stops_when_the_session_disconnects(self):
        decoy = DecoyGenerator(self.session, self.config, self.ui, random.Random(3))
        decoy.start()
        self.server.read(timeout=2)

        self.session.close()
        deadline = time.monotonic() + 2
        while decoy.running and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertFalse(decoy.running)
        decoy.stop()
        self.assertEqual(self.ui.errors, [])

    def test_stop_joins_the_thread(self):
        decoy = DecoyGenerator(self.session, self.config, self.ui)
        decoy.start()
        decoy.stop()
        self.assertFalse(decoy.running)
        sent = decoy.sent
        time.sleep(0.1)
        self.assertEqual(decoy.sent, sent)

    def test_disabled(self):
        config = make_config(send_dummy_packets=False)
        decoy = DecoyGenerator(self.session, config, self.ui)
        decoy.start()
        self.assertFalse(decoy.running)
        decoy.stop()


if __name__ == "__main__":
    unittest.main()
