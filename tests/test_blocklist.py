import threading
import unittest

from sinkholed.core.blocklist import Blocklist


class TestBlocklist(unittest.TestCase):

    def setUp(self):
        self.blocklist = Blocklist(['ads.example.com', ' tracker.example.net \n', '', '# comment'])

    def test_exact_match(self):
        self.assertTrue(self.blocklist.is_blocked('ads.example.com'))
        self.assertTrue(self.blocklist.is_blocked('tracker.example.net'))
        self.assertFalse(self.blocklist.is_blocked('example.com'))
        # no suffix matching
        self.assertFalse(self.blocklist.is_blocked('sub.ads.example.com'))

    def test_case_sensitive(self):
        self.assertFalse(self.blocklist.is_blocked('ADS.example.com'))

    def test_empty_names(self):
        self.assertFalse(self.blocklist.is_blocked(None))
        self.assertFalse(self.blocklist.is_blocked(''))

    def test_comments_and_blanks_skipped(self):
        self.assertEqual(len(self.blocklist), 2)
        self.assertNotIn('# comment', self.blocklist)

    def test_add_and_discard(self):
        self.assertTrue(self.blocklist.add('new.example.com'))
        self.assertFalse(self.blocklist.add('new.example.com'))
        self.assertFalse(self.blocklist.add('   '))
        self.assertIn('new.example.com', self.blocklist)

        self.assertTrue(self.blocklist.discard('new.example.com'))
        self.assertFalse(self.blocklist.discard('new.example.com'))
        self.assertNotIn('new.example.com', self.blocklist)

    def test_replace_swaps_snapshot(self):
        before = self.blocklist.snapshot()
        self.blocklist.replace(['only.example.com'])
        self.assertEqual(set(self.blocklist), {'only.example.com'})
        # snapshots taken earlier are unaffected
        self.assertIn('ads.example.com', before)
        self.assertFalse(self.blocklist.is_blocked('ads.example.com'))

    def test_concurrent_updates_and_reads(self):
        errors = []
        stop = threading.Event()

        def writer(prefix):
            try:
                for i in range(500):
                    self.blocklist.add(f'{prefix}{i}.example.com')
                    if i % 3 == 0:
                        self.blocklist.discard(f'{prefix}{i}.example.com')
            except Exception as e:
                errors.append(e)

        def reader():
            try:
                while not stop.is_set():
                    self.blocklist.is_blocked('ads.example.com')
                    list(self.blocklist)
            except Exception as e:
                errors.append(e)

        readers = [threading.Thread(target=reader) for _ in range(3)]
        writers = [threading.Thread(target=writer, args=(p,)) for p in ('a', 'b')]
        for t in readers + writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        for t in readers:
            t.join()

        self.assertEqual(errors, [])
        self.assertTrue(self.blocklist.is_blocked('ads.example.com'))
        self.assertIn('a1.example.com', self.blocklist)
        self.assertNotIn('a3.example.com', self.blocklist)
        # 2 initial + 2 * (500 - 167)
        self.assertEqual(len(self.blocklist), 2 + 2 * 333)


if __name__ == '__main__':
    unittest.main()
