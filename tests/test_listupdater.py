import os
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import requests
from aiohttp import test_utils, web

from sinkholed.core.blocklist import Blocklist
from sinkholed.utils.ListUpdater import (
    fetch_blocklists,
    fetch_blocklists_sync,
    load_blocklist_file,
    parse_blocklist,
    refresh_blocklist,
)


BLOCKLIST_TEXT = """\
# ad servers
ads.example.com
tracker.example.net   # inline comment

0.0.0.0 hosts.example.org
127.0.0.1\tlocal.example.org
"""


class TestParsing(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def _file(self, name, text):
        path = os.path.join(self.tmpdir.name, name)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text)
        return path

    def test_parse_blocklist(self):
        self.assertEqual(parse_blocklist(BLOCKLIST_TEXT), {
            'ads.example.com', 'tracker.example.net', 'hosts.example.org', 'local.example.org'
        })

    def test_load_file(self):
        path = self._file('blocklist.txt', BLOCKLIST_TEXT)
        self.assertIn('ads.example.com', load_blocklist_file(path))

    def test_load_missing_file(self):
        with self.assertLogs('sinkholed.ListUpdater', level='WARNING'):
            self.assertEqual(load_blocklist_file(os.path.join(self.tmpdir.name, 'nope.txt')), set())
        self.assertEqual(load_blocklist_file(None), set())

    @patch('sinkholed.utils.ListUpdater.requests.get')
    def test_fetch_sync(self, mock_get):
        ok = MagicMock()
        ok.text = 'remote.example.com\n'
        ok.raise_for_status.return_value = None
        mock_get.side_effect = [ok, requests.ConnectionError('down')]
        local = self._file('local.txt', 'local.example.com\n')

        domains, results = fetch_blocklists_sync(
            f'https://lists.example/a.txt, https://lists.example/b.txt, {local}, ftp://x/y.txt')

        self.assertEqual(domains, {'remote.example.com', 'local.example.com'})
        self.assertEqual(results, [
            ('https://lists.example/a.txt', True),
            ('https://lists.example/b.txt', False),
            (local, True),
            ('ftp://x/y.txt', False),
        ])
        self.assertEqual(mock_get.call_count, 2)


class TestAsyncFetch(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.lists = {'a.txt': 'a.example.com\nb.example.com\n'}
        app = web.Application()
        app.router.add_get('/{name}', self._serve)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()

    async def asyncTearDown(self):
        await self.server.close()

    async def _serve(self, request):
        text = self.lists.get(request.match_info['name'])
        if text is None:
            raise web.HTTPNotFound()
        return web.Response(text=text)

    async def test_fetch_blocklists(self):
        good = str(self.server.make_url('/a.txt'))
        missing = str(self.server.make_url('/missing.txt'))
        domains, results = await fetch_blocklists([good, missing])
        self.assertEqual(domains, {'a.example.com', 'b.example.com'})
        self.assertEqual(results, [(good, True), (missing, False)])

    async def test_refresh_replaces_list(self):
        blocklist = Blocklist(['old.example.com'])
        self.assertTrue(await refresh_blocklist(blocklist, None, [str(self.server.make_url('/a.txt'))]))
        self.assertEqual(set(blocklist), {'a.example.com', 'b.example.com'})

    async def test_refresh_keeps_list_on_failure(self):
        blocklist = Blocklist(['old.example.com'])
        sources = [str(self.server.make_url('/a.txt')), str(self.server.make_url('/gone.txt'))]
        with self.assertLogs('sinkholed.ListUpdater', level='WARNING'):
            self.assertFalse(await refresh_blocklist(blocklist, None, sources))
        self.assertEqual(set(blocklist), {'old.example.com'})


if __name__ == '__main__':
    unittest.main()
