# Tests for ide_discovery.py against a fake DevTools endpoint
import asyncio
import os
import sys
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from ide_config import OrchestratorConfig
from ide_discovery import InstanceDiscoverer, detect_kind, workspace_from_targets
from ide_types import InstanceKind


def fake_cdp_app(version_info, targets=None, delay=0.0):
    async def version(request):
        if delay:
            await asyncio.sleep(delay)
        return web.json_response(version_info)

    async def targets_list(request):
        return web.json_response(targets or [])

    app = web.Application()
    app.add_routes([web.get("/json/version", version), web.get("/json/list", targets_list)])
    return app


class ParsingTests(unittest.TestCase):
    def test_detect_kind_from_user_agent(self):
        info = {"Browser": "Chrome/120.0", "User-Agent": "Mozilla/5.0 Cursor/0.42.3 Chrome/120.0"}
        self.assertEqual(detect_kind(info), (InstanceKind.CURSOR, "0.42.3"))
        info = {"User-Agent": "Mozilla/5.0 Code/1.90.0 Electron/29"}
        self.assertEqual(detect_kind(info)[0], InstanceKind.VSCODE)
        info = {"User-Agent": "Windsurf/1.2.0"}
        self.assertEqual(detect_kind(info), (InstanceKind.WINDSURF, "1.2.0"))
        self.assertEqual(detect_kind({"Browser": "Chrome/120.0"}), (None, None))

    def test_workspace_from_window_titles(self):
        targets = [
            {"type": "service_worker", "title": "sw - x - Cursor"},
            {"type": "page", "title": "main.py - orchestrator - Cursor"},
        ]
        self.assertEqual(workspace_from_targets(targets, InstanceKind.CURSOR), "orchestrator")
        targets = [{"type": "page", "title": "webapp - Visual Studio Code"}]
        self.assertEqual(workspace_from_targets(targets, InstanceKind.VSCODE), "webapp")
        self.assertIsNone(workspace_from_targets([{"type": "page", "title": "Welcome"}], InstanceKind.CURSOR))
        self.assertIsNone(workspace_from_targets({"not": "a list"}, InstanceKind.CURSOR))


class ProbeTests(unittest.IsolatedAsyncioTestCase):
    async def start_server(self, app):
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        self.addAsyncCleanup(server.close)
        return server

    def make_discoverer(self, timeout=0.5):
        return InstanceDiscoverer(OrchestratorConfig(per_port_timeout=timeout, state_dir="/tmp/unused"))

    async def test_probe_reads_kind_version_and_workspace(self):
        server = await self.start_server(
            fake_cdp_app(
                {
                    "Browser": "Chrome/120.0",
                    "User-Agent": "Cursor/0.42.3",
                    "webSocketDebuggerUrl": "ws://127.0.0.1/devtools/browser/abc",
                },
                targets=[{"type": "page", "title": "app.py - shop - Cursor"}],
            )
        )
        found = await self.make_discoverer().probe(server.port)
        self.assertEqual(found.port, server.port)
        self.assertEqual(found.kind, InstanceKind.CURSOR)
        self.assertEqual(found.version, "0.42.3")
        self.assertEqual(found.workspace_path, "shop")
        self.assertEqual(found.websocket_url, "ws://127.0.0.1/devtools/browser/abc")

    async def test_non_editor_http_server_is_ignored(self):
        server = await self.start_server(fake_cdp_app({"hello": "world"}))
        self.assertIsNone(await self.make_discoverer().probe(server.port))

    async def test_closed_port_yields_nothing(self):
        self.assertIsNone(await self.make_discoverer().probe(unused_port()))

    async def test_slow_port_times_out(self):
        server = await self.start_server(fake_cdp_app({"Browser": "Chrome"}, delay=1.0))
        self.assertIsNone(await self.make_discoverer(timeout=0.1).probe(server.port))

    async def test_discover_range_returns_only_answering_ports(self):
        server = await self.start_server(fake_cdp_app({"Browser": "Chrome/120.0", "User-Agent": "Code/1.90.0"}))
        discoverer = self.make_discoverer(timeout=0.3)
        found = await discoverer.discover(server.port - 2, server.port + 2)
        self.assertEqual([item.port for item in found], [server.port])
        self.assertEqual(found[0].kind, InstanceKind.VSCODE)

    async def test_empty_range(self):
        self.assertEqual(await self.make_discoverer().discover(9300, 9299), [])


if __name__ == "__main__":
    unittest.main()
