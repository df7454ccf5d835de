# Tests for ide_orch_web.py
import asyncio
import json
import os
import sys
import tempfile
from types import SimpleNamespace

from aiohttp.test_utils import AioHTTPTestCase

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from ide_config import OrchestratorConfig
from ide_errors import DriverError
from ide_orch_web import create_app
from ide_orchestrator import Orchestrator
from ide_types import DiscoveredInstance, Event, InstanceKind


class FakeDriver:
    def __init__(self):
        self.down = set()
        self.hang = set()

    async def connect(self, port):
        if port in self.hang:
            await asyncio.sleep(60)
        if port in self.down:
            raise DriverError(f"connection refused on {port}")
        return {"port": port}

    async def disconnect(self, handle):
        pass

    async def is_alive(self, handle):
        return handle["port"] not in self.down


class FakeDiscoverer:
    def __init__(self, *ports):
        self.ports = {port: DiscoveredInstance(port, InstanceKind.CURSOR) for port in ports}

    async def discover(self, *args, **kwargs):
        return [self.ports[port] for port in sorted(self.ports)]

    async def probe(self, port, timeout=None, session=None):
        return self.ports.get(port)


class FakeLauncher:
    def __init__(self, discoverer):
        self.discoverer = discoverer

    def owns(self, port):
        return False

    async def start(self, kind, port, workspace_path=None):
        self.discoverer.ports[port] = DiscoveredInstance(port, kind)
        return SimpleNamespace(port=port, kind=kind, workspace_path=workspace_path, proc=SimpleNamespace(pid=1))

    async def stop(self, port, grace=3.0):
        self.discoverer.ports.pop(port, None)
        return False


class OrchestratorAppTestCase(AioHTTPTestCase):
    PORTS = (9222, 9223)
    QUEUE_SIZE = 256

    async def get_application(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.driver = FakeDriver()
        self.discoverer = FakeDiscoverer(*self.PORTS)
        config = OrchestratorConfig(
            state_dir=self.tmp.name,
            per_port_timeout=0.2,
            health_interval=60.0,
            discovery_interval=60.0,
            switch_timeout=1.0,
            start_timeout=0.3,
            subscriber_queue_size=self.QUEUE_SIZE,
        )
        self.orch = Orchestrator(
            config, driver=self.driver, discoverer=self.discoverer, launcher=FakeLauncher(self.discoverer)
        )
        await self.orch.start(loops=False)
        return create_app(self.orch, heartbeat=0.05)

    async def asyncTearDown(self):
        await super().asyncTearDown()
        await self.orch.stop()
        self.tmp.cleanup()

    async def read_frames(self, resp, until, limit=50):
        """Read SSE ``data:`` frames until ``until(frame)`` is true."""
        frames = []
        while len(frames) < limit:
            line = await asyncio.wait_for(resp.content.readline(), timeout=2.0)
            if not line.startswith(b"data: "):
                continue
            frame = json.loads(line[len(b"data: "):])
            frames.append(frame)
            if until(frame):
                return frames
        self.fail(f"expected frame not received in {frames}")


class RestTests(OrchestratorAppTestCase):
    async def test_available_instances(self):
        resp = await self.client.get("/api/ide/available")
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertEqual([item["port"] for item in body["instances"]], [9222, 9223])
        self.assertEqual(body["instances"][0]["kind"], "cursor")

    async def test_active_then_switch(self):
        headers = {"X-Client-Id": "c1"}
        resp = await self.client.get("/api/ide/active", headers=headers)
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertEqual(body["active"]["port"], 9222)
        self.assertEqual(body["instance"]["health"], "healthy")

        resp = await self.client.post("/api/ide/switch", json={"port": 9223}, headers=headers)
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["active"]["port"], 9223)

        resp = await self.client.get("/api/ide/active", headers=headers)
        self.assertEqual((await resp.json())["active"]["strategyUsed"], "previously_active")

        resp = await self.client.get("/api/ide/active?client=c2")
        self.assertEqual((await resp.json())["active"]["port"], 9222)

    async def test_switch_errors_map_to_status_codes(self):
        resp = await self.client.post("/api/ide/switch", json={})
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["error"], "invalid_request")

        resp = await self.client.post("/api/ide/switch", data="not json")
        self.assertEqual(resp.status, 400)

        resp = await self.client.post("/api/ide/switch", json={"port": 9999})
        self.assertEqual(resp.status, 404)
        self.assertEqual((await resp.json())["error"], "instance_not_found")

        self.driver.hang.add(9223)
        resp = await self.client.post("/api/ide/switch", json={"port": 9223, "timeoutMs": 50})
        self.assertEqual(resp.status, 504)
        self.assertEqual((await resp.json())["error"], "switch_timeout")

    async def test_stop_and_start(self):
        resp = await self.client.post("/api/ide/stop", json={"port": 9222})
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.json(), {"ok": True, "port": 9222, "terminated": False})

        resp = await self.client.post("/api/ide/start", json={"workspacePath": "/w/shop"})
        self.assertEqual(resp.status, 200)
        instance = (await resp.json())["instance"]
        self.assertEqual(instance["port"], 9222)
        self.assertEqual(instance["workspacePath"], "/w/shop")

        resp = await self.client.post("/api/ide/start", json={"kind": "emacs"})
        self.assertEqual(resp.status, 400)

    async def test_workspace_discover_and_preference_reset(self):
        resp = await self.client.post("/api/ide/workspace", json={"port": 9223, "workspacePath": "/w/api"})
        self.assertEqual((await resp.json())["instance"]["workspacePath"], "/w/api")

        self.discoverer.ports[9224] = DiscoveredInstance(9224, InstanceKind.CURSOR)
        resp = await self.client.post("/api/ide/discover")
        self.assertEqual([item["port"] for item in (await resp.json())["instances"]], [9222, 9223, 9224])

        await self.client.get("/api/ide/active", headers={"X-Client-Id": "c1"})
        resp = await self.client.delete("/api/ide/preference", headers={"X-Client-Id": "c1"})
        self.assertEqual(await resp.json(), {"ok": True, "clientId": "c1", "deleted": True})

    async def test_status_and_cache_stats(self):
        resp = await self.client.get("/api/ide/status")
        body = await resp.json()
        self.assertEqual(body["instances"], 2)
        self.assertEqual(body["health"]["unknown"], 2)

        self.orch.cache.put("git:default", "status", "clean")
        self.orch.cache.get("git:default", "status")
        resp = await self.client.get("/api/cache-stats")
        stats = await resp.json()
        self.assertEqual(stats["entryCount"], 1)
        self.assertEqual(stats["hitRate"], 1.0)
        self.assertGreater(stats["memoryUsed"], 0)


class EmptyRegistryTests(OrchestratorAppTestCase):
    PORTS = ()

    async def test_active_without_instances_is_409(self):
        resp = await self.client.get("/api/ide/active")
        self.assertEqual(resp.status, 409)
        body = await resp.json()
        self.assertEqual(body["error"], "no_instance_available")
        self.assertEqual(body["details"]["strategyUsed"], "port_range_default")


class EventStreamTests(OrchestratorAppTestCase):
    async def test_stream_starts_with_snapshot_and_delivers_switch(self):
        resp = await self.client.get("/events", headers={"X-Client-Id": "c1"})
        self.assertEqual(resp.headers["Content-Type"], "text/event-stream")
        first = await self.read_frames(resp, lambda frame: True)
        self.assertEqual(first[0]["type"], "resync")
        self.assertEqual(len(first[0]["payload"]["instances"]), 2)

        await self.orch.switch("c1", 9223)
        frames = await self.read_frames(
            resp, lambda frame: frame["type"] == "active_changed" and frame["payload"]["current"] == 9223
        )
        self.assertEqual(frames[-1]["payload"]["strategyUsed"], "previously_active")
        self.assertEqual(frames[-1]["clientId"], "c1")
        resp.close()


class SlowSubscriberTests(OrchestratorAppTestCase):
    QUEUE_SIZE = 2

    async def test_overflowing_subscriber_gets_resync_snapshot(self):
        resp = await self.client.get("/events", headers={"X-Client-Id": "c1"})
        await self.read_frames(resp, lambda frame: frame["type"] == "resync")

        for port in range(9300, 9310):
            self.orch.fanout.publish(Event.instance_found(port))

        frames = await self.read_frames(resp, lambda frame: frame["type"] == "resync")
        snapshot = frames[-1]["payload"]
        listed = await (await self.client.get("/api/ide/available")).json()
        self.assertEqual(snapshot["instances"], listed["instances"])
        resp.close()


class WebsocketTests(OrchestratorAppTestCase):
    async def test_commands_over_websocket(self):
        ws = await self.client.ws_connect("/ws?client=c1")
        hello = await ws.receive_json(timeout=2.0)
        self.assertEqual(hello["type"], "resync")

        await ws.send_str(json.dumps({"id": 1, "action": "switch", "port": 9223}))
        reply = None
        while reply is None:
            frame = await ws.receive_json(timeout=2.0)
            if frame.get("type") == "reply":
                reply = frame
        self.assertEqual(reply["id"], 1)
        self.assertTrue(reply["ok"])
        self.assertEqual(reply["result"]["port"], 9223)

        await ws.send_str(json.dumps({"id": 2, "action": "explode"}))
        while True:
            frame = await ws.receive_json(timeout=2.0)
            if frame.get("type") == "reply":
                break
        self.assertFalse(frame["ok"])
        self.assertEqual(frame["error"], "invalid_request")
        await ws.close()
