import asyncio
import json
import sys
import unittest

MOCK = [sys.executable, "-m", "cabal.mock_agent"]


class TestBridgeHelpers(unittest.TestCase):
    def test_notification_levels(self) -> None:
        from cabal.daemon.bridge import notification_level

        self.assertEqual(notification_level("high"), "critical")
        self.assertEqual(notification_level("medium"), "notification")
        self.assertEqual(notification_level("low"), "normal")

    def test_format_notification(self) -> None:
        from cabal.daemon.bridge import format_notification

        approval = {"type": "request", "content": {"type": "approval", "context": {"task": "deploy"}}}
        self.assertEqual(format_notification(approval), "Approval needed: deploy")
        self.assertEqual(
            format_notification({"type": "request", "content": {"type": "input", "context": {}}}),
            "Input requested: Guidance needed",
        )
        self.assertEqual(format_notification({"type": "summary", "content": {"activity_count": 20}}), "Background activity: 20 operations")


class TestUIBridge(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from cabal.daemon.bridge import UIBridge
        from cabal.daemon.cabal import Cabal
        from cabal.kernel.settings import CabalSettings

        self.cabal = Cabal(CabalSettings(agent_command=MOCK, max_agents=2, kill_grace_seconds=1))
        self.bridge = UIBridge(self.cabal, host="127.0.0.1", port=0)
        port = await self.bridge.start()
        self.assertNotEqual(port, 0)
        self.reader, self.writer = await asyncio.open_connection("127.0.0.1", port)
        self.backlog: list = []

    async def asyncTearDown(self) -> None:
        self.writer.close()
        await self.bridge.stop()
        await self.cabal.shutdown()
        await self.cabal.bus.close()

    async def _next(self, timeout: float = 5.0) -> dict:
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        self.assertTrue(line, "bridge closed the connection")
        return json.loads(line)

    async def _call(self, msg_type: str, payload: dict, msg_id: str) -> dict:
        self.writer.write((json.dumps({"type": msg_type, "payload": payload, "id": msg_id}) + "\n").encode("utf-8"))
        await self.writer.drain()
        while True:
            msg = await self._next()
            if msg.get("id") == msg_id:
                return msg
            self.backlog.append(msg)

    async def _wait_for(self, pred) -> dict:  # type: ignore[no-untyped-def]
        for msg in self.backlog:
            if pred(msg):
                self.backlog.remove(msg)
                return msg
        while True:
            msg = await self._next()
            if pred(msg):
                return msg
            self.backlog.append(msg)

    async def test_stats_on_connect(self) -> None:
        first = await self._next()
        self.assertEqual(first["type"], "stats")
        self.assertEqual(first["payload"]["agents"], [])
        self.assertNotIn("id", first)

    async def test_spawn_list_message_kill(self) -> None:
        await self._next()
        spawned = await self._call("agent:spawn", {"name": "ui-1"}, "r1")
        self.assertEqual(spawned["type"], "agent:spawn")
        self.assertEqual(spawned["payload"]["agentId"], "ui-1")
        self.assertGreater(spawned["payload"]["pid"], 0)

        announced = await self._wait_for(lambda m: m["type"] == "agent:spawn" and "id" not in m)
        self.assertEqual(announced["payload"]["notificationLevel"], "normal")
        self.assertEqual(announced["payload"]["pendingRequests"], 0)

        listed = await self._call("agent:list", {}, "r2")
        self.assertEqual([a["node_id"] for a in listed["payload"]["agents"]], ["ui-1"])

        ack = await self._call("agent:message", {"agentId": "ui-1", "content": "hi there"}, "r3")
        self.assertTrue(ack["payload"]["sent"])
        out = await self._wait_for(lambda m: m["type"] == "agent:message" and "id" not in m)
        self.assertEqual(out["payload"]["agentId"], "ui-1")
        self.assertEqual(out["payload"]["content"]["content"], "echo: hi there")

        killed = await self._call("agent:kill", {"agentId": "ui-1"}, "r4")
        self.assertTrue(killed["payload"]["killed"])
        gone = await self._wait_for(lambda m: m["type"] == "agent:kill" and "id" not in m)
        self.assertEqual(gone["payload"]["agentId"], "ui-1")

    async def test_errors_are_enveloped(self) -> None:
        await self._next()
        self.writer.write(b"{not json\n")
        await self.writer.drain()
        bad = await self._next()
        self.assertEqual(bad["type"], "error")
        self.assertEqual(bad["payload"]["code"], "invalid_request")

        unknown = await self._call("agent:dance", {}, "e1")
        self.assertEqual(unknown["type"], "error")
        self.assertIn("unknown message type", unknown["payload"]["message"])

        missing = await self._call("agent:message", {"agentId": "ghost", "content": "x"}, "e2")
        self.assertEqual(missing["payload"]["code"], "agent_not_found")

        resp = await self._call("human:response", {"requestId": "nope", "response": True}, "e3")
        self.assertEqual(resp["payload"], {"requestId": "nope", "delivered": False})

    async def test_capacity_error(self) -> None:
        await self._next()
        await self._call("agent:spawn", {}, "c1")
        await self._call("agent:spawn", {}, "c2")
        full = await self._call("agent:spawn", {}, "c3")
        self.assertEqual(full["type"], "error")
        self.assertEqual(full["payload"]["code"], "capacity_exceeded")

    async def test_missing_agent_binary_keeps_client_connected(self) -> None:
        await self._next()
        self.cabal.multiplexer.command = ["/nonexistent/agent-binary"]
        failed = await self._call("agent:spawn", {"name": "w1"}, "s1")
        self.assertEqual(failed["type"], "error")
        self.assertEqual(failed["payload"]["code"], "spawn_failed")
        self.assertEqual(failed["payload"]["details"]["command"], "/nonexistent/agent-binary")

        listed = await self._call("agent:list", {}, "s2")
        self.assertEqual(listed["payload"]["agents"], [])

        self.cabal.multiplexer.command = list(MOCK)
        spawned = await self._call("agent:spawn", {"name": "w1"}, "s3")
        self.assertEqual(spawned["payload"]["agentId"], "w1")

    async def test_human_request_badges(self) -> None:
        await self._next()
        spawned = await self._call("agent:spawn", {"role": "executor", "name": "ops"}, "h1")
        node_id = spawned["payload"]["agentId"]
        self.assertEqual(node_id, "executor-ops")

        agent = self.cabal.get_agent(node_id)
        task = asyncio.ensure_future(agent.execute_task("deploy", {"env": "prod"}))
        badge = await self._wait_for(lambda m: m["type"] == "agent:notification" and m["payload"]["agentId"] == node_id)
        self.assertEqual(badge["payload"]["notificationLevel"], "critical")
        self.assertEqual(badge["payload"]["pendingRequests"], 1)
        self.assertEqual(badge["payload"]["message"], "Approval needed: deploy")

        request_id = self.cabal.get_human_requests()[0].id
        resp = await self._call("human:response", {"requestId": request_id, "response": "approve"}, "h2")
        self.assertTrue(resp["payload"]["delivered"])
        cleared = await self._wait_for(
            lambda m: m["type"] == "agent:notification" and m["payload"]["pendingRequests"] == 0
        )
        self.assertEqual(cleared["payload"]["notificationLevel"], "normal")
        out = await asyncio.wait_for(task, 5)
        self.assertTrue(out["success"])


if __name__ == "__main__":
    unittest.main()
