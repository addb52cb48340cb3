import asyncio
import sys
import unittest

MOCK = [sys.executable, "-m", "cabal.mock_agent"]


async def _wait_until(pred, timeout: float = 5.0) -> None:  # type: ignore[no-untyped-def]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestProcessMultiplexer(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from cabal.kernel.bus import EventBus
        from cabal.runners.multiplexer import ProcessMultiplexer

        self.bus = EventBus()
        self.events: dict = {}
        watcher = self.bus.create_node("watcher")
        for topic in ("agent:spawn", "agent:exit", "agent:output", "agent:error", "message:send", "message:receive"):
            watcher.on(topic, lambda ev: self.events.setdefault(ev.topic, []).append(ev.data))
        self.mux = ProcessMultiplexer(self.bus, max_agents=3, command=MOCK, kill_grace_seconds=1.0)

    async def asyncTearDown(self) -> None:
        await self.mux.kill_all()
        await self.bus.close()

    async def test_missing_binary_raises_spawn_failed(self) -> None:
        from cabal.errors import SpawnFailed

        self.mux.command = ["/nonexistent/agent-binary"]
        with self.assertRaises(SpawnFailed) as cm:
            await self.mux.spawn("w1")
        self.assertEqual(cm.exception.code, "spawn_failed")
        self.assertEqual(cm.exception.details["agent_id"], "w1")
        self.assertIsInstance(cm.exception.__cause__, OSError)
        self.assertEqual(self.mux.live_count(), 0)
        self.assertNotIn("agent:spawn", self.events)

    async def test_capacity_is_a_hard_gate(self) -> None:
        from cabal.errors import CapacityExceeded

        ids = [await self.mux.spawn() for _ in range(3)]
        self.assertEqual(len(set(ids)), 3)
        with self.assertRaises(CapacityExceeded) as cm:
            await self.mux.spawn()
        self.assertEqual(cm.exception.code, "capacity_exceeded")
        self.assertEqual(sorted(self.mux.agent_ids()), sorted(ids))

        self.assertTrue(await self.mux.kill(ids[0]))
        extra = await self.mux.spawn("extra")
        self.assertEqual(extra, "extra")
        self.assertEqual(self.mux.get_stats()["active_agents"], 3)
        self.assertEqual(len(self.events["agent:spawn"]), 4)

    async def test_duplicate_live_id_rejected(self) -> None:
        await self.mux.spawn("a1")
        with self.assertRaises(ValueError):
            await self.mux.spawn("a1")

    async def test_kill_twice_emits_one_exit(self) -> None:
        aid = await self.mux.spawn("k1")
        self.assertTrue(await self.mux.kill(aid))
        self.assertFalse(await self.mux.kill(aid))
        self.assertFalse(await self.mux.kill("never-existed"))
        await asyncio.sleep(0.1)
        exits = [e for e in self.events.get("agent:exit", []) if e["agent_id"] == aid]
        self.assertEqual(len(exits), 1)
        self.assertFalse(self.mux.is_running(aid))

    async def test_send_and_receive_correlated(self) -> None:
        aid = await self.mux.spawn()
        await self.mux.send(aid, "hello", correlation_id="c1")
        await _wait_until(lambda: bool(self.events.get("message:receive")))

        sent = self.events["message:send"][0]
        self.assertEqual((sent["kind"], sent["payload"], sent["correlation_id"]), ("request", "hello", "c1"))
        got = self.events["message:receive"][0]
        self.assertEqual(got["agent_id"], aid)
        self.assertEqual(got["kind"], "response")
        self.assertEqual(got["correlation_id"], "c1")
        self.assertEqual(got["payload"]["content"], "echo: hello")

    async def test_send_to_unknown_agent(self) -> None:
        from cabal.errors import AgentNotFound

        with self.assertRaises(AgentNotFound):
            await self.mux.send("ghost", "hi")

    async def test_plain_text_and_stderr(self) -> None:
        aid = await self.mux.spawn()
        await self.mux.send(aid, "text:just words")
        await self.mux.send(aid, "stderr:oops")
        await _wait_until(lambda: bool(self.events.get("agent:output")) and bool(self.events.get("agent:error")))
        self.assertEqual(self.events["agent:output"][0], {"agent_id": aid, "data": "just words"})
        self.assertIn("oops", self.events["agent:error"][0]["error"])

    async def test_stream_kinds_and_handler(self) -> None:
        aid = await self.mux.spawn()
        handled = []
        self.mux.set_stream_handler(aid, handled.append)
        await self.mux.send(aid, "stream:2", correlation_id="s")
        await _wait_until(lambda: len(handled) == 4)
        self.assertEqual([m.kind for m in handled], ["stream"] * 4)
        self.assertEqual(handled[1].payload["data"], "chunk-0")

        self.mux.remove_stream_handler(aid)
        await self.mux.send(aid, "again")
        await _wait_until(lambda: len(self.events.get("message:receive", [])) == 5)
        self.assertEqual(len(handled), 4)

    async def test_process_exit_is_reported(self) -> None:
        aid = await self.mux.spawn()
        await self.mux.send(aid, "exit:3")
        await _wait_until(lambda: bool(self.events.get("agent:exit")))
        self.assertEqual(self.events["agent:exit"][0], {"agent_id": aid, "code": 3})
        self.assertNotIn(aid, self.mux.agent_ids())

    async def test_broadcast_reaches_all(self) -> None:
        a = await self.mux.spawn()
        b = await self.mux.spawn()
        self.assertEqual(await self.mux.broadcast("all hands"), 2)
        await _wait_until(lambda: len(self.events.get("message:receive", [])) == 2)
        self.assertEqual({e["agent_id"] for e in self.events["message:receive"]}, {a, b})


if __name__ == "__main__":
    unittest.main()
