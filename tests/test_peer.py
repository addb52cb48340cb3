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


class TestPeerAgent(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from cabal.kernel.bus import EventBus
        from cabal.runners.multiplexer import ProcessMultiplexer

        self.bus = EventBus()
        self.mux = ProcessMultiplexer(self.bus, max_agents=4, command=MOCK, kill_grace_seconds=1.0)
        self.events: dict = {}
        watcher = self.bus.create_node("watcher")
        for topic in ("peer:discovered", "peer:leave", "peer:response", "agent:exit", "registry:announce"):
            watcher.on(topic, lambda ev: self.events.setdefault(ev.topic, []).append(ev.data))

    async def asyncTearDown(self) -> None:
        await self.mux.kill_all()
        await self.bus.close()

    async def _peer(self, node_id: str, **kw):  # type: ignore[no-untyped-def]
        from cabal.agents.peer import PeerAgent

        p = PeerAgent(self.mux, node_id, **kw)
        await p.initialize()
        return p

    async def test_discovery_is_mutual(self) -> None:
        a = await self._peer("a")
        b = await self._peer("b")
        self.assertEqual(a.get_peers(), ["b"])
        self.assertEqual(b.get_peers(), ["a"])
        self.assertEqual(a.peers["b"], b.agent_id)

        await b.shutdown()
        self.assertEqual(a.get_peers(), [])

    async def test_request_from_peer_round_trip(self) -> None:
        a = await self._peer("a")
        await self._peer("b")
        answer = await a.request_from_peer("b", "what time is it", timeout=5)
        self.assertEqual(answer["content"], "echo: what time is it")
        responses = self.events["peer:response"]
        self.assertEqual(responses[0]["node_id"], "b")

    async def test_request_from_peer_timeout_is_none(self) -> None:
        a = await self._peer("a")
        await self._peer("b")
        self.assertIsNone(await a.request_from_peer("b", "silence", timeout=0.2))
        self.assertIsNone(await a.request_from_peer("nobody", "hello", timeout=0.05))
        self.assertEqual(a._pending, {})

    async def test_ask_own_agent(self) -> None:
        a = await self._peer("a")
        self.assertEqual((await a.ask("ping", timeout=5))["content"], "echo: ping")
        self.assertIsNone(await a.ask("silence", timeout=0.1))

    async def test_share_and_query_messages(self) -> None:
        a = await self._peer("a")
        b = await self._peer("b")
        seen = []
        self.mux.set_stream_handler(b.agent_id, seen.append)

        await a.send_to_peer("b", {"type": "share", "data": {"fact": 42}})
        await a.broadcast({"type": "query", "data": "anyone?"})
        await _wait_until(lambda: bool(seen))

        self.assertEqual(b.shared, {"a": {"fact": 42}})
        self.assertEqual(seen[0].payload["content"], "echo: anyone?")
        # the sender never handles its own broadcast
        self.assertEqual(a.shared, {})

    async def test_shutdown_twice(self) -> None:
        a = await self._peer("a", register=True)
        self.assertEqual(self.events["registry:announce"][0]["name"], "a")
        self.assertTrue(await a.shutdown())
        self.assertFalse(await a.shutdown())
        await asyncio.sleep(0.1)
        self.assertEqual(len(self.events["peer:leave"]), 1)
        self.assertEqual(len(self.events["agent:exit"]), 1)
        self.assertFalse(a.is_active)
        self.assertNotIn("a", self.bus.node_ids())

    async def test_attach_to_running_agent(self) -> None:
        from cabal.agents.peer import PeerAgent

        aid = await self.mux.spawn("pre")
        p = PeerAgent(self.mux, "attached")
        self.assertEqual(await p.initialize(aid), "pre")
        self.assertEqual(len(self.mux.agent_ids()), 1)


if __name__ == "__main__":
    unittest.main()
