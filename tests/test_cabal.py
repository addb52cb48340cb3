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


class TestCabal(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from cabal.daemon.cabal import Cabal
        from cabal.kernel.settings import CabalSettings

        settings = CabalSettings(
            agent_command=MOCK,
            max_agents=4,
            approval_timeout=2,
            kill_grace_seconds=1,
            query_timeout=2,
        )
        self.cabal = Cabal(settings)
        self.notes: list = []
        self.events: dict = {}
        watcher = self.cabal.bus.create_node("watcher")
        watcher.on("human:attention", lambda ev: self.notes.append(ev.data))
        for topic in ("agent:spawned", "agent:background-task"):
            watcher.on(topic, lambda ev: self.events.setdefault(ev.topic, []).append(ev.data))

    async def asyncTearDown(self) -> None:
        await self.cabal.shutdown()
        await self.cabal.bus.close()

    async def test_query_collects_only_answers_in_time(self) -> None:
        await self.cabal.spawn_agent("talker")
        await self.cabal.spawn_agent("mute", args=["--mute"])
        answers = await self.cabal.query("status?", timeout=0.5)
        self.assertEqual(len(answers), 1)
        self.assertEqual(answers[0]["content"], "echo: status?")
        self.assertEqual(self.cabal.splitter.pending_responses(), [])

    async def test_spawn_names_and_swarm(self) -> None:
        from cabal.agents.peer import PeerAgent
        from cabal.errors import AgentNotFound

        agents = await self.cabal.create_swarm(2)
        self.assertEqual([a.node_id for a in agents], ["agent-0", "agent-1"])
        self.assertTrue(all(isinstance(a, PeerAgent) for a in agents))
        with self.assertRaises(ValueError):
            await self.cabal.spawn_agent("agent-0")
        self.assertEqual([e["node_id"] for e in self.events["agent:spawned"]], ["agent-0", "agent-1"])

        self.assertTrue(await self.cabal.kill_agent("agent-0"))
        self.assertFalse(await self.cabal.kill_agent("agent-0"))
        with self.assertRaises(AgentNotFound):
            self.cabal.get_agent("agent-0")
        status = self.cabal.get_system_status()
        self.assertEqual([a["node_id"] for a in status["agents"]], ["agent-1"])

    async def test_specialized_agent_approval_flow(self) -> None:
        from cabal.agents.autonomous import AutonomousAgent

        agent = await self.cabal.spawn_specialized_agent("executor", name="ops")
        self.assertIsInstance(agent, AutonomousAgent)
        self.assertEqual(agent.node_id, "executor-ops")
        self.assertEqual(agent.autonomy_level, "manual")
        policy = self.cabal.coordinator.get_agent_policy("executor-ops")
        self.assertIn("deploy", policy.requires_approval_for)
        self.assertEqual(self.events["agent:spawned"][0]["role"], "executor")

        task = asyncio.ensure_future(agent.execute_task("deploy", {"env": "prod"}))
        await _wait_until(lambda: bool(self.cabal.get_human_requests()))
        req = self.cabal.get_human_requests()[0]
        self.assertEqual((req.type, req.priority, req.from_), ("approval", "high", "executor-ops"))
        self.assertTrue(any(n["type"] == "request" for n in self.notes))

        self.assertTrue(self.cabal.respond_to_request(req.id, {"approved": True}))
        out = await asyncio.wait_for(task, 5)
        self.assertTrue(out["success"])
        self.assertTrue(out["result"]["content"].startswith("echo: Execute: deploy"))
        self.assertEqual(agent.get_status()["tasks_completed"], 1)

    async def test_rejection_and_background_tasks(self) -> None:
        exec_agent = await self.cabal.spawn_specialized_agent("executor")
        task = asyncio.ensure_future(exec_agent.execute_task("delete", {"path": "/tmp/x"}))
        await _wait_until(lambda: bool(self.cabal.get_human_requests()))
        self.cabal.respond_to_request(self.cabal.get_human_requests()[0].id, "reject")
        out = await asyncio.wait_for(task, 5)
        self.assertEqual((out["success"], out["reason"]), (False, "human-rejected"))

        researcher = await self.cabal.spawn_specialized_agent("researcher", background_tasks=["index"])
        out = await researcher.execute_task("index", {"dir": "docs"})
        self.assertEqual(out, {"success": True, "background": True})
        self.assertEqual(self.events["agent:background-task"][0]["task"], "index")
        self.assertEqual(self.cabal.get_background_activity(1)[0]["kind"], "agent:background-task")

    async def test_low_confidence_asks_for_guidance(self) -> None:
        agent = await self.cabal.spawn_specialized_agent("analyst")
        task = asyncio.ensure_future(agent.execute_task("summarize", confidence=0.2))
        await _wait_until(lambda: bool(self.cabal.get_human_requests()))
        req = self.cabal.get_human_requests()[0]
        self.assertEqual(req.type, "input")
        self.cabal.respond_to_request(req.id, {"abort": True})
        out = await asyncio.wait_for(task, 5)
        self.assertEqual(out, {"success": False, "reason": "human-aborted"})

    async def test_agent_decision_output_goes_through_gate(self) -> None:
        agent = await self.cabal.spawn_agent("worker")
        await self.cabal.send_to_agent("worker", "decision:refactor")
        await _wait_until(lambda: bool(self.cabal.get_human_requests()))
        req = self.cabal.get_human_requests()[0]
        self.assertEqual((req.type, req.from_), ("review", agent.node_id))
        self.assertEqual(req.context["decision_type"], "refactor")

    async def test_dead_agent_is_dropped(self) -> None:
        await self.cabal.spawn_agent("fragile")
        await self.cabal.send_to_agent("fragile", "exit:1")
        await _wait_until(lambda: "fragile" not in self.cabal.agents)
        alerts = [n for n in self.notes if n["type"] == "alert"]
        self.assertEqual(alerts[0]["content"]["node_id"], "fragile")
        self.assertEqual(alerts[0]["content"]["code"], 1)

    async def test_collaborate_and_share(self) -> None:
        a = await self.cabal.spawn_agent("a")
        b = await self.cabal.spawn_agent("b")
        out = await self.cabal.collaborate(["t1", "t2", "t3"])
        self.assertEqual(out["processed_by"], 2)
        self.assertEqual([r["content"] for r in out["results"]], ["echo: t1", "echo: t2", "echo: t3"])

        await self.cabal.share_knowledge({"fact": 1})
        await _wait_until(lambda: "a" in b.shared and "b" in a.shared)
        self.assertEqual(b.shared["a"], {"fact": 1})

    async def test_activity_summary_every_ten(self) -> None:
        node = self.cabal.bus.create_node("noise")
        for i in range(10):
            node.emit("agent:autonomous", {"agent_id": "x", "i": i})
        summaries = [n for n in self.notes if n["type"] == "summary"]
        self.assertEqual(len(summaries), 1)
        self.assertEqual(summaries[0]["content"]["activity_count"], 10)
        self.assertEqual(len(self.cabal.get_background_activity(3)), 3)
        self.assertEqual(self.cabal.get_background_activity(0), [])

    async def test_shutdown_is_idempotent(self) -> None:
        await self.cabal.spawn_agent("z")
        await self.cabal.shutdown()
        await self.cabal.shutdown()
        self.assertEqual(self.cabal.agents, {})
        self.assertEqual(self.cabal.multiplexer.agent_ids(), [])
        alerts = [n for n in self.notes if n["type"] == "alert" and n["content"].get("event") == "system-shutdown"]
        self.assertEqual(len(alerts), 1)


if __name__ == "__main__":
    unittest.main()
