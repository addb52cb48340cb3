import asyncio
import unittest


class TestApprovalParsing(unittest.TestCase):
    def test_approval_from_response(self) -> None:
        from cabal.daemon.human_loop import approval_from_response

        self.assertEqual(approval_from_response(True), {"approved": True})
        self.assertEqual(approval_from_response("Approve"), {"approved": True})
        self.assertEqual(approval_from_response("reject"), {"approved": False, "reason": "rejected"})
        self.assertEqual(approval_from_response({"approved": "yes", "note": "go"}), {"approved": True, "note": "go"})
        self.assertEqual(approval_from_response(None), {"approved": False})


class TestHumanGateCoordinator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        from cabal.daemon.human_loop import HumanGateCoordinator
        from cabal.kernel.bus import EventBus

        self.bus = EventBus()
        self.events: dict = {}
        watcher = self.bus.create_node("watcher")
        for topic in ("human:request", "human:resolved", "human:timeout", "human:notify", "agent:autonomous", "communication:log", "agent:background"):
            watcher.on(topic, lambda ev: self.events.setdefault(ev.topic, []).append(ev.data))
        self.gate = HumanGateCoordinator(self.bus, approval_timeout=0.1, confidence_threshold=0.8)

    async def asyncTearDown(self) -> None:
        await self.gate.close()
        await self.bus.close()

    async def test_pending_requests_ordering(self) -> None:
        from cabal.contracts.v1.human import HumanRequest

        self.gate.post_request(HumanRequest(type="review", priority="low", from_="a", created_at=1))
        self.gate.post_request(HumanRequest(type="approval", priority="high", from_="b", created_at=2))
        self.gate.post_request(HumanRequest(type="input", priority="medium", from_="c", created_at=3))
        self.gate.post_request(HumanRequest(type="input", priority="high", from_="d", created_at=1.5))

        order = [r.from_ for r in self.gate.get_pending_requests()]
        self.assertEqual(order, ["d", "b", "c", "a"])

    async def test_approval_timeout_rejects(self) -> None:
        self.gate.set_agent_policy("exec-1", requires_approval_for=["deploy"])
        out = await self.gate.handle_decision({"agent_id": "exec-1", "decision_type": "deploy", "confidence": 0.99})
        self.assertFalse(out["approved"])
        self.assertEqual(out["reason"], "timeout")
        self.assertEqual(self.gate.get_pending_requests(), [])
        self.assertEqual(len(self.events["human:timeout"]), 1)
        self.assertEqual(self.events["human:request"][0]["priority"], "high")
        # late answers are ignored
        self.assertFalse(self.gate.respond_to_request(out["request_id"], True))

    async def test_approval_granted_by_human(self) -> None:
        self.gate.set_agent_policy("exec-1", requires_approval_for=["deploy"])
        task = asyncio.ensure_future(self.gate.request_approval("exec-1", "deploy", timeout=2))
        await asyncio.sleep(0)
        pending = self.gate.get_pending_requests()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].context["action"], "deploy")

        self.assertTrue(self.gate.respond_to_request(pending[0].id, "approve"))
        self.assertFalse(self.gate.respond_to_request(pending[0].id, "reject"))
        out = await task
        self.assertTrue(out["approved"])
        self.assertEqual(self.events["human:resolved"][0]["from"], "exec-1")

    async def test_low_confidence_review_does_not_block(self) -> None:
        out = await asyncio.wait_for(
            self.gate.handle_decision({"agentId": "x", "decisionType": "refactor", "confidence": 0.3}),
            0.5,
        )
        self.assertTrue(out["approved"])
        self.assertTrue(out["flagged_for_review"])
        pending = self.gate.get_pending_requests()
        self.assertEqual([(r.type, r.priority, r.id) for r in pending], [("review", "medium", out["request_id"])])

    async def test_confident_decision_is_autonomous(self) -> None:
        out = await self.gate.handle_decision({"agent_id": "x", "decision_type": "rename", "confidence": 0.95})
        self.assertEqual(out, {"approved": True, "autonomous": True})
        self.assertEqual(self.events["agent:autonomous"][0]["decision_type"], "rename")
        # no confidence reported: never reviewed
        out = await self.gate.handle_decision({"agent_id": "x", "decision_type": "rename"})
        self.assertTrue(out["autonomous"])
        self.assertEqual(self.gate.get_pending_requests(), [])

    async def test_human_input_timeout_and_answer(self) -> None:
        self.assertIsNone(await self.gate.request_human_input("a", {"q": 1}, timeout=0.05))

        task = asyncio.ensure_future(self.gate.request_human_input("a", {"q": 2}))
        await asyncio.sleep(0)
        req = self.gate.get_pending_requests()[0]
        self.assertIsNone(req.deadline)
        self.gate.respond_to_request(req.id, {"guidance": "use the cache"})
        self.assertEqual(await task, {"guidance": "use the cache"})

    async def test_router_routes(self) -> None:
        outcomes = await self.gate.router.dispatch({"topic": "human:help", "agent_id": "a", "urgent": True})
        self.assertTrue(outcomes[0]["pending"])
        req = self.gate.get_pending_requests()[0]
        self.assertEqual((req.type, req.priority, req.from_), ("input", "high", "a"))

        outcomes = await self.gate.router.dispatch({"type": "agent:chat", "from": "a", "to": "b", "content": "hi"})
        self.assertEqual(outcomes, [{"handled": True}])
        self.assertEqual(self.events["agent:background"][0]["type"], "communication")

        outcomes = await self.gate.router.dispatch({"type": "decision:merge", "agent_id": "a", "confidence": 0.9})
        self.assertEqual(outcomes, [{"approved": True, "autonomous": True}])

    async def test_monitor_agent_communication(self) -> None:
        self.gate.set_agent_policy("a", notify_for=["password"])
        self.assertTrue(self.gate.monitor_agent_communication("a", "b", {"content": "the password is"}))
        self.assertFalse(self.gate.monitor_agent_communication("a", "b", {"content": "weather"}))
        self.assertFalse(self.gate.monitor_agent_communication("z", "b", {"content": "password"}))
        self.assertEqual(len(self.events["human:notify"]), 1)
        self.assertEqual(len(self.events["communication:log"]), 3)

    async def test_policy_patch_merges(self) -> None:
        self.gate.set_agent_policy("a", autonomy_level="manual", requires_approval_for=["x"])
        p = self.gate.set_agent_policy("a", notify_for=["y"])
        self.assertEqual((p.autonomy_level, p.requires_approval_for, p.notify_for), ("manual", ["x"], ["y"]))


if __name__ == "__main__":
    unittest.main()
