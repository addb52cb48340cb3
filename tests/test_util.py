import io
import json
import logging
import unittest


class TestConv(unittest.TestCase):
    def test_coerce_bool(self) -> None:
        from cabal.util.conv import coerce_bool

        self.assertTrue(coerce_bool("yes"))
        self.assertFalse(coerce_bool("false", default=True))
        self.assertTrue(coerce_bool("maybe", default=True))
        self.assertFalse(coerce_bool(0))
        self.assertFalse(coerce_bool(None))

    def test_coerce_float(self) -> None:
        from cabal.util.conv import coerce_float

        self.assertEqual(coerce_float("0.25"), 0.25)
        self.assertIsNone(coerce_float("nan"))
        self.assertIsNone(coerce_float(True))
        self.assertEqual(coerce_float("x", default=0.0), 0.0)


class TestJsonLogging(unittest.TestCase):
    def test_correlation_keys_are_lifted(self) -> None:
        from cabal.util.obslog import JsonlFormatter

        buf = io.StringIO()
        handler = logging.StreamHandler(buf)
        handler.setFormatter(JsonlFormatter(component="test"))
        log = logging.getLogger("cabal.test.obslog")
        log.propagate = False
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        try:
            log.info("spawned %s", "x", extra={"agent_id": "a1", "node_id": "", "request_id": "r9"})
        finally:
            log.removeHandler(handler)

        entry = json.loads(buf.getvalue().strip())
        self.assertEqual(entry["msg"], "spawned x")
        self.assertEqual(entry["component"], "test")
        self.assertEqual(entry["agent_id"], "a1")
        self.assertEqual(entry["request_id"], "r9")
        self.assertNotIn("node_id", entry)
        self.assertTrue(entry["ts"].endswith("Z"))


class TestErrors(unittest.TestCase):
    def test_error_info(self) -> None:
        from cabal.errors import CapacityExceeded, ResponseTimeout

        info = CapacityExceeded(3).to_error()
        self.assertEqual(info.code, "capacity_exceeded")
        self.assertEqual(info.details, {"limit": 3})
        self.assertIsInstance(ResponseTimeout("c1", 1.5), TimeoutError)


if __name__ == "__main__":
    unittest.main()
