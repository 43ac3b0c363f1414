"""
CLI Test Suite
"""

import argparse
import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout

from custodychain import fingerprint, fingerprint_of_bytes
from custodychain.cli import cmd_demo, cmd_hash, cmd_hash_bytes, cmd_verify


def run(cmd, **kwargs):
    out = io.StringIO()
    with redirect_stdout(out):
        code = cmd(argparse.Namespace(**kwargs))
    return code, out.getvalue()


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def path(self, name):
        return os.path.join(self.tmp.name, name)

    def test_hash(self):
        with open(self.path("record.json"), "w") as f:
            json.dump({"b": 1, "a": "x"}, f)
        code, out = run(cmd_hash, file=self.path("record.json"), scheme="1", show_canonical=False)
        self.assertEqual(code, 0)
        self.assertIn(fingerprint({"a": "x", "b": 1}), out)

    def test_hash_bytes(self):
        with open(self.path("permit.pdf"), "wb") as f:
            f.write(b"%PDF-permit")
        code, out = run(cmd_hash_bytes, file=self.path("permit.pdf"))
        self.assertEqual(code, 0)
        self.assertIn(fingerprint_of_bytes(b"%PDF-permit"), out)

    def test_demo_then_verify(self):
        package_path = self.path("package.json")
        code, out = run(cmd_demo, output=package_path)
        self.assertEqual(code, 0)
        self.assertIn("Verification: VALID", out)

        code, out = run(cmd_verify, package=package_path, output=self.path("report.json"))
        self.assertEqual(code, 0)
        with open(self.path("report.json")) as f:
            self.assertTrue(json.load(f)["reports"][0]["overallValid"])

        with open(package_path) as f:
            package = json.load(f)
        package["events"][1]["quantity"]["weight"] = 30.0
        with open(package_path, "w") as f:
            json.dump(package, f)

        code, out = run(cmd_verify, package=package_path, output=None)
        self.assertEqual(code, 1)
        self.assertIn("MISMATCH", out)

    def test_verify_empty_package(self):
        with open(self.path("empty.json"), "w") as f:
            json.dump({"batches": [], "events": []}, f)
        code, _ = run(cmd_verify, package=self.path("empty.json"), output=None)
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
