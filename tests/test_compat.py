import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from lichupdate.compat import CompatibilityGate, detect_runtime_version, read_required_version


def _artifact(root: Path, version_rb: str | None) -> Path:
    (root / "lib").mkdir(parents=True, exist_ok=True)
    if version_rb is not None:
        (root / "lib" / "version.rb").write_text(version_rb, encoding="utf-8")
    return root


class TestCompatibilityGate(unittest.TestCase):
    def test_missing_marker_is_compatible_without_probing(self) -> None:
        reports: list[str] = []
        probe = Mock(return_value="2.0.0")
        with tempfile.TemporaryDirectory() as td:
            gate = CompatibilityGate(runtime_version=None, report=reports.append, probe=probe)
            self.assertTrue(gate.check(_artifact(Path(td), None)))
        self.assertEqual(reports, [])
        probe.assert_not_called()

    def test_satisfied_requirement_passes(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _artifact(Path(td), "LICH_VERSION = '5.15.0'\nREQUIRED_RUBY = '3.2.0'\n")
            gate = CompatibilityGate(runtime_version="3.3.1", report=lambda m: None)
            self.assertTrue(gate.check(root))

    def test_older_runtime_blocks_and_names_both_versions(self) -> None:
        reports: list[str] = []
        with tempfile.TemporaryDirectory() as td:
            root = _artifact(Path(td), 'REQUIRED_RUBY = "3.2.0"\n')
            gate = CompatibilityGate(runtime_version="2.7.8", report=reports.append)
            self.assertFalse(gate.check(root))
        self.assertEqual(len(reports), 1)
        self.assertIn("UPDATE ABORTED", reports[0])
        self.assertIn("3.2.0", reports[0])
        self.assertIn("2.7.8", reports[0])

    def test_unknown_runtime_passes_with_warning(self) -> None:
        reports: list[str] = []
        probe = Mock(return_value=None)
        with tempfile.TemporaryDirectory() as td:
            root = _artifact(Path(td), "REQUIRED_RUBY = '3.2.0'\n")
            gate = CompatibilityGate(runtime_version=None, report=reports.append, probe=probe)
            self.assertTrue(gate.check(root))
            self.assertTrue(gate.check(root))
        probe.assert_called_once_with()
        self.assertIn("Could not determine the installed Ruby version", reports[0])

    def test_probed_runtime_is_used(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = _artifact(Path(td), "REQUIRED_RUBY = '3.2.0'\n")
            gate = CompatibilityGate(runtime_version=None, report=lambda m: None, probe=lambda: "3.1.4")
            self.assertFalse(gate.check(root))

    def test_read_required_version(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            f = Path(td) / "version.rb"
            self.assertIsNone(read_required_version(f))
            f.write_text("REQUIRED_RUBY = '2.6'\n", encoding="utf-8")
            self.assertEqual(read_required_version(f), "2.6")


class TestDetectRuntimeVersion(unittest.TestCase):
    def test_missing_interpreter(self) -> None:
        with patch("lichupdate.compat.shutil.which", return_value=None):
            self.assertIsNone(detect_runtime_version())

    def test_reads_ruby_version(self) -> None:
        completed = subprocess.CompletedProcess(args=["ruby"], returncode=0, stdout="3.3.1", stderr="")
        with (
            patch("lichupdate.compat.shutil.which", return_value="/usr/bin/ruby"),
            patch("lichupdate.compat.subprocess.run", return_value=completed) as run,
        ):
            self.assertEqual(detect_runtime_version(), "3.3.1")
        self.assertEqual(run.call_args.args[0], ["/usr/bin/ruby", "-e", "print RUBY_VERSION"])

    def test_failing_interpreter(self) -> None:
        with (
            patch("lichupdate.compat.shutil.which", return_value="/usr/bin/ruby"),
            patch("lichupdate.compat.subprocess.run", side_effect=subprocess.TimeoutExpired("ruby", 10)),
        ):
            self.assertIsNone(detect_runtime_version())


if __name__ == "__main__":
    unittest.main()
